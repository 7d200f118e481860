"""graphql-upload — GraphQL multipart request handling for ASGI applications.

Public API:
  - GraphQLUploadMiddleware — intercepts multipart requests, defers the response
                              until the body is read, runs the processor
  - ResponseGate            — deferred ASGI send handed to processors
  - process_request()       — default multipart processor
  - ProcessRequestOptions   — field/file/count limits; load_options() reads them
  - Upload, FileUpload      — placeholders and file values in the operations
  - ClientVisibleError, InternalError, UploadError — error taxonomy
  - drain()                 — discard an async byte stream safely
  - configure_logging()     — opt-in structlog setup for hosts without one
"""

from __future__ import annotations

from graphql_upload.config import ProcessRequestOptions, load_options
from graphql_upload.errors import ClientVisibleError, InternalError, UploadError
from graphql_upload.middleware import GraphQLUploadMiddleware, ResponseGate, default_error_handler
from graphql_upload.process_request import ProcessRequestResult, process_request
from graphql_upload.upload import FileUpload, Upload
from graphql_upload.utils.logger import configure_logging
from graphql_upload.utils.streams import drain

__all__ = [
    "GraphQLUploadMiddleware",
    "ResponseGate",
    "default_error_handler",
    "process_request",
    "ProcessRequestResult",
    "ProcessRequestOptions",
    "load_options",
    "Upload",
    "FileUpload",
    "UploadError",
    "ClientVisibleError",
    "InternalError",
    "drain",
    "configure_logging",
]
