"""Error taxonomy for graphql-upload.

Processors report failures as one of two tagged variants:

  ClientVisibleError:
      Safe to show to the client. Carries the HTTP status the middleware
      assigns to the response before handing the error to the error path
      (malformed multipart, exceeded limits, premature disconnect).

  InternalError:
      Not safe to show. The middleware leaves the response status alone and
      the host framework renders its generic failure response.

The capsule layer adds two misuse errors raised when a read stream is
requested from a capsule that can no longer serve one.
"""

from __future__ import annotations


class UploadError(Exception):
    """Base class for every error raised by graphql-upload."""

    status_code: int = 500
    expose: bool = False

    def __init__(self, message: str = "Upload processing failed") -> None:
        super().__init__(message)
        self.message = message


class ClientVisibleError(UploadError):
    """Error whose status code and message may be shown to the client."""

    expose = True

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code

    def __repr__(self) -> str:
        return f"ClientVisibleError(status_code={self.status_code}, message={self.message!r})"


class InternalError(UploadError):
    """Unexposed failure; rendered by the host framework as a generic 500."""


class ReadAfterDestroyedError(UploadError):
    """A read stream was requested from a destroyed capsule."""

    def __init__(self, message: str = "A ReadStream cannot be created from a destroyed WriteCapacitor.") -> None:
        super().__init__(message)


class ReadAfterReleasedError(UploadError):
    """A read stream was requested from a released capsule."""

    def __init__(self, message: str = "A ReadStream cannot be created from a released WriteCapacitor.") -> None:
        super().__init__(message)


def public_status(error: BaseException) -> int | None:
    """Return the status to assign to the response for ``error``, if any.

    Only client-visible errors carry a public status; everything else
    returns None so the response status is left untouched.
    """
    if isinstance(error, ClientVisibleError):
        return error.status_code
    return None
