"""Shared constants for graphql-upload.

All size limits and protocol strings used across modules are defined here.
No magic numbers in other modules — import from here.
"""

import math

# ─── Processor Limits ────────────────────────────────────────────────────────

# Maximum allowed non-file multipart field size in bytes; enough for queries.
DEFAULT_MAX_FIELD_SIZE: int = 1_000_000  # 1 MB

# Maximum allowed file size in bytes. Unbounded by default.
DEFAULT_MAX_FILE_SIZE: float = math.inf

# Maximum allowed number of files. Unbounded by default.
DEFAULT_MAX_FILES: float = math.inf

# ─── Protocol ────────────────────────────────────────────────────────────────

# Media type that marks a request as a GraphQL multipart request candidate.
MULTIPART_CONTENT_TYPE: str = "multipart/form-data"

# Referenced from client-facing error messages.
MULTIPART_SPEC_URL: str = "https://github.com/jaydenseric/graphql-multipart-request-spec"

# Field names defined by the multipart request convention.
OPERATIONS_FIELD: str = "operations"
MAP_FIELD: str = "map"

# Defaults applied by the multipart tokenizer to file parts lacking headers.
DEFAULT_FILE_MIMETYPE: str = "text/plain"
DEFAULT_TRANSFER_ENCODING: str = "7bit"

# ─── Status Codes ────────────────────────────────────────────────────────────

# Non-standard status used when the client disconnects mid-upload.
STATUS_CLIENT_CLOSED_REQUEST: int = 499

# ─── Capsule ─────────────────────────────────────────────────────────────────

# Chunk size used by ReadStream when reading a capsule back from disk.
READ_STREAM_CHUNK_SIZE: int = 65_536  # 64 KB

# Prefix for capsule temp files, so stray files are identifiable.
CAPACITOR_FILE_PREFIX: str = "graphql-upload-"
