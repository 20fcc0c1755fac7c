"""Domain errors raised by the upload core.

Each error carries the HTTP status and stable error code the API reports for
it, so the core modules stay free of FastAPI imports.
"""


class ChunkdropError(Exception):
    status_code: int = 500
    error_code: str = "internal_error"

    def __init__(self, detail: str | None = None) -> None:
        self.detail = detail or self.default_detail()
        super().__init__(self.detail)

    @classmethod
    def default_detail(cls) -> str:
        return cls.error_code.replace("_", " ")


class InvalidHeaders(ChunkdropError):
    status_code = 400
    error_code = "invalid_headers"


class MissingParameters(ChunkdropError):
    status_code = 400
    error_code = "missing_parameters"


class SessionNotFound(ChunkdropError):
    status_code = 400
    error_code = "session_not_found"


class NoChunksFound(ChunkdropError):
    status_code = 400
    error_code = "no_chunks_found"


class Forbidden(ChunkdropError):
    status_code = 403
    error_code = "forbidden"


class NotFound(ChunkdropError):
    status_code = 404
    error_code = "not_found"


class SessionConflict(ChunkdropError):
    status_code = 409
    error_code = "session_conflict"


class IncompleteUpload(ChunkdropError):
    status_code = 409
    error_code = "incomplete_upload"


class PayloadTooLarge(ChunkdropError):
    status_code = 413
    error_code = "payload_too_large"


class RangeNotSatisfiable(ChunkdropError):
    status_code = 416
    error_code = "range_not_satisfiable"

    def __init__(self, detail: str | None = None, file_size: int | None = None) -> None:
        super().__init__(detail)
        self.file_size = file_size


class StorageWriteFailed(ChunkdropError):
    error_code = "storage_write_failed"


class AssemblyFailed(ChunkdropError):
    error_code = "assembly_failed"


class ServeFailed(ChunkdropError):
    error_code = "serve_failed"


class RemoteListFailed(ChunkdropError):
    error_code = "remote_list_failed"


class RemoteDeleteFailed(ChunkdropError):
    error_code = "remote_delete_failed"


class RemoteHandoffFailed(ChunkdropError):
    """Never reported to clients; logged by the handoff task."""

    error_code = "remote_handoff_failed"
