from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class InitUploadRequest(CamelModel):
    file_size: int | None = Field(default=None, gt=0)


class InitUploadResponse(CamelModel):
    upload_id: str


class CompleteUploadRequest(CamelModel):
    upload_id: str | None = None
    file_name: str | None = None


class CompleteUploadResponse(CamelModel):
    message: str
    url: str
    file_name: str


class UploadStatusResponse(CamelModel):
    upload_id: str
    status: str
    file_name: str | None = None
    declared_size: int | None = None
    handoff_status: str | None = None
    handoff_attempts: int = 0
    handoff_error: str | None = None


class RemoteFileEntry(CamelModel):
    key: str
    file_name: str
    size: int
    last_modified: datetime | None = None
    url: str


class FileListResponse(CamelModel):
    files: list[RemoteFileEntry]


class MessageResponse(CamelModel):
    message: str


class ErrorResponse(BaseModel):
    detail: str
    error_code: str
    request_id: str | None = None
    upload_id: str | None = None
    trace_id: str | None = None
