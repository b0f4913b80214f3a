from datetime import datetime

from pydantic import BaseModel, Field, StrictFloat, StrictInt

class BucketConfig(BaseModel):
    id: str
    bucket_name: str = Field(default="", alias="bucketName")
    endpoint: str = ""
    region: str = ""
    access_key: str = Field(default="", alias="accessKey", repr=False)
    secret_key: str = Field(default="", alias="secretKey", repr=False)

    class Config:
        populate_by_name = True

class LoginRequest(BaseModel):
    identity: str = Field(min_length=1)

class UploadRequest(BaseModel):
    mime_type: str = Field(min_length=1, max_length=255)
    # no coercion from bool or str
    size_bytes: StrictInt | StrictFloat

class CompleteUploadRequest(BaseModel):
    file_id: str = Field(min_length=1)

class UsageOut(BaseModel):
    quota_gb: int
    used_bytes: int
    uploads_count: int
    downloads_count: int
    expires_at: datetime

class LoginOut(UsageOut):
    token: str
    expires_in_seconds: int
    subscription_active: bool

class UploadTicketOut(BaseModel):
    file_id: str
    object_key: str
    upload_url: str
    expires_at: datetime
    required_headers: dict[str, str]

class CompletionOut(UsageOut):
    file_id: str
    status: str
    size_bytes: int | None

class FileOut(BaseModel):
    file_id: str
    object_key: str
    size_bytes: int | None
    mime_type: str | None
    created_at: datetime

    class Config:
        from_attributes = True

class FileListOut(BaseModel):
    files: list[FileOut]

class DownloadOut(BaseModel):
    download_url: str
    expires_at: datetime

class DeleteOut(UsageOut):
    deleted: bool
