from pydantic import BaseModel, Field

from studybuddy.schemas.common import UTCDateTime


class UploadUrlIn(BaseModel):
    filename: str = Field(min_length=1, max_length=255)
    content_type: str | None = None


class UploadUrlOut(BaseModel):
    upload_url: str
    key: str
    expires_in: int


class FileOut(BaseModel):
    key: str
    filename: str
    size: int
    last_modified: UTCDateTime | None = None
    download_url: str
