from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_MIME_TYPE = "application/octet-stream"


class FileMetadata(BaseModel):
    model_config = ConfigDict(frozen=True)

    display_name: str
    size_bytes: int = Field(default=0, ge=0)
    mime_type: str = DEFAULT_MIME_TYPE
    upstream_locator: str


class FileRecord(FileMetadata):
    key: str
    created_at: datetime
    access_count: int = Field(default=0, ge=0)


class FileInfoResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    file_name: str = Field(alias="fileName")
    file_size: int = Field(alias="fileSize")
    file_size_formatted: str = Field(alias="fileSizeFormatted")
    mime_type: str = Field(alias="mimeType")
    uploaded_at: datetime = Field(alias="uploadedAt")


class ShareLinks(BaseModel):
    stream: str
    download: str
    info: str


class IngestReceipt(BaseModel):
    model_config = ConfigDict(frozen=True)

    key: str
    metadata: FileMetadata
    links: ShareLinks
    reply_text: str
