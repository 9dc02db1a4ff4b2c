"""Registration path used by the chat bot.

The bot transport itself (polling, sending replies and keyboards) lives
outside this package. It hands incoming Telegram message dicts to
``FileIngestor.ingest_message`` and sends back the text it gets.
"""

import logging
import math
import time

from filerelay.models import DEFAULT_MIME_TYPE, FileMetadata, IngestReceipt, ShareLinks
from filerelay.registry import FileRegistry

logger = logging.getLogger(__name__)

WELCOME_TEXT = (
    "File Streaming Bot\n\n"
    "Send me any file (up to {limit}) and I'll generate:\n"
    "- a direct stream link\n"
    "- a download link\n\n"
    "Supported formats: videos, documents, audio, images"
)

SIZE_UNITS = ["B", "KB", "MB", "GB", "TB"]


class SizeLimitExceeded(ValueError):
    def __init__(self, size_bytes: int, limit_bytes: int):
        super().__init__(f"File size exceeds {format_file_size(limit_bytes)} limit!")
        self.size_bytes = size_bytes
        self.limit_bytes = limit_bytes


def format_file_size(size_bytes: int) -> str:
    if size_bytes <= 0:
        return "0 B"
    exponent = min(int(math.log(size_bytes, 1024)), len(SIZE_UNITS) - 1)
    # log() can land a hair below an exact power of 1024
    if exponent + 1 < len(SIZE_UNITS) and size_bytes >= 1024 ** (exponent + 1):
        exponent += 1
    value = f"{size_bytes / 1024 ** exponent:.2f}".rstrip("0").rstrip(".")
    return f"{value} {SIZE_UNITS[exponent]}"


def extract_incoming_file(message: dict, *, now_ms: int | None = None) -> FileMetadata | None:
    """Pick the file out of a Telegram message, or None if it carries none."""
    stamp = now_ms if now_ms is not None else int(time.time() * 1000)

    if message.get("document"):
        item = message["document"]
        name = item.get("file_name") or "document"
        mime_type = item.get("mime_type")
    elif message.get("video"):
        item = message["video"]
        name = f"video_{stamp}.mp4"
        mime_type = item.get("mime_type")
    elif message.get("audio"):
        item = message["audio"]
        name = item.get("title") or f"audio_{stamp}.mp3"
        mime_type = item.get("mime_type")
    elif message.get("photo"):
        # Telegram lists photo sizes smallest first
        item = message["photo"][-1]
        name = f"photo_{stamp}.jpg"
        mime_type = "image/jpeg"
    else:
        return None

    return FileMetadata(
        display_name=name,
        size_bytes=item.get("file_size") or 0,
        mime_type=mime_type or DEFAULT_MIME_TYPE,
        upstream_locator=item["file_id"],
    )


class FileIngestor:
    def __init__(
        self,
        registry: FileRegistry,
        *,
        public_base_url: str,
        max_file_size_bytes: int,
        route_prefix: str = "",
    ):
        self.registry = registry
        self.base_url = public_base_url.rstrip("/") + route_prefix.rstrip("/")
        self.max_file_size_bytes = max_file_size_bytes

    @property
    def welcome_text(self) -> str:
        return WELCOME_TEXT.format(limit=format_file_size(self.max_file_size_bytes))

    def register_file(self, display_name: str, size_bytes: int, mime_type: str | None, upstream_locator: str) -> str:
        metadata = FileMetadata(
            display_name=display_name,
            size_bytes=size_bytes,
            mime_type=mime_type or DEFAULT_MIME_TYPE,
            upstream_locator=upstream_locator,
        )
        return self.register(metadata)

    def register(self, metadata: FileMetadata) -> str:
        if metadata.size_bytes > self.max_file_size_bytes:
            logger.info(
                "Rejected %r: %d bytes exceeds limit of %d",
                metadata.display_name,
                metadata.size_bytes,
                self.max_file_size_bytes,
            )
            raise SizeLimitExceeded(metadata.size_bytes, self.max_file_size_bytes)

        key = self.registry.issue(metadata)
        logger.info("Registered %s as %r (%d bytes)", key, metadata.display_name, metadata.size_bytes)
        return key

    def links(self, key: str) -> ShareLinks:
        return ShareLinks(
            stream=f"{self.base_url}/stream/{key}",
            download=f"{self.base_url}/download/{key}",
            info=f"{self.base_url}/api/file/{key}",
        )

    def ingest_message(self, message: dict) -> IngestReceipt | None:
        metadata = extract_incoming_file(message)
        if metadata is None:
            return None

        key = self.register(metadata)
        links = self.links(key)
        reply_text = (
            "File uploaded successfully!\n\n"
            f"File: {metadata.display_name}\n"
            f"Size: {format_file_size(metadata.size_bytes)}\n"
            f"Stream Link: {links.stream}\n"
            f"Download Link: {links.download}"
        )
        return IngestReceipt(key=key, metadata=metadata, links=links, reply_text=reply_text)

    def callback_reply(self, data: str) -> str | None:
        """Answer the copy-link buttons attached to the upload reply."""
        if data.startswith("copy_stream_"):
            return f"Stream Link:\n{self.links(data.removeprefix('copy_stream_')).stream}"
        if data.startswith("copy_download_"):
            return f"Download Link:\n{self.links(data.removeprefix('copy_download_')).download}"
        return None
