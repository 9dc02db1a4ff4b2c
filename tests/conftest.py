from typing import Callable

import httpx
import pytest

BOT_TOKEN = "TESTTOKEN"
API_BASE = "https://telegram.test"


class BrokenStream(httpx.AsyncByteStream):
    """Upstream body that sends some chunks and then drops the connection."""

    def __init__(self, chunks: list[bytes]):
        self.chunks = chunks
        self.closed = False

    async def __aiter__(self):
        for chunk in self.chunks:
            yield chunk
        raise httpx.ReadError("connection reset by peer")

    async def aclose(self) -> None:
        self.closed = True


class FakeTelegram:
    """Stands in for the Bot API getFile method and the file download host."""

    def __init__(self, token: str = BOT_TOKEN):
        self.token = token
        self.files: dict[str, str] = {}
        self.contents: dict[str, Callable[[], httpx.Response]] = {}
        self.get_file_override: Callable[[], httpx.Response] | None = None
        self.download_requests = 0

    def add(self, file_id: str, content: bytes, file_path: str | None = None) -> None:
        file_path = file_path or f"documents/{file_id}.bin"
        self.files[file_id] = file_path
        self.contents[file_path] = lambda: httpx.Response(200, content=content)

    def add_response(self, file_id: str, factory: Callable[[], httpx.Response]) -> None:
        file_path = f"documents/{file_id}.bin"
        self.files[file_id] = file_path
        self.contents[file_path] = factory

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == f"/bot{self.token}/getFile":
            if self.get_file_override is not None:
                return self.get_file_override()
            file_id = request.url.params.get("file_id")
            if file_id not in self.files:
                return httpx.Response(
                    400,
                    json={"ok": False, "error_code": 400, "description": "Bad Request: invalid file_id"},
                )
            return httpx.Response(
                200,
                json={"ok": True, "result": {"file_id": file_id, "file_path": self.files[file_id]}},
            )

        prefix = f"/file/bot{self.token}/"
        if path.startswith(prefix):
            self.download_requests += 1
            factory = self.contents.get(path[len(prefix):])
            if factory is None:
                return httpx.Response(404)
            return factory()

        return httpx.Response(404)


@pytest.fixture
def telegram() -> FakeTelegram:
    return FakeTelegram()
