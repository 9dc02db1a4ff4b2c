import logging
from datetime import datetime, timedelta, timezone
from typing import Protocol

import httpx
from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)

# Telegram keeps a getFile link valid for at least this long
TELEGRAM_LINK_LIFETIME = timedelta(hours=1)


class ResolutionError(RuntimeError):
    reason = "Upstream resolution failed"


class LocatorInvalid(ResolutionError):
    reason = "Upstream rejected the file locator"


class UpstreamUnavailable(ResolutionError):
    reason = "Upstream service unavailable"


class UpstreamRateLimited(ResolutionError):
    reason = "Upstream rate limited"

    def __init__(self, message: str, retry_after: int | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class FetchDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True)

    url: str
    expires_at: datetime | None = None


class UpstreamResolver(Protocol):
    async def resolve(self, upstream_locator: str) -> FetchDescriptor:
        """Turn a stored locator into a fetchable URL."""


class TelegramResolver:
    """Resolves Telegram file ids through the Bot API ``getFile`` method."""

    def __init__(
        self,
        *,
        bot_token: str,
        client: httpx.AsyncClient,
        api_base: str = "https://api.telegram.org",
        timeout: float = 20.0,
    ):
        self.bot_token = bot_token
        self.client = client
        self.api_base = api_base.rstrip("/")
        self.timeout = timeout

    async def resolve(self, upstream_locator: str) -> FetchDescriptor:
        if not self.bot_token:
            raise UpstreamUnavailable("Telegram bot token is not configured")

        url = f"{self.api_base}/bot{self.bot_token}/getFile"
        try:
            resp = await self.client.get(url, params={"file_id": upstream_locator}, timeout=self.timeout)
        except httpx.TimeoutException as e:
            raise UpstreamUnavailable(f"Telegram getFile timed out: {type(e).__name__}") from e
        except httpx.TransportError as e:
            raise UpstreamUnavailable(f"Telegram getFile unreachable: {type(e).__name__}") from e

        try:
            payload = resp.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}
        description = payload.get("description") or f"HTTP {resp.status_code}"

        if resp.status_code == 429:
            parameters = payload.get("parameters")
            retry_after = parameters.get("retry_after") if isinstance(parameters, dict) else None
            raise UpstreamRateLimited(f"Telegram getFile rate limited: {description}", retry_after=retry_after)
        if resp.status_code >= 500 or not payload:
            raise UpstreamUnavailable(f"Telegram getFile failed: {description}")
        if resp.status_code in (401, 403):
            raise UpstreamUnavailable(f"Telegram rejected the bot token: {description}")
        if resp.status_code >= 400 or not payload.get("ok"):
            raise LocatorInvalid(f"Telegram getFile refused the file id: {description}")

        result = payload.get("result")
        file_path = result.get("file_path") if isinstance(result, dict) else None
        if not file_path:
            raise LocatorInvalid("Telegram returned no file_path for the file id")

        return FetchDescriptor(
            url=f"{self.api_base}/file/bot{self.bot_token}/{file_path}",
            expires_at=datetime.now(timezone.utc) + TELEGRAM_LINK_LIFETIME,
        )
