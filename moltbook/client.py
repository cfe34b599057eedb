"""Async client for the parts of the Moltbook API a game round needs."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from .models import Comment, Post

logger = logging.getLogger(__name__)

# Only ever send credentials to this domain
_ALLOWED_HOST = "www.moltbook.com"


class MoltbookError(Exception):
    """Raised when the Moltbook API returns an error."""

    def __init__(self, message: str, status_code: int = 0, hint: str = ""):
        self.status_code = status_code
        self.hint = hint
        super().__init__(message)


class RateLimitError(MoltbookError):
    """Raised when we hit a rate limit (429)."""

    def __init__(self, message: str, retry_after: float = 0):
        self.retry_after = retry_after
        super().__init__(message, status_code=429)


class MoltbookClient:
    """Async wrapper for the Moltbook API.

    Usage::

        async with MoltbookClient(api_key="moltbook_xxx") as mb:
            comment = await mb.get_comment("c_123")
    """

    BASE_URL = "https://www.moltbook.com/api/v1"

    def __init__(
        self,
        api_key: str,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._client = httpx.AsyncClient(
            base_url=self.BASE_URL,
            headers={
                "Authorization": f"Bearer {api_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> MoltbookClient:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    # ── Request helpers ─────────────────────────────────────────

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict:
        """Make an authenticated API request and return parsed data."""
        def _json_or_empty(resp: httpx.Response) -> dict[str, Any]:
            if not resp.content:
                return {}
            try:
                data = resp.json()
            except ValueError:
                return {}
            return data if isinstance(data, dict) else {}

        url = self._client.build_request(method, path).url
        if url.host != _ALLOWED_HOST:
            raise MoltbookError(f"Refusing to send credentials to {url.host}")

        resp = await self._client.request(method, path, **kwargs)
        body = _json_or_empty(resp)

        if resp.status_code == 429:
            retry = body.get("retry_after_minutes", 0)
            raise RateLimitError(
                f"Rate limited: {body.get('error', 'too many requests')}",
                retry_after=retry * 60,
            )

        if resp.status_code >= 400:
            raise MoltbookError(
                body.get("error", f"HTTP {resp.status_code}"),
                status_code=resp.status_code,
                hint=body.get("hint", ""),
            )

        if not body.get("success", True):
            raise MoltbookError(body.get("error", "Unknown error"))

        return body.get("data", body)

    async def _get(self, path: str) -> dict:
        return await self._request("GET", path)

    async def _post(self, path: str, **json_body: Any) -> dict:
        json_body = {k: v for k, v in json_body.items() if v is not None}
        return await self._request("POST", path, json=json_body)

    # ── Posts ───────────────────────────────────────────────────

    async def create_post(
        self,
        title: str,
        submolt: str = "general",
        content: str | None = None,
        url: str | None = None,
    ) -> Post:
        """Create a new post (text or link)."""
        data = await self._post(
            "/posts",
            title=title,
            submolt=submolt,
            content=content,
            url=url,
        )
        logger.info("Created post in s/%s: %s", submolt, title[:60])
        return Post.from_api(data)

    # ── Comments ────────────────────────────────────────────────

    async def get_comment(self, comment_id: str) -> Comment:
        data = await self._get(f"/comments/{comment_id}")
        if isinstance(data, dict) and isinstance(data.get("comment"), dict):
            data = data["comment"]
        return Comment.from_api(data)

    async def create_comment(self, post_id: str, content: str) -> Comment:
        data = await self._post(f"/posts/{post_id}/comments", content=content)
        logger.info("Commented on post %s: %s", post_id, content[:60])
        return Comment.from_api(data)
