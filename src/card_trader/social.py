"""X (Twitter) public profile lookups for the trust profile component."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

import aiohttp

from .models import SocialProfile, parse_timestamp, utcnow

_log = logging.getLogger(__name__)

USER_FIELDS = "created_at,description,profile_image_url,protected,verified,public_metrics"


class XApiError(Exception):
    """The X API could not return a usable profile."""


class RateLimitError(XApiError):
    def __init__(self, message: str = "X API rate limit exceeded") -> None:
        super().__init__(message)


class XProfileClient:
    """Client for reading public X profiles with an app bearer token."""

    def __init__(
        self,
        bearer_token: str,
        base_url: str = "https://api.twitter.com",
        *,
        request_timeout: float = 10.0,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        self.bearer_token = bearer_token
        self.base_url = base_url.rstrip("/")
        self.request_timeout = request_timeout
        self._session = session
        self._owns_session = session is None

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession()
        return self._session

    async def fetch_profile(self, user_id: str, username: str) -> SocialProfile:
        """Fetch ``username`` from X and map it onto a profile for ``user_id``.

        Raises :class:`RateLimitError` on HTTP 429 so callers can requeue, and
        :class:`XApiError` for every other failure.
        """

        handle = username.strip().lstrip("@")
        if not handle:
            raise XApiError("An X username is required")

        url = f"{self.base_url}/2/users/by/username/{handle}"
        headers = {"Authorization": f"Bearer {self.bearer_token}"}
        try:
            async with self._get_session().get(
                url,
                params={"user.fields": USER_FIELDS},
                headers=headers,
                timeout=aiohttp.ClientTimeout(total=self.request_timeout),
            ) as resp:
                if resp.status == 429:
                    raise RateLimitError()
                if resp.status != 200:
                    raise XApiError(f"X API error: {resp.status} {resp.reason}")
                payload = await resp.json()
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            raise XApiError(f"X API request failed: {exc}") from exc

        if not isinstance(payload, dict) or payload.get("errors") or "data" not in payload:
            raise XApiError(f"X API returned errors: {payload!r}")
        _log.debug("Fetched X profile %s for user %s", handle, user_id)
        return profile_from_payload(user_id, payload["data"])


def profile_from_payload(user_id: str, data: Dict[str, Any]) -> SocialProfile:
    metrics = data.get("public_metrics") or {}
    image_url = data.get("profile_image_url") or ""
    created_at = data.get("created_at")
    return SocialProfile(
        user_id=user_id,
        username=data.get("username", ""),
        account_created_at=parse_timestamp(created_at.replace("Z", "+00:00")) if created_at else None,
        followers_count=int(metrics.get("followers_count", 0)),
        tweet_count=int(metrics.get("tweet_count", 0)),
        has_profile_image=bool(image_url) and "default_profile" not in image_url,
        has_description=bool(data.get("description")),
        verified=bool(data.get("verified", False)),
        protected=bool(data.get("protected", False)),
        fetched_at=utcnow(),
    )
