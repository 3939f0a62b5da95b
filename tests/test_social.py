from datetime import datetime, timezone

import aiohttp
import pytest

from card_trader.social import RateLimitError, XApiError, XProfileClient, profile_from_payload

pytestmark = pytest.mark.asyncio

PAYLOAD = {
    "data": {
        "id": "42",
        "username": "alice_cards",
        "created_at": "2018-03-04T05:06:07.000Z",
        "description": "Vintage binder collector",
        "profile_image_url": "https://pbs.twimg.com/profile_images/1/photo.jpg",
        "protected": False,
        "verified": True,
        "public_metrics": {"followers_count": 321, "tweet_count": 1500},
    }
}


class FakeResponse:
    def __init__(self, status: int, payload=None, reason: str = "OK") -> None:
        self.status = status
        self.reason = reason
        self._payload = payload

    async def json(self):
        return self._payload

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class FakeSession:
    def __init__(self, response=None, error: Exception = None) -> None:
        self.response = response
        self.error = error
        self.requests = []
        self.closed = False

    def get(self, url, **kwargs):
        self.requests.append((url, kwargs))
        if self.error is not None:
            raise self.error
        return self.response

    async def close(self) -> None:
        self.closed = True


async def test_profile_from_payload_maps_signals():
    profile = profile_from_payload("alice", PAYLOAD["data"])

    assert profile.user_id == "alice"
    assert profile.username == "alice_cards"
    assert profile.account_created_at == datetime(2018, 3, 4, 5, 6, 7, tzinfo=timezone.utc)
    assert profile.followers_count == 321
    assert profile.tweet_count == 1500
    assert profile.has_profile_image
    assert profile.has_description
    assert profile.verified
    assert not profile.protected


async def test_default_avatar_does_not_count():
    profile = profile_from_payload(
        "bob",
        {"username": "bob", "profile_image_url": "https://abs.twimg.com/sticky/default_profile_images/x.png"},
    )

    assert not profile.has_profile_image
    assert profile.account_created_at is None
    assert profile.followers_count == 0


async def test_fetch_profile_sends_bearer_token():
    session = FakeSession(FakeResponse(200, PAYLOAD))
    client = XProfileClient("secret", "https://x.test/", session=session)

    profile = await client.fetch_profile("alice", "@alice_cards")

    assert profile.username == "alice_cards"
    url, kwargs = session.requests[0]
    assert url == "https://x.test/2/users/by/username/alice_cards"
    assert kwargs["headers"]["Authorization"] == "Bearer secret"
    assert "public_metrics" in kwargs["params"]["user.fields"]

    await client.close()
    assert not session.closed


async def test_rate_limit_is_distinct():
    client = XProfileClient("secret", session=FakeSession(FakeResponse(429, reason="Too Many Requests")))

    with pytest.raises(RateLimitError):
        await client.fetch_profile("alice", "alice_cards")


async def test_other_failures_raise_api_error():
    client = XProfileClient("secret", session=FakeSession(FakeResponse(404, reason="Not Found")))
    with pytest.raises(XApiError) as excinfo:
        await client.fetch_profile("alice", "alice_cards")
    assert not isinstance(excinfo.value, RateLimitError)

    client = XProfileClient("secret", session=FakeSession(FakeResponse(200, {"errors": [{"title": "Not Found Error"}]})))
    with pytest.raises(XApiError):
        await client.fetch_profile("alice", "ghost")

    client = XProfileClient("secret", session=FakeSession(error=aiohttp.ClientConnectionError("down")))
    with pytest.raises(XApiError):
        await client.fetch_profile("alice", "alice_cards")

    with pytest.raises(XApiError):
        await client.fetch_profile("alice", "  @ ")
