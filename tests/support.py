"""
Test doubles shared across the test modules.
"""

from datetime import datetime, timedelta, timezone

from oauthguard.core.types import OAuthToken


class FakeClock:
    """Manually advanced clock for timeout and expiry tests."""

    def __init__(self, start=None):
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class CountingRefresher:
    """Refresher that rotates tokens and counts provider round-trips."""

    def __init__(self, clock, expires_in=3600, result=True, error=None):
        self.clock = clock
        self.expires_in = expires_in
        self.result = result
        self.error = error
        self.calls = 0

    async def __call__(self, token):
        self.calls += 1
        if self.error is not None:
            raise self.error
        if self.result:
            token.update_tokens(
                access_token=f"access-{self.calls}",
                expires_in=self.expires_in,
                refresh_token=f"refresh-{self.calls}",
                now=self.clock(),
            )
        return self.result


def make_token(clock, user_id="user-1", expires_in=timedelta(hours=1), refresh_token="refresh-0", **kwargs):
    kwargs.setdefault("created_at", clock())
    return OAuthToken(
        user_id=user_id,
        access_token="access-0",
        refresh_token=refresh_token,
        expires_at=clock() + expires_in,
        **kwargs,
    )


class FakeResponse:
    """Minimal aiohttp response: status, headers and text()."""

    def __init__(self, status, body, headers=None):
        self.status = status
        self._body = body
        self.headers = headers or {}

    async def text(self):
        return self._body

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeSession:
    """Stands in for aiohttp.ClientSession; records posted forms.

    ``responses`` are served in order, one per post; exceptions in it are raised.
    """

    def __init__(self, response=None, error=None, responses=None):
        self.response = response
        self.error = error
        self.responses = list(responses or [])
        self.requests = []

    def post(self, url, data=None, headers=None, timeout=None):
        self.requests.append({"url": url, "data": data, "headers": headers, "timeout": timeout})
        if self.responses:
            response = self.responses.pop(0)
            if isinstance(response, BaseException):
                raise response
            return response
        if self.error is not None:
            raise self.error
        return self.response
