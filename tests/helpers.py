"""Shared test constants and fakes."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

ALICE = "alice@x.com"
BOB = "bob@x.com"
CAROL = "carol@x.com"
ARCHITECT_PASSPHRASE = "Correct-Horse-Battery-Staple"


class FakeClock:
    """Settable clock shared by the components (datetime) and storage (epoch)."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def epoch(self) -> float:
        return self.now.timestamp()

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def response_cm(resp):
    """Async context manager yielding ``resp``, as ``session.post(...)`` does."""
    return AsyncMock(__aenter__=AsyncMock(return_value=resp), __aexit__=AsyncMock(return_value=False))


def mock_http_session():
    session = MagicMock()
    session.__aenter__.return_value = session
    session.__aexit__.return_value = None
    return session
