"""Unit tests for the login attempt window."""
import pytest

from utils import security
from utils.security import reset_attempts, track_attempt


@pytest.fixture
def clock(monkeypatch):
    now = [1000.0]
    monkeypatch.setattr(security.time, "monotonic", lambda: now[0])
    reset_attempts()
    yield now
    reset_attempts()


@pytest.mark.unit
class TestTrackAttempt:
    def test_blocks_after_limit_inside_window(self, clock):
        results = [track_attempt("login:10.0.0.1", limit=3, window_seconds=60) for _ in range(4)]

        assert results == [True, True, True, False]

    def test_window_expiry_allows_again(self, clock):
        for _ in range(3):
            track_attempt("login:10.0.0.1", limit=3, window_seconds=60)
        clock[0] += 61

        assert track_attempt("login:10.0.0.1", limit=3, window_seconds=60) is True

    def test_expired_keys_are_dropped(self, clock):
        track_attempt("login:10.0.0.1", window_seconds=60)
        track_attempt("login:10.0.0.2", window_seconds=60)
        clock[0] += 61

        track_attempt("login:10.0.0.3", window_seconds=60)

        assert set(security._attempts) == {"login:10.0.0.3"}
