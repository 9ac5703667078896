"""Security helpers for response headers and login attempt tracking."""
import time

from flask import request


def apply_security_headers(response, force_https: bool = False):
    """Headers for a JSON API that also serves uploaded media."""
    response.headers.setdefault("Content-Security-Policy", "default-src 'none'; img-src 'self'; media-src 'self'; frame-ancestors 'none'")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("Referrer-Policy", "no-referrer")
    response.headers.setdefault("Permissions-Policy", "geolocation=(), microphone=(), camera=()")
    if force_https or request.is_secure:
        response.headers.setdefault("Strict-Transport-Security", "max-age=63072000; includeSubDomains; preload")
    return response


# In-process attempt windows; swap for a shared cache when running several workers.
_attempts: dict[str, list[float]] = {}


def track_attempt(key: str, limit: int = 5, window_seconds: int = 60) -> bool:
    """Record an attempt for ``key``; False once ``limit`` attempts fall inside the window."""
    now = time.monotonic()
    for stale in [k for k, times in _attempts.items() if not times or now - times[-1] >= window_seconds]:
        del _attempts[stale]
    recent = [t for t in _attempts.get(key, []) if now - t < window_seconds]
    recent.append(now)
    _attempts[key] = recent
    return len(recent) <= limit


def reset_attempts(key: str | None = None) -> None:
    if key is None:
        _attempts.clear()
    else:
        _attempts.pop(key, None)
