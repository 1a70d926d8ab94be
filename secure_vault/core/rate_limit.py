"""Cache-backed counters for throttling logins, resets and code submissions."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Optional, Tuple

from django.core.cache import cache


@dataclass
class RateLimitResult:
    """Represents the outcome of a rate limiting check."""

    allowed: bool
    remaining: Optional[int]
    retry_after: int
    blocked: bool
    limit: int
    count: int
    identifier: str


class RateLimitScenario:
    """Canonical identifiers for rate limited actions."""

    LOGIN_IP = "auth:login:ip"
    LOGIN_EMAIL = "auth:login:email"
    PASSWORD_RESET_IP = "auth:password-reset:ip"
    PASSWORD_RESET_EMAIL = "auth:password-reset:email"
    REVEAL_CODE_USER = "vault:reveal-code:user"
    MALICIOUS_TRAFFIC_IP = "security:malicious:ip"


def _cache_keys(scenario: str, identifier: str) -> Tuple[str, str]:
    base_key = f"rate-limit:{scenario}:{identifier}"
    return base_key, f"{base_key}:blocked"


def _normalize_identifier(identifier: Optional[str]) -> Optional[str]:
    value = str(identifier).strip() if identifier else ""
    return value.lower() or None


def _open(identifier: Optional[str], *, limit: int = 0, count: int = 0) -> RateLimitResult:
    return RateLimitResult(True, None, 0, False, limit, count, identifier or "")


def _blocked(block_key: str, identifier: str, now: float, *, limit: int = 0) -> Optional[RateLimitResult]:
    """Return a blocked result when ``block_key`` holds a future deadline."""
    block_until = cache.get(block_key)
    if block_until and block_until > now:
        retry_after = max(int(block_until - now), 0)
        return RateLimitResult(False, 0, retry_after, True, limit, limit, identifier)
    return None


def is_rate_limited(scenario: str, identifier: Optional[str]) -> RateLimitResult:
    """Check whether the identifier is currently blocked for the scenario."""
    normalized = _normalize_identifier(identifier)
    if not normalized:
        return _open(identifier)
    _, block_key = _cache_keys(scenario, normalized)
    return _blocked(block_key, normalized, time.time()) or _open(normalized)


def increment_rate_limit(
    scenario: str,
    identifier: Optional[str],
    *,
    limit: int,
    window: int,
    block: Optional[int] = None,
) -> RateLimitResult:
    """
    Count one more attempt for ``identifier``.

    Once ``limit`` attempts were made inside ``window`` seconds the next call
    blocks the identifier for ``block`` seconds (``window`` when omitted).
    """
    normalized = _normalize_identifier(identifier)
    if not normalized:
        return _open(identifier, limit=limit)

    key, block_key = _cache_keys(scenario, normalized)
    now = time.time()

    blocked = _blocked(block_key, normalized, now, limit=limit)
    if blocked:
        return blocked

    data = cache.get(key)
    if not data or now >= data.get("expires_at", 0):
        count, expires_at = 0, now + window
    else:
        count, expires_at = int(data.get("count", 0)), float(data["expires_at"])

    if count >= limit:
        block_for = block or window
        cache.set(block_key, now + block_for, timeout=max(int(block_for), 1))
        cache.delete(key)
        return RateLimitResult(False, 0, int(block_for), True, limit, count, normalized)

    count += 1
    cache.set(key, {"count": count, "expires_at": expires_at}, timeout=max(int(expires_at - now), 1))
    return RateLimitResult(
        True, max(limit - count, 0), max(int(expires_at - now), 0), False, limit, count, normalized
    )


def reset_rate_limit(scenario: str, identifier: Optional[str]) -> None:
    """Clear counters and block state for the identifier."""
    normalized = _normalize_identifier(identifier)
    if not normalized:
        return
    cache.delete_many(list(_cache_keys(scenario, normalized)))


__all__ = [
    "RateLimitResult",
    "RateLimitScenario",
    "increment_rate_limit",
    "is_rate_limited",
    "reset_rate_limit",
]
