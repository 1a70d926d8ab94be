"""Tamper-evident audit trail using HMAC chaining."""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Optional

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

from core.logging_utils import get_security_logger

_logger = get_security_logger()


def _canonical(payload: Dict[str, Any]) -> bytes:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8")


class TamperEvidentAuditLogger:
    """
    Append-only JSON lines where each entry's HMAC covers the previous one.

    Removing or editing any line breaks every HMAC after it, which
    :meth:`verify_chain` detects.
    """

    def __init__(self, log_path: Optional[Path] = None, hmac_key: Optional[bytes] = None) -> None:
        self._lock = Lock()
        self.log_path = Path(log_path) if log_path else self._default_path()
        self.log_path.parent.mkdir(parents=True, exist_ok=True)
        self._hmac_key = hmac_key or self._load_hmac_key()
        self._previous = self._last_hmac()

    @staticmethod
    def _default_path() -> Path:
        configured = getattr(settings, "AUDIT_LOG_PATH", None)
        if configured:
            return Path(configured)
        return Path(getattr(settings, "LOG_DIR", settings.BASE_DIR / "logs")) / "audit.log"

    @staticmethod
    def _load_hmac_key() -> bytes:
        configured_key = getattr(settings, "AUDIT_HMAC_KEY", None)
        if configured_key:
            try:
                return base64.b64decode(configured_key, validate=True)
            except ValueError as exc:
                raise ImproperlyConfigured("AUDIT_HMAC_KEY must be base64 encoded") from exc

        _logger.warning("AUDIT_HMAC_KEY not configured; deriving audit key from SECRET_KEY.")
        return hashlib.sha256(f"audit:{settings.SECRET_KEY}".encode("utf-8")).digest()

    def _last_hmac(self) -> bytes:
        if not self.log_path.exists():
            return b""
        last_line = ""
        with self.log_path.open(encoding="utf-8") as stream:
            for line in stream:
                if line.strip():
                    last_line = line
        if not last_line:
            return b""
        return base64.b64decode(json.loads(last_line)["hmac"])

    def _sign(self, previous: bytes, payload: Dict[str, Any]) -> bytes:
        return hmac.new(self._hmac_key, previous + _canonical(payload), hashlib.sha256).digest()

    def log_event(
        self,
        event_type: str,
        *,
        severity: str = "INFO",
        user_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Append an entry and return its base64 HMAC."""
        payload: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
            "severity": severity,
        }
        if user_id is not None:
            payload["user_id"] = str(user_id)
        if metadata:
            payload["metadata"] = metadata

        with self._lock:
            digest = self._sign(self._previous, payload)
            entry = dict(payload, hmac=base64.b64encode(digest).decode("ascii"))
            with self.log_path.open("a", encoding="utf-8") as stream:
                stream.write(json.dumps(entry, sort_keys=True, default=str) + "\n")
            self._previous = digest

        return entry["hmac"]

    def verify_chain(self) -> bool:
        """Recompute every HMAC in the file and report whether the chain is intact."""
        if not self.log_path.exists():
            return True
        previous = b""
        with self.log_path.open(encoding="utf-8") as stream:
            for line in stream:
                if not line.strip():
                    continue
                entry = json.loads(line)
                recorded = base64.b64decode(entry.pop("hmac"))
                if not hmac.compare_digest(self._sign(previous, entry), recorded):
                    return False
                previous = recorded
        return True


_audit_logger: Optional[TamperEvidentAuditLogger] = None


def get_audit_logger() -> TamperEvidentAuditLogger:
    global _audit_logger
    if _audit_logger is None:
        _audit_logger = TamperEvidentAuditLogger()
    return _audit_logger
