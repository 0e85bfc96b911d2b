"""Security audit logging for the Checklist API.

Structured logging for security-relevant events:
- Authentication failures
- Portal authorization failures
- Rejected capability (signed URL) access
- Rate limit violations

Each event is one JSON object on the ``security`` logger. When a log
directory is configured the events also go to a size-rotated file.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional

SECURITY_LOG_FILE = "security.log"

# Log rotation settings
MAX_LOG_SIZE = 10 * 1024 * 1024  # 10MB per file
BACKUP_COUNT = 5  # Keep 5 rotated files (50MB total)


class SecurityLogger:
    """Structured security event logger with optional rotation."""

    def __init__(self):
        self.logger = logging.getLogger("security")
        self._file_handler: Optional[RotatingFileHandler] = None

    def configure(self, log_dir: Optional[str]) -> None:
        """Attach the rotating file handler once; no-op without a directory."""
        if not log_dir or self._file_handler is not None:
            return
        path = Path(log_dir)
        path.mkdir(parents=True, exist_ok=True)

        handler = RotatingFileHandler(
            path / SECURITY_LOG_FILE,
            maxBytes=MAX_LOG_SIZE,
            backupCount=BACKUP_COUNT,
        )
        handler.setLevel(logging.WARNING)
        handler.setFormatter(logging.Formatter('%(message)s'))
        self.logger.addHandler(handler)
        self._file_handler = handler

    def log_event(
        self,
        event_type: str,
        severity: str,  # 'low', 'medium', 'high', 'critical'
        details: Dict[str, Any],
        ip: Optional[str] = None,
        uid: Optional[str] = None,
        path: Optional[str] = None
    ):
        """Log a security event.

        Args:
            event_type: Type of event (auth_failure, capability_rejected, ...)
            severity: low, medium, high, critical
            details: Event-specific details
            ip: Client IP address
            uid: User ID if known
            path: Request path
        """
        event = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event": event_type,
            "severity": severity,
            "ip": ip,
            "uid": uid,
            "path": path,
            **details
        }

        # Remove None values
        event = {k: v for k, v in event.items() if v is not None}

        self.logger.warning(json.dumps(event, default=str))

    def auth_failure(
        self,
        ip: str,
        reason: str,
        path: str,
        user_agent: Optional[str] = None,
        uid: Optional[str] = None
    ):
        """Log authentication failure."""
        self.log_event(
            event_type="auth_failure",
            severity="medium",
            details={
                "reason": reason,
                "user_agent": user_agent
            },
            ip=ip,
            uid=uid,
            path=path
        )

    def access_denied(self, ip: str, uid: str, path: str, reason: str):
        """Log a portal action refused for lack of role."""
        self.log_event(
            event_type="access_denied",
            severity="high",
            details={"reason": reason},
            ip=ip,
            uid=uid,
            path=path
        )

    def capability_rejected(self, ip: str, path: str, resource_id: str):
        """Log a signed-URL read with a bad or expired token."""
        self.log_event(
            event_type="capability_rejected",
            severity="low",
            details={"resource_id": resource_id},
            ip=ip,
            path=path
        )

    def rate_limit_exceeded(
        self,
        ip: str,
        path: str,
        limit: str
    ):
        """Log rate limit violation."""
        self.log_event(
            event_type="rate_limit_exceeded",
            severity="medium",
            details={
                "limit": limit
            },
            ip=ip,
            path=path
        )


# Singleton instance
security_logger = SecurityLogger()
