"""Audit logging for deployment operations.

Every state change releasectl makes on a host is written as one JSON line to
``~/.releasectl/logs/audit.log`` so operators can reconstruct what happened
after the fact, independent of the console output.
"""

import getpass
import json
import logging
import os
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from . import __version__

SENSITIVE_KEYS = ('key', 'password', 'secret', 'token', 'credential')


class AuditEventType(Enum):
    """Types of audited events."""
    DEPLOYMENT = "deployment"
    TRANSPORT = "transport"
    ACTIVATION = "activation"
    HEALTH = "health"
    ROLLBACK = "rollback"
    CONFIGURATION_CHANGE = "configuration_change"
    ERROR = "error"


def _mask(details: Dict[str, Any]) -> Dict[str, Any]:
    return {
        key: "***MASKED***" if any(s in key.lower() for s in SENSITIVE_KEYS) and value else value
        for key, value in details.items()
    }


class AuditLogger:
    """Writes structured audit entries for deployment operations."""

    def __init__(self, log_dir: Optional[Path] = None) -> None:
        """Initialize audit logger.

        Args:
            log_dir: Directory for audit logs. Defaults to the ``logs``
                directory next to the configuration.
        """
        if log_dir is None:
            from .config import default_config_dir
            log_dir = default_config_dir() / "logs"

        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(self.log_dir, 0o700)
        self.audit_log_file = self.log_dir / "audit.log"
        self._setup_logging()

    def _setup_logging(self) -> None:
        """Configure the dedicated audit handler."""
        self.audit_logger = logging.getLogger(f'releasectl_audit.{self.log_dir}')
        self.audit_logger.setLevel(logging.INFO)
        self.audit_logger.propagate = False
        self.audit_logger.handlers.clear()

        if not self.audit_log_file.exists():
            self.audit_log_file.touch()
        os.chmod(self.audit_log_file, 0o600)

        handler = logging.FileHandler(self.audit_log_file)
        handler.setLevel(logging.INFO)
        handler.setFormatter(logging.Formatter('%(message)s'))
        self.audit_logger.addHandler(handler)

    def log_event(
        self,
        event_type: AuditEventType,
        message: str,
        host: Optional[str] = None,
        release: Optional[str] = None,
        result: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        severity: str = "INFO"
    ) -> Dict[str, Any]:
        """Write one audit entry.

        Args:
            event_type: Type of event
            message: Human readable message
            host: Target host name
            release: Release identifier involved
            result: Result of the action (SUCCESS, FAILED, ...)
            details: Additional details, sensitive keys are masked
            severity: Log severity level

        Returns:
            The entry as written
        """
        entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type.value,
            "severity": severity,
            "message": message,
            "user": self.get_user(),
            "source": "releasectl",
            "version": __version__,
        }
        if host:
            entry["host"] = host
        if release:
            entry["release"] = release
        if result:
            entry["result"] = result
        if details:
            entry["details"] = _mask(details)

        self.audit_logger.info(json.dumps(entry, default=str))
        return entry

    def log_attempt(self, attempt: Any) -> Dict[str, Any]:
        """Record the terminal state of a deployment attempt."""
        succeeded = attempt.outcome.value == "succeeded"
        return self.log_event(
            AuditEventType.DEPLOYMENT,
            f"Deployment of {attempt.release_ref} to {attempt.host} {attempt.outcome.value}",
            host=attempt.host,
            release=attempt.release_ref,
            result="SUCCESS" if succeeded else "FAILED",
            details={"live_release": attempt.live_release, "error": attempt.error},
            severity="INFO" if succeeded else "WARNING",
        )

    def log_configuration_change(self, setting: str, new_value: Any) -> Dict[str, Any]:
        return self.log_event(
            AuditEventType.CONFIGURATION_CHANGE,
            f"Configuration change: {setting}",
            result="SUCCESS",
            details={setting: new_value},
        )

    @staticmethod
    def get_user() -> str:
        try:
            return os.environ.get('USER') or getpass.getuser()
        except (KeyError, OSError):
            return "unknown"
