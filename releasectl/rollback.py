"""Rollback controller: restore the previous live release."""

import logging
from typing import Optional, Self

from .audit import AuditEventType, AuditLogger
from .errors import RollbackFailed
from .health import POST_ACTIVATION, HealthVerifier
from .models import Release, ReleaseStatus, TargetHost
from .releases import ReleaseManager

logger = logging.getLogger(__name__)


class RollbackController:
    """Reverts a host's live pointer to the prior release.

    Used automatically when a freshly activated release is unhealthy, and
    by operators through ``releasectl rollback``. A rollback whose restored
    release is itself unhealthy raises ``RollbackFailed`` and is never
    retried.
    """

    def __init__(
        self: Self,
        releases: ReleaseManager,
        verifier: HealthVerifier,
        audit: Optional[AuditLogger] = None,
    ) -> None:
        self.releases = releases
        self.verifier = verifier
        self.audit = audit

    def rollback(self: Self, host: TargetHost, failed_release: Optional[Release] = None) -> Release:
        """Restore the prior release on a host.

        Args:
            host: Host to roll back.
            failed_release: Release being rolled away from. Defaults to the
                release that is live when the rollback starts.

        Returns:
            The restored, verified release.

        Raises:
            RollbackFailed: No prior release exists or it failed verification.
        """
        if failed_release is None:
            state = self.releases.state(host)
            live = self.releases.live_pointer(host)
            failed_release = state.releases.get(live) if live else None

        restored = self.releases.deactivate(host)

        if failed_release is not None:
            self.releases.mark(host, failed_release, ReleaseStatus.FAILED)

        health = self.verifier.verify(restored, host, POST_ACTIVATION)
        if not health.healthy:
            self._audit(host, restored, "FAILED", health.summary())
            raise RollbackFailed(
                f"Restored release {restored.identifier} on {host.name} is unhealthy: "
                f"{', '.join(health.failed_probes)}"
            )

        self._audit(host, restored, "SUCCESS", f"rolled back from {failed_release.identifier if failed_release else 'unknown'}")
        logger.info("Rolled back %s to %s", host.name, restored.identifier)
        return restored

    def _audit(self: Self, host: TargetHost, restored: Release, result: str, detail: str) -> None:
        if self.audit is None:
            return
        self.audit.log_event(
            AuditEventType.ROLLBACK,
            f"Rollback on {host.name} to {restored.identifier}: {detail}",
            host=host.name,
            release=restored.identifier,
            result=result,
            severity="INFO" if result == "SUCCESS" else "CRITICAL",
        )
