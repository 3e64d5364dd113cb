"""Deployment pipeline.

Each attempt runs Transport -> Stage -> Verify -> Activate -> Verify, with an
automatic rollback when the activated release turns out unhealthy. Attempts
against one host are serialized by a per-host lock; attempts against
different hosts share nothing and may run concurrently.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Self, Sequence, Union

from .audit import AuditEventType, AuditLogger
from .errors import (
    DeploymentCancelled,
    DeploymentInProgress,
    DeploymentTimeout,
    ReleaseCtlError,
    RollbackFailed,
    Unhealthy,
)
from .health import POST_ACTIVATION, PRE_ACTIVATION, HealthVerifier
from .models import AttemptOutcome, DeploymentAttempt, Release, ReleaseStatus, TargetHost
from .releases import ReleaseManager
from .remote import RemoteChannel
from .rollback import RollbackController
from .secret_store import SecretStore, build_secret_store
from .transport import ArtifactTransport
from .validators import InputValidator
from .webserver import build_webserver

logger = logging.getLogger(__name__)


class HostLockRegistry:
    """One lock per host, held for the whole lifetime of an attempt."""

    def __init__(self: Self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def _lock_for(self: Self, host_name: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(host_name, threading.Lock())

    @contextmanager
    def hold(self: Self, host_name: str, blocking: bool = True) -> Iterator[None]:
        """Hold the host's lock.

        Raises:
            DeploymentInProgress: The lock is taken and ``blocking`` is False.
        """
        lock = self._lock_for(host_name)
        if not lock.acquire(blocking):
            raise DeploymentInProgress(f"A deployment to {host_name} is already in progress")
        try:
            yield
        finally:
            lock.release()

    def is_locked(self: Self, host_name: str) -> bool:
        return self._lock_for(host_name).locked()


class CancellationToken:
    """Cooperative cancellation, honoured between pipeline steps."""

    def __init__(self: Self) -> None:
        self._event = threading.Event()

    def cancel(self: Self) -> None:
        self._event.set()

    @property
    def cancelled(self: Self) -> bool:
        return self._event.is_set()


class Deployer:
    """Runs deployment attempts and operator rollbacks."""

    def __init__(
        self: Self,
        transport: ArtifactTransport,
        releases: ReleaseManager,
        verifier: HealthVerifier,
        rollback: RollbackController,
        locks: Optional[HostLockRegistry] = None,
        attempt_timeout: float = 900,
        audit: Optional[AuditLogger] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.transport = transport
        self.releases = releases
        self.verifier = verifier
        self.rollback_controller = rollback
        self.locks = locks or HostLockRegistry()
        self.attempt_timeout = attempt_timeout
        self.audit = audit
        self.clock = clock

    @classmethod
    def from_settings(
        cls,
        settings: Dict[str, Any],
        secret_store: Optional[SecretStore] = None,
        audit: Optional[AuditLogger] = None,
    ) -> "Deployer":
        """Wire up every component from loaded configuration."""
        channel = RemoteChannel(
            secret_store or build_secret_store(settings),
            command_timeout=settings['command_timeout'],
            connect_attempts=settings['connect_attempts'],
            backoff_base=settings['backoff_base'],
        )
        releases = ReleaseManager(
            channel,
            webserver=build_webserver(channel, settings['reload_command']),
            retention=settings['retention'],
        )
        verifier = HealthVerifier(
            channel,
            attempts=settings['health_attempts'],
            delay=settings['health_delay'],
            health_path=settings['health_path'],
            expected_status=settings['expected_status'],
            probe_timeout=settings['probe_timeout'],
            required_files=settings['required_files'],
        )
        return cls(
            transport=ArtifactTransport(
                channel,
                attempts=settings['transfer_attempts'],
                backoff_base=settings['backoff_base'],
                transfer_timeout=settings['transfer_timeout'],
            ),
            releases=releases,
            verifier=verifier,
            rollback=RollbackController(releases, verifier, audit),
            attempt_timeout=settings['attempt_timeout'],
            audit=audit,
        )

    def _checkpoint(self: Self, deadline: float, cancel: Optional[CancellationToken]) -> None:
        if cancel is not None and cancel.cancelled:
            raise DeploymentCancelled("Deployment cancelled by operator")
        if self.clock() > deadline:
            raise DeploymentTimeout(f"Deployment exceeded its {self.attempt_timeout}s deadline")

    def _step(
        self: Self,
        attempt: DeploymentAttempt,
        name: str,
        action: Callable[[], Any],
        describe: Callable[[Any], str] = lambda _: "",
    ) -> Any:
        started = self.clock()
        try:
            value = action()
        except ReleaseCtlError as e:
            attempt.record(name, False, str(e), self.clock() - started)
            raise
        attempt.record(name, True, describe(value), self.clock() - started)
        return value

    def _current_live(self: Self, host: TargetHost) -> Optional[str]:
        try:
            return self.releases.live_pointer(host)
        except ReleaseCtlError as e:
            logger.error("Cannot read the live pointer on %s: %s", host.name, e)
            return None

    def deploy(
        self: Self,
        bundle: Union[str, Path],
        release_ref: str,
        host: TargetHost,
        source_ref: str = "",
        checksum: Optional[str] = None,
        cancel: Optional[CancellationToken] = None,
        blocking: bool = True,
    ) -> DeploymentAttempt:
        """Run one deployment attempt against a host.

        Failures are reported through the returned attempt's outcome; the
        attempt always records which release is live when it ends.

        Raises:
            DeploymentInProgress: Another attempt holds the host and
                ``blocking`` is False.
            ValidationError: The release reference is invalid.
        """
        release_ref = InputValidator.validate_release_ref(release_ref)
        attempt = DeploymentAttempt(host=host.name, release_ref=release_ref)

        with self.locks.hold(host.name, blocking=blocking):
            deadline = self.clock() + self.attempt_timeout
            release: Optional[Release] = None
            activation_started = False

            try:
                self._checkpoint(deadline, cancel)
                release = self._step(
                    attempt, "transport",
                    lambda: self.transport.deliver(bundle, host, release_ref, source_ref, checksum),
                    lambda r: f"checksum {r.checksum[:12]}",
                )
                attempt.release = release

                self._checkpoint(deadline, cancel)
                self._step(attempt, "stage", lambda: self.releases.stage(release, host),
                           lambda r: f"slot {r.path} (sequence {r.sequence})")

                self._checkpoint(deadline, cancel)
                pre = self.verifier.verify(release, host, PRE_ACTIVATION)
                attempt.record("verify-staged", pre.healthy, pre.summary())
                if not pre.healthy:
                    self.releases.mark(host, release, ReleaseStatus.FAILED)
                    raise Unhealthy(f"Staged release {release.identifier} failed verification", pre.failed_probes)
                self.releases.mark(host, release, ReleaseStatus.VERIFIED)

                self._checkpoint(deadline, cancel)
                # No checkpoints from here until the pointer switch returns
                activation_started = True
                self._step(attempt, "activate", lambda: self.releases.activate(release, host),
                           lambda previous: f"previous {previous or 'none'}")

                self._checkpoint(deadline, cancel)
                post = self.verifier.verify(release, host, POST_ACTIVATION)
                attempt.record("verify-live", post.healthy, post.summary())
                if not post.healthy:
                    raise Unhealthy(f"Live release {release.identifier} failed verification", post.failed_probes)

            except ReleaseCtlError as e:
                self._fail(attempt, host, release, activation_started, e)
            else:
                self._prune(attempt, host)
                attempt.finish(AttemptOutcome.SUCCEEDED, self._current_live(host))

        self._audit_attempt(attempt)
        return attempt

    def _fail(
        self: Self,
        attempt: DeploymentAttempt,
        host: TargetHost,
        release: Optional[Release],
        activation_started: bool,
        error: ReleaseCtlError,
    ) -> None:
        logger.warning("Deployment of %s to %s failed: %s", attempt.release_ref, host.name, error)
        live = self._current_live(host)
        switched = activation_started and release is not None and live == release.identifier

        if not switched:
            self.transport.discard(host, attempt.release_ref)
            attempt.finish(AttemptOutcome.FAILED, live, error)
            return

        try:
            restored = self.rollback_controller.rollback(host, failed_release=release)
        except ReleaseCtlError as rollback_error:
            if not isinstance(rollback_error, RollbackFailed):
                rollback_error = RollbackFailed(f"Rollback on {host.name} did not complete: {rollback_error}")
            logger.critical("%s", rollback_error)
            attempt.record("rollback", False, str(rollback_error))
            attempt.finish(AttemptOutcome.FAILED, self._current_live(host), rollback_error)
            return

        attempt.record("rollback", True, f"restored {restored.identifier}")
        attempt.finish(AttemptOutcome.ROLLED_BACK, self._current_live(host), error)

    def _prune(self: Self, attempt: DeploymentAttempt, host: TargetHost) -> None:
        try:
            retired = self.releases.prune(host)
        except ReleaseCtlError as e:
            # The new release is live and healthy; leftover slots are only disk
            logger.warning("Pruning old releases on %s failed: %s", host.name, e)
            attempt.record("prune", False, str(e))
            return
        attempt.record("prune", True, f"retired {', '.join(retired)}" if retired else "nothing to retire")

    def _audit_attempt(self: Self, attempt: DeploymentAttempt) -> None:
        if self.audit is not None:
            self.audit.log_attempt(attempt)

    def deploy_many(
        self: Self,
        bundle: Union[str, Path],
        release_ref: str,
        hosts: Sequence[TargetHost],
        source_ref: str = "",
        checksum: Optional[str] = None,
        cancel: Optional[CancellationToken] = None,
    ) -> List[DeploymentAttempt]:
        """Deploy to several hosts concurrently.

        Returns only when every host has reported, in the order given.
        """
        if not hosts:
            return []
        with ThreadPoolExecutor(max_workers=len(hosts)) as pool:
            futures = [
                pool.submit(self.deploy, bundle, release_ref, host, source_ref, checksum, cancel)
                for host in hosts
            ]
            return [future.result() for future in futures]

    def rollback(self: Self, host: TargetHost, blocking: bool = True) -> Release:
        """Operator-requested rollback of a host to its prior release."""
        with self.locks.hold(host.name, blocking=blocking):
            if self.audit is not None:
                self.audit.log_event(AuditEventType.ROLLBACK, f"Manual rollback requested on {host.name}", host=host.name)
            return self.rollback_controller.rollback(host)

    def status(self: Self, host: TargetHost) -> Dict[str, Any]:
        """Current live release, history and release records of a host."""
        state = self.releases.refresh(host)
        recorded = state.live
        return {
            "host": host.name,
            "live_release": host.live_release,
            "recorded_live": recorded,
            "consistent": recorded == host.live_release,
            "history": host.history,
            "deploying": self.locks.is_locked(host.name),
            "releases": [release.to_dict() for release in state.by_sequence()],
        }
