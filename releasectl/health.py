"""Health verification: read-only probes gating promotion of a release."""

import logging
import posixpath
import time
from typing import Callable, Dict, List, Optional, Self, Tuple

import requests
from requests.adapters import HTTPAdapter

from .errors import ReleaseCtlError
from .models import HealthResult, Release, TargetHost
from .remote import RemoteChannel, RemoteCommand

logger = logging.getLogger(__name__)

PRE_ACTIVATION = "pre"
POST_ACTIVATION = "post"

Probe = Tuple[str, Callable[[], Tuple[bool, str]]]


class HealthVerifier:
    """Probes a release on a host until it passes or attempts run out.

    Before activation only the slot is checked. After activation the live
    pointer and an HTTP request through the web server are checked as well.
    Every probe must pass in the same attempt for the release to be healthy.
    """

    def __init__(
        self: Self,
        channel: RemoteChannel,
        attempts: int = 3,
        delay: float = 2.0,
        health_path: str = "/",
        expected_status: int = 200,
        probe_timeout: float = 10,
        required_files: Optional[List[str]] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        self.channel = channel
        self.attempts = attempts
        self.delay = delay
        self.health_path = health_path if health_path.startswith("/") else "/" + health_path
        self.expected_status = expected_status
        self.probe_timeout = probe_timeout
        self.required_files = list(required_files) if required_files is not None else ["index.html"]
        self.session = session or self._create_session()

    def _create_session(self: Self) -> requests.Session:
        # Retries are driven by the attempt loop, not the adapter
        session = requests.Session()
        adapter = HTTPAdapter(max_retries=0)
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        session.headers.update({
            "User-Agent": "releasectl-health/0.1.0",
            "Cache-Control": "no-cache",
        })
        return session

    def _remote_test(self: Self, host: TargetHost, name: str, *argv: str) -> Tuple[bool, str]:
        try:
            result = self.channel.run(host, RemoteCommand.of(name, *argv, timeout=self.probe_timeout), check=False)
        except ReleaseCtlError as e:
            return False, str(e)
        return result.ok, result.stderr.strip()

    def _pointer_probe(self: Self, host: TargetHost, release: Release) -> Tuple[bool, str]:
        try:
            result = self.channel.run(
                host,
                RemoteCommand.of("probe-pointer", "readlink", host.live_pointer, timeout=self.probe_timeout),
                check=False,
            )
        except ReleaseCtlError as e:
            return False, str(e)
        target = posixpath.basename(result.stdout.strip().rstrip("/"))
        return target == release.identifier, f"current -> {target or '<unresolved>'}"

    def _http_probe(self: Self, host: TargetHost) -> Tuple[bool, str]:
        url = host.url.rstrip("/") + self.health_path
        try:
            response = self.session.get(url, timeout=self.probe_timeout, allow_redirects=True)
        except requests.RequestException as e:
            return False, f"HTTP probe {url} failed: {e}"
        ok = response.status_code == self.expected_status
        return ok, f"HTTP probe {url} returned status code {response.status_code}"

    def probes(self: Self, release: Release, host: TargetHost, phase: str) -> List[Probe]:
        """Build the probe list for a release and phase."""
        slot = host.slot_path(release.identifier)
        probes: List[Probe] = [
            ("slot", lambda: self._remote_test(host, "probe-slot", "test", "-d", slot)),
        ]
        for name in self.required_files:
            path = posixpath.join(slot, name)
            probes.append((f"file:{name}", lambda path=path: self._remote_test(host, "probe-file", "test", "-f", path)))

        if phase == POST_ACTIVATION:
            probes.append(("pointer", lambda: self._pointer_probe(host, release)))
            if host.url:
                probes.append(("http", lambda: self._http_probe(host)))
            else:
                logger.warning("No URL configured for %s; skipping end-to-end probe", host.name)
        return probes

    def verify(self: Self, release: Release, host: TargetHost, phase: str = POST_ACTIVATION) -> HealthResult:
        """Probe a release.

        Args:
            release: Release to check.
            host: Host it is staged or live on.
            phase: ``"pre"`` before activation, ``"post"`` after it.

        Returns:
            Healthy only if every probe of the last attempt passed.
        """
        probes = self.probes(release, host, phase)
        outcome: Dict[str, bool] = {}

        for attempt in range(1, self.attempts + 1):
            outcome = {}
            for name, probe in probes:
                ok, detail = probe()
                outcome[name] = ok
                if not ok:
                    logger.debug("[%s] probe %s failed: %s", host.name, name, detail)

            if all(outcome.values()):
                logger.info("%s on %s is healthy (%s, attempt %d)", release.identifier, host.name, phase, attempt)
                return HealthResult(healthy=True, attempts=attempt, probes=outcome)

            if attempt < self.attempts:
                time.sleep(self.delay)

        failed = [name for name, ok in outcome.items() if not ok]
        logger.warning("%s on %s is unhealthy (%s): %s", release.identifier, host.name, phase, ", ".join(failed))
        return HealthResult(healthy=False, failed_probes=failed, attempts=self.attempts, probes=outcome)
