"""Shared fixtures for releasectl tests.

Hosts use the ``local`` transport so the real shell commands run against a
temporary deploy root.
"""

import os
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
from unittest.mock import Mock

from releasectl.health import HealthVerifier
from releasectl.models import TargetHost
from releasectl.orchestrator import Deployer, HostLockRegistry
from releasectl.releases import ReleaseManager
from releasectl.remote import RemoteChannel
from releasectl.rollback import RollbackController
from releasectl.secret_store import EnvSecretStore
from releasectl.transport import ArtifactTransport
from releasectl.webserver import WebServer


def make_bundle(root: Path, name: str, body: Optional[str] = None, index: bool = True) -> Path:
    """Create a small static site build."""
    bundle = root / "builds" / name
    (bundle / "assets").mkdir(parents=True, exist_ok=True)
    if index:
        (bundle / "index.html").write_text(body or f"<h1>{name}</h1>\n")
    (bundle / "assets" / "app.js").write_text(f"console.log('{name}');\n")
    return bundle


def local_host(root: Path, name: str = "h1", url: str = "http://h1.test") -> TargetHost:
    return TargetHost(
        name=name,
        address="localhost",
        deploy_root=str(root / name / "site"),
        url=url,
        transport="local",
    )


def pointer_target(host: TargetHost) -> Optional[str]:
    """Release the host's ``current`` symlink resolves to."""
    if not os.path.islink(host.live_pointer):
        return None
    return os.path.basename(os.readlink(host.live_pointer))


class FakeWebServer(WebServer):
    """Records reloads and lets tests hook into the moment after a switch."""

    def __init__(self, on_reload: Optional[Callable[[TargetHost], None]] = None) -> None:
        self.reloads: List[str] = []
        self.pointers: List[Optional[str]] = []
        self.on_reload = on_reload

    def reload(self, host: TargetHost) -> None:
        self.reloads.append(host.name)
        self.pointers.append(pointer_target(host))
        if self.on_reload:
            self.on_reload(host)


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


def http_session(*statuses: int) -> Mock:
    """Session whose GETs return the given status codes, repeating the last."""
    remaining = list(statuses)

    def get(url: str, **kwargs: Any) -> Mock:
        status = remaining.pop(0) if len(remaining) > 1 else remaining[0]
        return Mock(status_code=status, url=url)

    session = Mock()
    session.get.side_effect = get
    return session


def build_deployer(
    session: Mock,
    health_attempts: int = 2,
    transfer_attempts: int = 3,
    retention: int = 5,
    webserver: Optional[FakeWebServer] = None,
    clock: Optional[Callable[[], float]] = None,
    locks: Optional[HostLockRegistry] = None,
) -> Deployer:
    channel = RemoteChannel(EnvSecretStore({}), command_timeout=30, backoff_base=0)
    releases = ReleaseManager(channel, webserver or FakeWebServer(), retention=retention)
    verifier = HealthVerifier(channel, attempts=health_attempts, delay=0, session=session)
    kwargs: Dict[str, Any] = {}
    if clock is not None:
        kwargs['clock'] = clock
    return Deployer(
        transport=ArtifactTransport(channel, attempts=transfer_attempts, backoff_base=0),
        releases=releases,
        verifier=verifier,
        rollback=RollbackController(releases, verifier),
        locks=locks,
        **kwargs,
    )
