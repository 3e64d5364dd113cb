"""Data model shared by the deployment components."""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Self


def utc_now() -> str:
    """Current UTC time as an ISO 8601 string."""
    return datetime.now(timezone.utc).isoformat()


class ReleaseStatus(Enum):
    """Lifecycle status of a release on a host."""
    STAGED = "staged"
    VERIFIED = "verified"
    LIVE = "live"
    FAILED = "failed"
    RETIRED = "retired"


class AttemptOutcome(Enum):
    """Outcome of a deployment attempt."""
    IN_PROGRESS = "in-progress"
    SUCCEEDED = "succeeded"
    ROLLED_BACK = "rolled-back"
    FAILED = "failed"


@dataclass
class Release:
    """A versioned, content-addressed artifact bundle on a host."""

    identifier: str
    checksum: str
    sequence: int
    path: str
    source_ref: str = ""
    created_at: str = field(default_factory=utc_now)
    status: ReleaseStatus = ReleaseStatus.STAGED

    def to_dict(self: Self) -> Dict[str, Any]:
        data = asdict(self)
        data["status"] = self.status.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Release":
        return cls(
            identifier=data["identifier"],
            checksum=data.get("checksum", ""),
            sequence=int(data.get("sequence", 0)),
            path=data.get("path", ""),
            source_ref=data.get("source_ref", ""),
            created_at=data.get("created_at") or utc_now(),
            status=ReleaseStatus(data.get("status", ReleaseStatus.STAGED.value)),
        )


@dataclass
class TargetHost:
    """A deployment destination.

    ``live_release`` and ``history`` are filled from the state persisted on
    the host; they are never the source of truth themselves.
    """

    name: str
    address: str
    auth_ref: str = ""
    deploy_root: str = "/var/www/app"
    url: str = ""
    port: int = 22
    transport: str = "ssh"
    live_release: Optional[str] = None
    history: List[str] = field(default_factory=list)

    @property
    def is_local(self: Self) -> bool:
        return self.transport == "local"

    @property
    def releases_dir(self: Self) -> str:
        return f"{self.deploy_root}/releases"

    @property
    def incoming_dir(self: Self) -> str:
        return f"{self.deploy_root}/incoming"

    @property
    def live_pointer(self: Self) -> str:
        return f"{self.deploy_root}/current"

    @property
    def state_file(self: Self) -> str:
        return f"{self.deploy_root}/.releasectl/state.jsonl"

    def slot_path(self: Self, identifier: str) -> str:
        return f"{self.releases_dir}/{identifier}"

    def incoming_path(self: Self, identifier: str) -> str:
        return f"{self.incoming_dir}/{identifier}"

    @classmethod
    def from_config(cls, name: str, settings: Dict[str, Any], defaults: Optional[Dict[str, Any]] = None) -> "TargetHost":
        """Build a host from its config entry, falling back to global defaults."""
        defaults = defaults or {}
        return cls(
            name=name,
            address=settings.get("address", name),
            auth_ref=settings.get("auth_ref", name),
            deploy_root=settings.get("deploy_root") or defaults.get("deploy_root", "/var/www/app"),
            url=settings.get("url", ""),
            port=int(settings.get("port", 22)),
            transport=settings.get("transport", "ssh"),
        )


@dataclass
class CommandResult:
    """Outcome of one command run over the channel."""

    command: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration: float = 0.0

    @property
    def ok(self: Self) -> bool:
        return self.exit_code == 0


@dataclass
class StepResult:
    """One entry in an attempt's step log."""

    name: str
    ok: bool
    detail: str = ""
    duration: float = 0.0


@dataclass
class HealthResult:
    """Pass/fail result of a health verification."""

    healthy: bool
    failed_probes: List[str] = field(default_factory=list)
    attempts: int = 0
    probes: Dict[str, bool] = field(default_factory=dict)

    def summary(self: Self) -> str:
        if self.healthy:
            return f"healthy after {self.attempts} attempt(s)"
        return f"unhealthy after {self.attempts} attempt(s): {', '.join(self.failed_probes)}"


@dataclass
class DeploymentAttempt:
    """One end-to-end deployment run against a single host."""

    host: str
    release_ref: str
    release: Optional[Release] = None
    outcome: AttemptOutcome = AttemptOutcome.IN_PROGRESS
    steps: List[StepResult] = field(default_factory=list)
    live_release: Optional[str] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    started_at: str = field(default_factory=utc_now)
    finished_at: Optional[str] = None

    def record(self: Self, name: str, ok: bool, detail: str = "", duration: float = 0.0) -> StepResult:
        step = StepResult(name=name, ok=ok, detail=detail, duration=duration)
        self.steps.append(step)
        return step

    def finish(self: Self, outcome: AttemptOutcome, live_release: Optional[str], error: Optional[Exception] = None) -> None:
        self.outcome = outcome
        self.live_release = live_release
        if error is not None:
            self.error = str(error)
            self.error_type = type(error).__name__
        self.finished_at = utc_now()

    @property
    def succeeded(self: Self) -> bool:
        return self.outcome is AttemptOutcome.SUCCEEDED

    def to_dict(self: Self) -> Dict[str, Any]:
        return {
            "host": self.host,
            "release": self.release_ref,
            "outcome": self.outcome.value,
            "live_release": self.live_release,
            "error": self.error,
            "error_type": self.error_type,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "steps": [asdict(step) for step in self.steps],
        }
