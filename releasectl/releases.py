"""Release manager: versioned slots and the atomic live pointer.

Host layout under ``deploy_root``::

    incoming/<release>/        deliveries in flight
    releases/<release>/        staged slots, one per release
    current -> releases/<id>   live pointer read by the web server
    .releasectl/state.jsonl    append-only release records

The pointer is switched by creating a new symlink next to it and renaming it
over ``current``. rename(2) is atomic, so the web server always resolves
either the old or the new release.
"""

import json
import logging
import posixpath
import shlex
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Self

from .errors import ReleaseConflict, RollbackFailed
from .models import Release, ReleaseStatus, TargetHost, utc_now
from .remote import RemoteChannel, RemoteCommand
from .webserver import NullReloader, WebServer

logger = logging.getLogger(__name__)

UNUSABLE = (ReleaseStatus.FAILED, ReleaseStatus.RETIRED)


@dataclass
class HostState:
    """Release records of one host, replayed from its state file."""

    releases: Dict[str, Release] = field(default_factory=dict)
    history: List[str] = field(default_factory=list)
    live: Optional[str] = None

    def apply(self: Self, record: Dict[str, Any]) -> None:
        event = record.get("event")
        if event == "release":
            release = Release.from_dict(record["release"])
            self.releases[release.identifier] = release
        elif event == "status":
            release = self.releases.get(record["release"])
            if release:
                release.status = ReleaseStatus(record["status"])
        elif event == "activate":
            self._move_to_front(record["release"])
            self.live = record["release"]
        elif event == "deactivate":
            if record["release"] in self.history:
                self.history.remove(record["release"])
            self._move_to_front(record["restored"])
            self.live = record["restored"]

    def _move_to_front(self: Self, identifier: str) -> None:
        if identifier in self.history:
            self.history.remove(identifier)
        self.history.insert(0, identifier)

    def next_sequence(self: Self) -> int:
        return max((r.sequence for r in self.releases.values()), default=0) + 1

    def by_sequence(self: Self) -> List[Release]:
        return sorted(self.releases.values(), key=lambda r: r.sequence, reverse=True)

    @classmethod
    def parse(cls, text: str) -> "HostState":
        state = cls()
        for line_no, line in enumerate(text.splitlines(), 1):
            line = line.strip()
            if not line:
                continue
            try:
                state.apply(json.loads(line))
            except (json.JSONDecodeError, KeyError, ValueError) as e:
                # A torn final append must not make the host unmanageable
                logger.warning("Skipping unreadable state record %d: %s", line_no, e)
        return state


class ReleaseManager:
    """Stages releases into slots and switches the live pointer."""

    def __init__(
        self: Self,
        channel: RemoteChannel,
        webserver: Optional[WebServer] = None,
        retention: int = 5,
    ) -> None:
        self.channel = channel
        self.webserver = webserver or NullReloader()
        self.retention = retention

    # State

    def _append(self: Self, host: TargetHost, *records: Dict[str, Any]) -> None:
        state_file = host.state_file
        lines = "".join(
            json.dumps({"ts": utc_now(), **record}, sort_keys=True) + "\n" for record in records
        )
        script = (
            f"mkdir -p {shlex.quote(posixpath.dirname(state_file))} && "
            f"printf '%s' {shlex.quote(lines)} >> {shlex.quote(state_file)}"
        )
        self.channel.run(host, RemoteCommand(name="record", script=script))

    def state(self: Self, host: TargetHost) -> HostState:
        """Read and replay the host's release records."""
        result = self.channel.run(
            host,
            RemoteCommand(name="read-state", script=f"cat {shlex.quote(host.state_file)} 2>/dev/null || true"),
        )
        return HostState.parse(result.stdout)

    def live_pointer(self: Self, host: TargetHost) -> Optional[str]:
        """Release the ``current`` symlink resolves to right now, if any."""
        result = self.channel.run(
            host,
            RemoteCommand(name="read-pointer", script=f"readlink {shlex.quote(host.live_pointer)} || true"),
        )
        target = result.stdout.strip()
        return posixpath.basename(target.rstrip("/")) if target else None

    def refresh(self: Self, host: TargetHost) -> HostState:
        """Load host state and update the host's live release and history."""
        state = self.state(host)
        host.live_release = self.live_pointer(host)
        host.history = list(state.history)
        return state

    def mark(self: Self, host: TargetHost, release: Release, status: ReleaseStatus) -> None:
        release.status = status
        self._append(host, {"event": "status", "release": release.identifier, "status": status.value})

    def slot_exists(self: Self, host: TargetHost, identifier: str) -> bool:
        result = self.channel.run(
            host, RemoteCommand.of("slot-exists", "test", "-d", host.slot_path(identifier)), check=False
        )
        return result.ok

    # Transitions

    def stage(self: Self, release: Release, host: TargetHost) -> Release:
        """Move a delivered release from incoming/ into its own slot.

        Releases are immutable: an existing slot is only replaced by the same
        content, or when its release failed or was retired.

        Raises:
            ReleaseConflict: The release is the one currently live, or the
                reference already names a usable release with other content.
        """
        if self.live_pointer(host) == release.identifier:
            raise ReleaseConflict(
                f"{release.identifier} is live on {host.name}; refusing to overwrite its slot",
                ["Deploy under a new release reference"],
            )

        state = self.state(host)
        existing = state.releases.get(release.identifier)
        if existing and existing.status not in UNUSABLE and existing.checksum != release.checksum:
            raise ReleaseConflict(
                f"{release.identifier} already exists on {host.name} with different content "
                f"(checksum {existing.checksum[:12]}, got {release.checksum[:12]})",
                ["Deploy under a new release reference"],
            )
        if existing and existing.status not in UNUSABLE:
            release.sequence = existing.sequence
        else:
            release.sequence = state.next_sequence()
        release.path = host.slot_path(release.identifier)

        incoming = host.incoming_path(release.identifier)
        self.channel.execute(host, [
            RemoteCommand.of("check-incoming", "test", "-d", incoming),
            RemoteCommand.of("prepare-slots", "mkdir", "-p", host.releases_dir),
            RemoteCommand.of("clear-slot", "rm", "-rf", "--", release.path),
            RemoteCommand.of("stage", "mv", "-T", incoming, release.path),
        ])

        release.status = ReleaseStatus.STAGED
        self._append(host, {"event": "release", "release": release.to_dict()})
        logger.info("Staged %s on %s (sequence %d)", release.identifier, host.name, release.sequence)
        return release

    def _switch(self: Self, host: TargetHost, identifier: str) -> None:
        temp_link = f"{host.deploy_root}/.current.{identifier}.tmp"
        target = posixpath.relpath(host.slot_path(identifier), host.deploy_root)
        script = (
            f"ln -sfn {shlex.quote(target)} {shlex.quote(temp_link)} && "
            f"mv -T {shlex.quote(temp_link)} {shlex.quote(host.live_pointer)}"
        )
        self.channel.run(host, RemoteCommand(name="switch-pointer", script=script))

    def activate(self: Self, release: Release, host: TargetHost) -> Optional[str]:
        """Point ``current`` at the release and reload the web server.

        Returns:
            Identifier of the previously live release, if any.
        """
        previous = self.live_pointer(host)
        if not self.slot_exists(host, release.identifier):
            raise ReleaseConflict(f"{release.identifier} is not staged on {host.name}")

        self._switch(host, release.identifier)

        records: List[Dict[str, Any]] = [
            {"event": "activate", "release": release.identifier, "previous": previous},
            {"event": "status", "release": release.identifier, "status": ReleaseStatus.LIVE.value},
        ]
        if previous and previous != release.identifier:
            records.append({"event": "status", "release": previous, "status": ReleaseStatus.VERIFIED.value})
        self._append(host, *records)
        release.status = ReleaseStatus.LIVE
        logger.info("Activated %s on %s (was %s)", release.identifier, host.name, previous or "nothing")

        self.webserver.reload(host)
        return previous

    def deactivate(self: Self, host: TargetHost) -> Release:
        """Point ``current`` back at the release that was live before.

        Raises:
            RollbackFailed: There is no usable prior release.
        """
        state = self.state(host)
        current = self.live_pointer(host) or state.live

        prior = None
        for identifier in state.history:
            if identifier == current:
                continue
            candidate = state.releases.get(identifier)
            if candidate and candidate.status not in UNUSABLE and self.slot_exists(host, identifier):
                prior = candidate
                break

        if prior is None:
            raise RollbackFailed(
                f"No prior release available on {host.name} to replace {current or 'nothing'}",
                ["Deploy a known-good release manually: releasectl deploy <ref> <host> --bundle <dir>"],
            )

        self._switch(host, prior.identifier)
        self._append(
            host,
            {"event": "deactivate", "release": current, "restored": prior.identifier},
            {"event": "status", "release": prior.identifier, "status": ReleaseStatus.LIVE.value},
        )
        prior.status = ReleaseStatus.LIVE
        logger.info("Restored %s on %s (was %s)", prior.identifier, host.name, current)

        self.webserver.reload(host)
        return prior

    def prune(self: Self, host: TargetHost) -> List[str]:
        """Retire releases beyond the retention count.

        The live release always counts towards the retention and is never
        retired. Failed releases are kept for post-mortem and not counted.
        Retired slots lose their files; their records stay.
        """
        state = self.state(host)
        live = self.live_pointer(host)
        kept = [live] if live else []
        retired = []

        for release in state.by_sequence():
            if release.identifier == live or release.status in UNUSABLE:
                continue
            if len(kept) < self.retention:
                kept.append(release.identifier)
                continue
            self.channel.run(host, RemoteCommand.of("retire", "rm", "-rf", "--", host.slot_path(release.identifier)))
            self.mark(host, release, ReleaseStatus.RETIRED)
            retired.append(release.identifier)

        if retired:
            logger.info("Retired %s on %s", ", ".join(retired), host.name)
        return retired
