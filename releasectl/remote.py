"""Remote execution channel.

Commands are typed ``RemoteCommand`` objects run strictly in order over
``ssh`` (or ``bash -c`` for hosts with the ``local`` transport), each with
its own timeout and captured output. A failing or timed out command halts
the sequence.
"""

import logging
import os
import shlex
import shutil
import subprocess
import tempfile
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Self

from .errors import (
    AuthenticationFailure,
    ChannelError,
    CommandTimeout,
    ReleaseCtlError,
    RemoteCommandError,
)
from .models import CommandResult, TargetHost
from .secret_store import Credentials, SecretStore

logger = logging.getLogger(__name__)

SSH_ERROR_EXIT = 255

AUTH_MARKERS = (
    "permission denied",
    "authentication failed",
    "host key verification failed",
    "no supported authentication methods",
    "too many authentication failures",
)


@dataclass
class RemoteCommand:
    """A single named step to run on a host."""

    name: str
    script: str
    timeout: Optional[float] = None

    @classmethod
    def of(cls, name: str, *argv: str, timeout: Optional[float] = None) -> "RemoteCommand":
        """Build a command from an argument vector, quoting every argument."""
        return cls(name=name, script=shlex.join(argv), timeout=timeout)


@dataclass
class FanOutResult:
    """Results of running one command sequence on several hosts."""

    results: Dict[str, List[CommandResult]] = field(default_factory=dict)
    errors: Dict[str, Exception] = field(default_factory=dict)

    @property
    def ok(self: Self) -> bool:
        """True only if every host completed every command successfully."""
        return not self.errors and all(
            all(result.ok for result in results) for results in self.results.values()
        )


@dataclass
class _Session:
    host: TargetHost
    ssh_argv: List[str]

    def argv_for(self: Self, script: str) -> List[str]:
        if self.host.is_local:
            return ["bash", "-c", script]
        return [*self.ssh_argv, script]


class RemoteChannel:
    """Authenticated command channel to target hosts."""

    def __init__(
        self: Self,
        secret_store: SecretStore,
        command_timeout: float = 60,
        connect_attempts: int = 3,
        backoff_base: float = 1.0,
        runner: Callable[..., Any] = subprocess.run,
    ) -> None:
        """Initialize the channel.

        Args:
            secret_store: Resolves each host's auth reference to credentials.
            command_timeout: Default per-command timeout in seconds.
            connect_attempts: Attempts for commands that fail at the SSH
                connection level.
            backoff_base: Base delay for exponential backoff between
                connection attempts.
            runner: ``subprocess.run`` compatible callable.
        """
        self.secret_store = secret_store
        self.command_timeout = command_timeout
        self.connect_attempts = connect_attempts
        self.backoff_base = backoff_base
        self.runner = runner

    def _ssh_options(self: Self, host: TargetHost, credentials: Credentials, key_file: Optional[str]) -> List[str]:
        options = [
            "ssh",
            "-o", "BatchMode=yes",
            "-o", "ConnectTimeout=10",
            "-o", "StrictHostKeyChecking=accept-new",
            "-p", str(credentials.port or host.port),
        ]
        if key_file:
            options.extend(["-o", "IdentitiesOnly=yes", "-i", key_file])
        return options

    @contextmanager
    def session(self: Self, host: TargetHost) -> Iterator[_Session]:
        """Open an authenticated session for the duration of a command batch.

        Inline key material is written to an owner-only temporary file that
        is removed when the session closes.
        """
        if host.is_local:
            yield _Session(host=host, ssh_argv=[])
            return

        credentials = self.secret_store.get_credentials(host.auth_ref or host.name)
        key_path: Optional[str] = credentials.identity_file
        temp_key: Optional[str] = None
        if credentials.key_material and not key_path:
            fd, temp_key = tempfile.mkstemp(prefix="releasectl-key-")
            with os.fdopen(fd, "w") as f:
                f.write(credentials.key_material.rstrip("\n") + "\n")
            os.chmod(temp_key, 0o600)
            key_path = temp_key

        try:
            argv = self._ssh_options(host, credentials, key_path)
            argv.append(f"{credentials.principal}@{credentials.address or host.address}")
            yield _Session(host=host, ssh_argv=argv)
        finally:
            if temp_key:
                os.unlink(temp_key)

    def _classify_ssh_failure(self: Self, host: TargetHost, stderr: str) -> ReleaseCtlError:
        lowered = stderr.lower()
        if any(marker in lowered for marker in AUTH_MARKERS):
            return AuthenticationFailure(f"Authentication to {host.name} failed: {stderr.strip()}")
        return ChannelError(f"Connection to {host.name} failed: {stderr.strip() or 'ssh exited 255'}")

    def _run(
        self: Self,
        session: _Session,
        command: RemoteCommand,
        completed: List[CommandResult],
    ) -> CommandResult:
        timeout = command.timeout or self.command_timeout
        argv = session.argv_for(command.script)

        for attempt in range(1, self.connect_attempts + 1):
            logger.debug("[%s] %s: %s", session.host.name, command.name, command.script)
            started = time.monotonic()
            try:
                proc = self.runner(argv, capture_output=True, text=True, timeout=timeout, check=False)
            except subprocess.TimeoutExpired:
                raise CommandTimeout(
                    f"Command '{command.name}' on {session.host.name} exceeded {timeout}s",
                    completed,
                )
            except FileNotFoundError as e:
                raise ChannelError(f"Cannot run {argv[0]}: {e}")

            result = CommandResult(
                command=command.name,
                exit_code=proc.returncode,
                stdout=proc.stdout or "",
                stderr=proc.stderr or "",
                duration=time.monotonic() - started,
            )

            if session.host.is_local or result.exit_code != SSH_ERROR_EXIT:
                return result

            failure = self._classify_ssh_failure(session.host, result.stderr)
            if isinstance(failure, AuthenticationFailure) or attempt == self.connect_attempts:
                raise failure

            delay = self.backoff_base * 2 ** (attempt - 1)
            logger.warning("%s; retrying in %.1fs (%d/%d)", failure, delay, attempt, self.connect_attempts)
            time.sleep(delay)

        raise ChannelError(f"Connection to {session.host.name} failed")

    def execute(
        self: Self,
        host: TargetHost,
        commands: Sequence[RemoteCommand],
        check: bool = True,
    ) -> List[CommandResult]:
        """Run a command sequence on one host, strictly in order.

        Args:
            host: Target host.
            commands: Commands to run.
            check: Raise ``RemoteCommandError`` when a command exits non-zero.

        Returns:
            One result per executed command. Execution stops at the first
            failing command, so the list may be shorter than ``commands``.

        Raises:
            CommandTimeout: A command exceeded its timeout.
            AuthenticationFailure: Credentials missing or rejected.
            ChannelError: The host stayed unreachable.
            RemoteCommandError: A command failed and ``check`` is set.
        """
        results: List[CommandResult] = []
        with self.session(host) as session:
            for command in commands:
                result = self._run(session, command, results)
                results.append(result)
                if not result.ok:
                    if check:
                        raise RemoteCommandError(
                            f"Command '{command.name}' on {host.name} exited {result.exit_code}: "
                            f"{result.stderr.strip()}",
                            results,
                        )
                    break
        return results

    def run(self: Self, host: TargetHost, command: RemoteCommand, check: bool = True) -> CommandResult:
        """Run a single command and return its result."""
        return self.execute(host, [command], check=check)[0]

    def execute_many(
        self: Self,
        hosts: Sequence[TargetHost],
        commands: Sequence[RemoteCommand],
        max_workers: Optional[int] = None,
    ) -> FanOutResult:
        """Run the same command sequence on several hosts concurrently.

        The result is only returned once every host has reported.
        """
        fan_out = FanOutResult()
        if not hosts:
            return fan_out

        with ThreadPoolExecutor(max_workers=max_workers or len(hosts)) as pool:
            futures = {
                host.name: pool.submit(self.execute, host, commands, False)
                for host in hosts
            }
            for name, future in futures.items():
                try:
                    fan_out.results[name] = future.result()
                except ReleaseCtlError as e:
                    fan_out.errors[name] = e
                except Exception as e:
                    logger.error("Unexpected error on %s: %s", name, e)
                    fan_out.errors[name] = e

        return fan_out

    def copy_tree(self: Self, host: TargetHost, source: str, destination: str, timeout: float = 600) -> None:
        """Copy a local directory to ``destination`` on the host.

        The destination ends up an exact copy of ``source``; anything left
        from an earlier partial copy is removed.
        """
        if host.is_local:
            if os.path.lexists(destination):
                shutil.rmtree(destination)
            os.makedirs(os.path.dirname(destination), exist_ok=True)
            shutil.copytree(source, destination, symlinks=True)
            return

        self.run(host, RemoteCommand.of("prepare", "mkdir", "-p", destination))

        with self.session(host) as session:
            remote_shell = shlex.join(session.ssh_argv[:-1])
            target = session.ssh_argv[-1]
            argv = [
                "rsync", "-a", "--delete",
                "-e", remote_shell,
                source.rstrip("/") + "/",
                f"{target}:{destination}/",
            ]
            logger.debug("[%s] rsync %s -> %s", host.name, source, destination)
            try:
                proc = self.runner(argv, capture_output=True, text=True, timeout=timeout, check=False)
            except subprocess.TimeoutExpired:
                raise CommandTimeout(f"Transfer to {host.name} exceeded {timeout}s")
            except FileNotFoundError as e:
                raise ChannelError(f"Cannot run rsync: {e}")

        if proc.returncode != 0:
            stderr = proc.stderr or ""
            if any(marker in stderr.lower() for marker in AUTH_MARKERS):
                raise AuthenticationFailure(f"Authentication to {host.name} failed: {stderr.strip()}")
            raise ChannelError(f"rsync to {host.name} exited {proc.returncode}: {stderr.strip()}")
