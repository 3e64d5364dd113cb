"""Artifact transport: deliver a build bundle to a host's incoming area."""

import hashlib
import logging
import os
import shlex
import tarfile
import tempfile
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List, Optional, Self, Tuple, Union

from .errors import (
    AuthenticationFailure,
    ChannelError,
    CommandTimeout,
    IntegrityMismatch,
    ReleaseCtlError,
    RemoteCommandError,
    TransportExhausted,
    ValidationError,
)
from .models import Release, TargetHost
from .remote import RemoteChannel, RemoteCommand
from .validators import InputValidator

logger = logging.getLogger(__name__)

ARCHIVE_SUFFIXES = ('.tar', '.tar.gz', '.tgz')
CHUNK_SIZE = 1024 * 1024


def _file_digest(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, 'rb') as f:
        for chunk in iter(lambda: f.read(CHUNK_SIZE), b''):
            digest.update(chunk)
    return digest.hexdigest()


def bundle_manifest(bundle_dir: Union[str, Path]) -> List[Tuple[str, str]]:
    """List ``(./relative/path, sha256)`` for every regular file, in byte order.

    Symlinks and other special files are skipped, matching ``find -type f``.
    """
    root = Path(bundle_dir)
    entries = []
    for dirpath, _dirnames, filenames in os.walk(root):
        for filename in filenames:
            path = Path(dirpath) / filename
            if path.is_symlink() or not path.is_file():
                continue
            entries.append(("./" + path.relative_to(root).as_posix(), _file_digest(path)))
    entries.sort(key=lambda entry: entry[0].encode('utf-8'))
    return entries


def compute_checksum(bundle_dir: Union[str, Path]) -> str:
    """Content hash of a bundle directory.

    Equal to ``find . -type f -print0 | LC_ALL=C sort -z | xargs -0 -r
    sha256sum | sha256sum`` run inside the directory, so the host can
    recompute it with coreutils alone.

    Raises:
        ValidationError: A file in the bundle cannot be read.
    """
    try:
        manifest = bundle_manifest(bundle_dir)
    except OSError as e:
        raise ValidationError(f"Cannot read bundle {bundle_dir}: {e}", ["Check the build output permissions"])

    digest = hashlib.sha256()
    for relpath, file_digest in manifest:
        digest.update(f"{file_digest}  {relpath}\n".encode('utf-8'))
    return digest.hexdigest()


def checksum_command(path: str) -> RemoteCommand:
    return RemoteCommand(
        name="checksum",
        script=(
            f"cd {shlex.quote(path)} && find . -type f -print0 "
            "| LC_ALL=C sort -z | xargs -0 -r sha256sum | sha256sum"
        ),
    )


class ArtifactTransport:
    """Delivers bundles to ``<deploy_root>/incoming/<release>`` and verifies them."""

    def __init__(
        self: Self,
        channel: RemoteChannel,
        attempts: int = 3,
        backoff_base: float = 1.0,
        transfer_timeout: float = 600,
    ) -> None:
        """Initialize the transport.

        Args:
            channel: Channel used for copying and remote checksums.
            attempts: Total delivery attempts before giving up.
            backoff_base: Delay before the second attempt; doubles each time.
            transfer_timeout: Timeout for a single copy in seconds.
        """
        self.channel = channel
        self.attempts = attempts
        self.backoff_base = backoff_base
        self.transfer_timeout = transfer_timeout

    @contextmanager
    def _materialize(self: Self, bundle: Union[str, Path]) -> Iterator[Path]:
        """Yield a directory holding the bundle, unpacking archives first."""
        path = Path(bundle)
        if path.is_dir():
            yield path
            return

        if not path.is_file() or not path.name.endswith(ARCHIVE_SUFFIXES):
            raise ValidationError(
                f"Bundle must be a directory or a tar archive: {path}",
                ["Point releasectl at the build output directory, e.g. ./dist"],
            )

        with tempfile.TemporaryDirectory(prefix="releasectl-bundle-") as tmp:
            try:
                with tarfile.open(path) as archive:
                    archive.extractall(tmp, filter='data')
            except (tarfile.TarError, OSError) as e:
                raise ValidationError(
                    f"Cannot unpack bundle {path}: {e}",
                    ["Rebuild the archive, or pass the build output directory instead"],
                )
            yield Path(tmp)

    def remote_checksum(self: Self, host: TargetHost, path: str) -> str:
        result = self.channel.run(host, checksum_command(path))
        fields = result.stdout.split()
        return fields[0] if fields else ""

    def discard(self: Self, host: TargetHost, release_ref: str) -> None:
        """Remove a partial delivery from the incoming area."""
        path = host.incoming_path(InputValidator.validate_release_ref(release_ref))
        try:
            self.channel.run(host, RemoteCommand.of("discard", "rm", "-rf", "--", path), check=False)
        except ReleaseCtlError as e:
            logger.warning("Could not remove %s on %s: %s", path, host.name, e)

    def deliver(
        self: Self,
        bundle: Union[str, Path],
        host: TargetHost,
        release_ref: str,
        source_ref: str = "",
        expected_checksum: Optional[str] = None,
    ) -> Release:
        """Copy a bundle to the host and verify its integrity.

        Re-delivering the same bundle under the same release reference
        replaces the previous copy, so the call is idempotent.

        Args:
            bundle: Build output directory or tar archive.
            host: Target host.
            release_ref: Release identifier.
            source_ref: Source reference such as a commit id.
            expected_checksum: Checksum supplied by the build, if any.

        Returns:
            The delivered release, not yet staged.

        Raises:
            IntegrityMismatch: The bundle does not match ``expected_checksum``.
            TransportExhausted: Every attempt failed.
            AuthenticationFailure: Credentials were rejected.
            CommandTimeout: A copy or checksum exceeded its timeout.
        """
        release_ref = InputValidator.validate_release_ref(release_ref)
        destination = host.incoming_path(release_ref)

        with self._materialize(bundle) as source_dir:
            checksum = compute_checksum(source_dir)
            if expected_checksum and InputValidator.validate_checksum(expected_checksum) != checksum:
                raise IntegrityMismatch(expected_checksum, checksum)

            last_error: Optional[Exception] = None
            for attempt in range(1, self.attempts + 1):
                try:
                    logger.info("Delivering %s to %s (attempt %d/%d)", release_ref, host.name, attempt, self.attempts)
                    self.channel.copy_tree(host, str(source_dir), destination, timeout=self.transfer_timeout)
                    remote = self.remote_checksum(host, destination)
                    if remote != checksum:
                        raise IntegrityMismatch(checksum, remote)
                    return Release(
                        identifier=release_ref,
                        checksum=checksum,
                        sequence=0,
                        path=host.slot_path(release_ref),
                        source_ref=source_ref,
                    )
                except (AuthenticationFailure, CommandTimeout):
                    self.discard(host, release_ref)
                    raise
                except (ChannelError, RemoteCommandError, IntegrityMismatch, OSError) as e:
                    last_error = e
                    logger.warning("Delivery of %s to %s failed: %s", release_ref, host.name, e)
                    if attempt < self.attempts:
                        time.sleep(self.backoff_base * 2 ** (attempt - 1))

        self.discard(host, release_ref)
        raise TransportExhausted(
            f"Delivery of {release_ref} to {host.name} failed after {self.attempts} attempts: {last_error}"
        )
