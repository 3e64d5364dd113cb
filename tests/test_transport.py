"""Tests for artifact delivery and content checksums."""

import os
import subprocess
import tarfile
import tempfile
import unittest
from pathlib import Path
from unittest.mock import call, patch

from releasectl.errors import (
    AuthenticationFailure,
    ChannelError,
    IntegrityMismatch,
    TransportExhausted,
    ValidationError,
)
from releasectl.remote import RemoteChannel
from releasectl.secret_store import EnvSecretStore
from releasectl.transport import ArtifactTransport, bundle_manifest, compute_checksum

from support import local_host, make_bundle


class TestChecksum(unittest.TestCase):
    """Test the bundle content hash."""

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.temp_dir.name)
        self.bundle = make_bundle(self.root, "v1")

    def tearDown(self):
        self.temp_dir.cleanup()

    def test_matches_coreutils_pipeline(self):
        """The local checksum equals what the host computes with coreutils."""
        proc = subprocess.run(
            ["bash", "-c", "find . -type f -print0 | LC_ALL=C sort -z | xargs -0 -r sha256sum | sha256sum"],
            cwd=self.bundle, capture_output=True, text=True, check=True,
        )
        self.assertEqual(compute_checksum(self.bundle), proc.stdout.split()[0])

    def test_content_change_changes_checksum(self):
        before = compute_checksum(self.bundle)
        (self.bundle / "index.html").write_text("<h1>changed</h1>\n")
        self.assertNotEqual(compute_checksum(self.bundle), before)

    def test_mtime_does_not_change_checksum(self):
        before = compute_checksum(self.bundle)
        os.utime(self.bundle / "index.html", (0, 0))
        self.assertEqual(compute_checksum(self.bundle), before)

    def test_manifest_is_sorted_and_skips_symlinks(self):
        os.symlink("index.html", self.bundle / "alias.html")
        paths = [path for path, _digest in bundle_manifest(self.bundle)]
        self.assertEqual(paths, ["./assets/app.js", "./index.html"])

    def test_unreadable_file_is_a_validation_error(self):
        with patch('releasectl.transport._file_digest', side_effect=PermissionError(13, "Permission denied")):
            with self.assertRaises(ValidationError) as ctx:
                compute_checksum(self.bundle)
        self.assertIn("Permission denied", str(ctx.exception))


class TestArtifactTransport(unittest.TestCase):
    """Test delivery to a host's incoming area."""

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.temp_dir.name)
        self.bundle = make_bundle(self.root, "v1")
        self.host = local_host(self.root)
        self.channel = RemoteChannel(EnvSecretStore({}), backoff_base=0)
        self.transport = ArtifactTransport(self.channel, attempts=3, backoff_base=0)

    def tearDown(self):
        self.temp_dir.cleanup()

    def test_deliver_to_incoming(self):
        release = self.transport.deliver(self.bundle, self.host, "v1", source_ref="abc123")

        incoming = Path(self.host.incoming_path("v1"))
        self.assertTrue((incoming / "index.html").is_file())
        self.assertEqual(release.identifier, "v1")
        self.assertEqual(release.source_ref, "abc123")
        self.assertEqual(release.checksum, compute_checksum(self.bundle))
        self.assertEqual(release.path, self.host.slot_path("v1"))
        # Delivery never touches slots or the live pointer
        self.assertFalse(os.path.lexists(self.host.live_pointer))
        self.assertFalse(os.path.exists(self.host.releases_dir))

    def test_redelivery_is_bit_identical(self):
        self.transport.deliver(self.bundle, self.host, "v1")
        incoming = Path(self.host.incoming_path("v1"))
        (incoming / "stale.txt").write_text("left over from a partial copy")

        self.transport.deliver(self.bundle, self.host, "v1")

        self.assertFalse((incoming / "stale.txt").exists())
        self.assertEqual(bundle_manifest(incoming), bundle_manifest(self.bundle))

    def test_expected_checksum_mismatch(self):
        with self.assertRaises(IntegrityMismatch):
            self.transport.deliver(self.bundle, self.host, "v1", expected_checksum="0" * 64)
        self.assertFalse(os.path.exists(self.host.incoming_path("v1")))

    def test_expected_checksum_match(self):
        checksum = compute_checksum(self.bundle).upper()
        release = self.transport.deliver(self.bundle, self.host, "v1", expected_checksum=checksum)
        self.assertEqual(release.checksum, checksum.lower())

    def test_remote_mismatch_is_retried(self):
        checksum = compute_checksum(self.bundle)
        with patch.object(self.transport, 'remote_checksum', side_effect=["f" * 64, checksum]) as remote:
            release = self.transport.deliver(self.bundle, self.host, "v1")
        self.assertEqual(remote.call_count, 2)
        self.assertEqual(release.checksum, checksum)

    @patch('releasectl.transport.time.sleep')
    def test_exhausted_after_three_failures(self, mock_sleep):
        transport = ArtifactTransport(self.channel, attempts=3, backoff_base=1.0)
        with patch.object(self.channel, 'copy_tree', side_effect=ChannelError("connection reset")) as copy_tree:
            with self.assertRaises(TransportExhausted):
                transport.deliver(self.bundle, self.host, "v1")

        self.assertEqual(copy_tree.call_count, 3)
        self.assertEqual(mock_sleep.call_args_list, [call(1.0), call(2.0)])
        self.assertFalse(os.path.exists(self.host.incoming_path("v1")))

    def test_partial_copy_discarded_on_exhaustion(self):
        def partial_copy(host, source, destination, timeout=600):
            os.makedirs(destination, exist_ok=True)
            Path(destination, "index.html").write_text("trunc")
            raise ChannelError("broken pipe")

        with patch.object(self.channel, 'copy_tree', side_effect=partial_copy):
            with self.assertRaises(TransportExhausted):
                self.transport.deliver(self.bundle, self.host, "v1")
        self.assertFalse(os.path.exists(self.host.incoming_path("v1")))

    def test_authentication_failure_not_retried(self):
        with patch.object(self.channel, 'copy_tree', side_effect=AuthenticationFailure("Permission denied")) as copy_tree:
            with self.assertRaises(AuthenticationFailure):
                self.transport.deliver(self.bundle, self.host, "v1")
        self.assertEqual(copy_tree.call_count, 1)

    def test_deliver_tar_archive(self):
        archive = self.root / "v1.tar.gz"
        with tarfile.open(archive, "w:gz") as tar:
            tar.add(self.bundle, arcname=".")

        release = self.transport.deliver(archive, self.host, "v1")

        self.assertEqual(release.checksum, compute_checksum(self.bundle))
        self.assertTrue(Path(self.host.incoming_path("v1"), "assets", "app.js").is_file())

    def test_rejects_unknown_bundle(self):
        stray = self.root / "notes.txt"
        stray.write_text("not a bundle")
        with self.assertRaises(ValidationError):
            self.transport.deliver(stray, self.host, "v1")

    def test_corrupt_archive_is_a_validation_error(self):
        archive = self.root / "v1.tar.gz"
        archive.write_bytes(b"not a tarball")

        with patch.object(self.channel, 'copy_tree') as copy_tree:
            with self.assertRaises(ValidationError) as ctx:
                self.transport.deliver(archive, self.host, "v1")

        self.assertIn("Cannot unpack bundle", str(ctx.exception))
        copy_tree.assert_not_called()

    def test_rejects_unsafe_release_ref(self):
        with self.assertRaises(ValidationError):
            self.transport.deliver(self.bundle, self.host, "../../etc")


if __name__ == '__main__':
    unittest.main()
