"""Tests for health verification."""

import os
import tempfile
import unittest
from pathlib import Path
from unittest.mock import Mock, patch

import requests

from releasectl.health import POST_ACTIVATION, PRE_ACTIVATION, HealthVerifier
from releasectl.models import Release, ReleaseStatus
from releasectl.remote import RemoteChannel
from releasectl.secret_store import EnvSecretStore

from support import http_session, local_host


class TestHealthVerifier(unittest.TestCase):

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.temp_dir.name)
        self.host = local_host(self.root)
        self.channel = RemoteChannel(EnvSecretStore({}))
        self.release = Release(identifier="v1", checksum="", sequence=1, path=self.host.slot_path("v1"))

        slot = Path(self.host.slot_path("v1"))
        slot.mkdir(parents=True)
        (slot / "index.html").write_text("<h1>v1</h1>")

    def tearDown(self):
        self.temp_dir.cleanup()

    def verifier(self, session=None, **kwargs):
        kwargs.setdefault('attempts', 3)
        kwargs.setdefault('delay', 0)
        return HealthVerifier(self.channel, session=session or http_session(200), **kwargs)

    def point_at(self, identifier):
        os.symlink(f"releases/{identifier}", self.host.live_pointer)

    def test_staged_release_healthy(self):
        session = http_session(200)
        result = self.verifier(session).verify(self.release, self.host, PRE_ACTIVATION)

        self.assertTrue(result.healthy)
        self.assertEqual(result.attempts, 1)
        self.assertEqual(set(result.probes), {"slot", "file:index.html"})
        # No end-to-end request before the pointer moves
        session.get.assert_not_called()

    def test_missing_required_file(self):
        verifier = self.verifier(required_files=["index.html", "assets/app.js"])
        result = verifier.verify(self.release, self.host, PRE_ACTIVATION)

        self.assertFalse(result.healthy)
        self.assertEqual(result.failed_probes, ["file:assets/app.js"])
        self.assertEqual(result.attempts, 3)

    def test_live_release_healthy(self):
        self.point_at("v1")
        session = http_session(200)
        result = self.verifier(session, health_path="healthz").verify(self.release, self.host, POST_ACTIVATION)

        self.assertTrue(result.healthy)
        self.assertTrue(result.probes["pointer"])
        self.assertTrue(result.probes["http"])
        self.assertEqual(session.get.call_args[0][0], "http://h1.test/healthz")

    def test_recovers_within_attempts(self):
        self.point_at("v1")
        result = self.verifier(http_session(503, 200)).verify(self.release, self.host)
        self.assertTrue(result.healthy)
        self.assertEqual(result.attempts, 2)

    @patch('releasectl.health.time.sleep')
    def test_unhealthy_after_all_attempts(self, mock_sleep):
        self.point_at("v1")
        verifier = self.verifier(http_session(500), attempts=3, delay=5)
        result = verifier.verify(self.release, self.host)

        self.assertFalse(result.healthy)
        self.assertEqual(result.failed_probes, ["http"])
        self.assertEqual(mock_sleep.call_count, 2)
        mock_sleep.assert_called_with(5)
        self.assertIn("http", result.summary())

    def test_pointer_elsewhere(self):
        Path(self.host.slot_path("v0")).mkdir()
        self.point_at("v0")
        result = self.verifier(attempts=1).verify(self.release, self.host)
        self.assertEqual(result.failed_probes, ["pointer"])

    def test_connection_error_fails_probe(self):
        self.point_at("v1")
        session = Mock()
        session.get.side_effect = requests.ConnectionError("Connection refused")
        result = self.verifier(session, attempts=1).verify(self.release, self.host)
        self.assertEqual(result.failed_probes, ["http"])

    def test_no_url_skips_http_probe(self):
        self.host.url = ""
        self.point_at("v1")
        result = self.verifier(attempts=1).verify(self.release, self.host)
        self.assertTrue(result.healthy)
        self.assertNotIn("http", result.probes)

    def test_verification_does_not_change_status(self):
        self.verifier(attempts=1, required_files=["missing.html"]).verify(self.release, self.host, PRE_ACTIVATION)
        self.assertEqual(self.release.status, ReleaseStatus.STAGED)

    def test_default_session_does_not_retry(self):
        verifier = HealthVerifier(self.channel)
        adapter = verifier.session.get_adapter("https://example.com")
        self.assertEqual(adapter.max_retries.total, 0)


if __name__ == '__main__':
    unittest.main()
