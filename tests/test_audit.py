"""Tests for audit logging."""

import json
import os
import stat
import tempfile
import unittest
from pathlib import Path

from releasectl.audit import AuditEventType, AuditLogger
from releasectl.errors import Unhealthy
from releasectl.models import AttemptOutcome, DeploymentAttempt


class TestAuditLogger(unittest.TestCase):

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.log_dir = Path(self.temp_dir.name) / "logs"
        self.audit = AuditLogger(self.log_dir)

    def tearDown(self):
        for handler in list(self.audit.audit_logger.handlers):
            handler.close()
            self.audit.audit_logger.removeHandler(handler)
        self.temp_dir.cleanup()

    def entries(self):
        return [json.loads(line) for line in (self.log_dir / "audit.log").read_text().splitlines()]

    def test_log_file_is_private(self):
        self.assertEqual(stat.S_IMODE(os.stat(self.log_dir / "audit.log").st_mode), 0o600)

    def test_log_event(self):
        self.audit.log_event(
            AuditEventType.ACTIVATION,
            "Activated v5 on web1",
            host="web1",
            release="v5",
            result="SUCCESS",
            details={"previous": "v4", "ssh_key": "/keys/web1"},
        )

        entry = self.entries()[-1]
        self.assertEqual(entry["event_type"], "activation")
        self.assertEqual(entry["host"], "web1")
        self.assertEqual(entry["release"], "v5")
        self.assertEqual(entry["details"]["previous"], "v4")
        self.assertEqual(entry["details"]["ssh_key"], "***MASKED***")

    def test_log_attempt(self):
        attempt = DeploymentAttempt(host="web1", release_ref="v6")
        attempt.finish(AttemptOutcome.ROLLED_BACK, "v5", Unhealthy("http probe failed"))

        self.audit.log_attempt(attempt)

        entry = self.entries()[-1]
        self.assertEqual(entry["event_type"], "deployment")
        self.assertEqual(entry["result"], "FAILED")
        self.assertEqual(entry["severity"], "WARNING")
        self.assertEqual(entry["details"]["live_release"], "v5")
        self.assertIn("rolled-back", entry["message"])

    def test_configuration_change(self):
        self.audit.log_configuration_change("retention", 3)
        self.assertEqual(self.entries()[-1]["details"], {"retention": 3})


if __name__ == '__main__':
    unittest.main()
