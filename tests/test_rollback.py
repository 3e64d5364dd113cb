"""Tests for the rollback controller."""

import json
import tempfile
import unittest
from pathlib import Path

from releasectl.audit import AuditLogger
from releasectl.errors import RollbackFailed
from releasectl.health import HealthVerifier
from releasectl.models import ReleaseStatus
from releasectl.releases import ReleaseManager
from releasectl.remote import RemoteChannel
from releasectl.rollback import RollbackController
from releasectl.secret_store import EnvSecretStore
from releasectl.transport import ArtifactTransport

from support import FakeWebServer, http_session, local_host, make_bundle, pointer_target


class TestRollbackController(unittest.TestCase):

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.temp_dir.name)
        self.host = local_host(self.root)
        channel = RemoteChannel(EnvSecretStore({}))
        self.transport = ArtifactTransport(channel, backoff_base=0)
        self.manager = ReleaseManager(channel, FakeWebServer())
        self.session = http_session(200)
        self.verifier = HealthVerifier(channel, attempts=2, delay=0, session=self.session)
        self.audit = AuditLogger(self.root / "logs")
        self.controller = RollbackController(self.manager, self.verifier, self.audit)

    def tearDown(self):
        for handler in list(self.audit.audit_logger.handlers):
            handler.close()
            self.audit.audit_logger.removeHandler(handler)
        self.temp_dir.cleanup()

    def ship(self, ref):
        release = self.transport.deliver(make_bundle(self.root, ref), self.host, ref)
        self.manager.stage(release, self.host)
        self.manager.activate(release, self.host)
        return release

    def audit_entries(self):
        lines = (self.root / "logs" / "audit.log").read_text().splitlines()
        return [json.loads(line) for line in lines]

    def test_rollback_restores_prior(self):
        self.ship("v1")
        v2 = self.ship("v2")

        restored = self.controller.rollback(self.host, failed_release=v2)

        self.assertEqual(restored.identifier, "v1")
        self.assertEqual(pointer_target(self.host), "v1")
        state = self.manager.state(self.host)
        self.assertEqual(state.releases["v2"].status, ReleaseStatus.FAILED)
        self.assertEqual(state.releases["v1"].status, ReleaseStatus.LIVE)
        self.assertEqual(self.audit_entries()[-1]["result"], "SUCCESS")

    def test_defaults_to_live_release(self):
        self.ship("v1")
        self.ship("v2")

        self.controller.rollback(self.host)

        self.assertEqual(self.manager.state(self.host).releases["v2"].status, ReleaseStatus.FAILED)

    def test_restored_release_unhealthy(self):
        self.ship("v1")
        self.ship("v2")
        self.verifier.session = http_session(502)

        with self.assertRaises(RollbackFailed) as ctx:
            self.controller.rollback(self.host)

        self.assertIn("v1", str(ctx.exception))
        # The pointer stays on the restored release; rollbacks are never chained
        self.assertEqual(pointer_target(self.host), "v1")
        entry = self.audit_entries()[-1]
        self.assertEqual(entry["result"], "FAILED")
        self.assertEqual(entry["severity"], "CRITICAL")

    def test_nothing_to_restore(self):
        self.ship("v1")
        with self.assertRaises(RollbackFailed):
            self.controller.rollback(self.host)
        self.assertEqual(pointer_target(self.host), "v1")


if __name__ == '__main__':
    unittest.main()
