"""Tests for configuration management."""

import json
import os
import stat
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from releasectl.config import Config, ConfigError, ConfigValidationError, default_config_dir


class TestConfig(unittest.TestCase):

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.config = Config(Path(self.temp_dir.name) / "cfg")

    def tearDown(self):
        self.temp_dir.cleanup()

    def test_defaults(self):
        settings = self.config.load()
        self.assertEqual(settings['retention'], 5)
        self.assertEqual(settings['transfer_attempts'], 3)
        self.assertEqual(settings['required_files'], ['index.html'])
        self.assertEqual(settings['hosts'], {})

    def test_default_dir_from_environment(self):
        with patch.dict(os.environ, {'RELEASECTL_HOME': '/srv/releasectl'}):
            self.assertEqual(default_config_dir(), Path('/srv/releasectl'))

    def test_set_and_get(self):
        self.config.set('retention', 3)
        self.assertEqual(self.config.get('retention'), 3)
        mode = stat.S_IMODE(os.stat(self.config.config_file).st_mode)
        self.assertEqual(mode, 0o600)

    def test_set_rejects_invalid_values(self):
        with self.assertRaises(ConfigValidationError):
            self.config.set('retention', 0)
        with self.assertRaises(ConfigValidationError):
            self.config.set('retention', True)
        with self.assertRaises(ConfigValidationError):
            self.config.set('secret_store', 'keychain')
        with self.assertRaises(ConfigValidationError):
            self.config.set('deploy_root', 'relative/path')
        with self.assertRaises(ConfigError):
            self.config.set('colour', 'blue')

    def test_set_from_string(self):
        self.config.set_from_string('health_attempts=5')
        self.config.set_from_string('required_files=["index.html", "app.js"]')
        self.config.set_from_string('health_path=/healthz')
        self.config.set_from_string('reload_command=')

        settings = self.config.load()
        self.assertEqual(settings['health_attempts'], 5)
        self.assertEqual(settings['required_files'], ['index.html', 'app.js'])
        self.assertEqual(settings['health_path'], '/healthz')
        self.assertEqual(settings['reload_command'], '')

    def test_set_from_string_requires_assignment(self):
        with self.assertRaises(ConfigError):
            self.config.set_from_string('retention')

    def test_hosts(self):
        self.config.set('deploy_root', '/srv/site')
        self.config.add_host('web1', address='web1.example.com', url='https://example.com')
        self.config.add_host('web2', address='10.0.0.2', deploy_root='/opt/site', transport='ssh')

        web1 = self.config.get_host('web1')
        self.assertEqual(web1.address, 'web1.example.com')
        self.assertEqual(web1.auth_ref, 'web1')
        self.assertEqual(web1.deploy_root, '/srv/site')
        self.assertEqual(self.config.get_host('web2').deploy_root, '/opt/site')
        self.assertEqual([h.name for h in self.config.list_hosts()], ['web1', 'web2'])

        self.config.remove_host('web1')
        with self.assertRaises(ConfigError) as ctx:
            self.config.get_host('web1')
        self.assertTrue(ctx.exception.suggestions)

    def test_invalid_host_rejected(self):
        with self.assertRaises(ConfigValidationError):
            self.config.add_host('web1', address='not a host!')
        with self.assertRaises(ConfigValidationError):
            self.config.add_host('web1', address='web1', transport='ftp')

    def test_credentials_are_not_config(self):
        with self.assertRaises(ConfigValidationError):
            self.config.add_host('web1', address='web1', password='hunter2')

    def test_backup_and_restore(self):
        self.config.set('retention', 3)
        self.config.set('retention', 7)
        self.assertEqual(len(self.config.list_backups()), 1)

        self.config.restore_from_backup()
        self.assertEqual(self.config.get('retention'), 3)

    def test_restore_without_backups(self):
        with self.assertRaises(ConfigError):
            self.config.restore_from_backup()

    def test_backup_count_limit(self):
        self.config.set('backup_count', 2)
        for value in range(1, 6):
            self.config.set('retention', value)
        self.assertEqual(len(self.config.list_backups()), 2)

    def test_corrupt_file(self):
        self.config.config_dir.mkdir(parents=True)
        self.config.config_file.write_text('{"retention": ')
        with self.assertRaises(ConfigError):
            self.config.load()

    def test_unknown_field_in_file(self):
        self.config.config_dir.mkdir(parents=True)
        self.config.config_file.write_text(json.dumps({'retension': 3}))
        with self.assertRaises(ConfigValidationError):
            self.config.load()

    def test_reset(self):
        self.config.set('retention', 9)
        self.config.reset()
        self.assertEqual(self.config.get('retention'), 5)
        self.assertTrue(self.config.list_backups())


if __name__ == '__main__':
    unittest.main()
