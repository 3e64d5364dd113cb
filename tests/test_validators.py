"""Tests for operator input validation."""

import unittest

from releasectl.errors import ValidationError
from releasectl.validators import InputValidator


class TestReleaseRef(unittest.TestCase):

    def test_valid(self):
        for ref in ('v5', '2024.06.01-1', 'release_42', 'a' * 64):
            self.assertEqual(InputValidator.validate_release_ref(ref), ref)

    def test_invalid(self):
        for ref in ('', '-v1', '.hidden', '../etc', 'v1/../x', 'v1;rm -rf /', 'a b', 'a' * 65, 'v1..2'):
            with self.assertRaises(ValidationError, msg=ref):
                InputValidator.validate_release_ref(ref)

    def test_reserved(self):
        for ref in ('current', 'incoming', 'Releases'):
            with self.assertRaises(ValidationError, msg=ref):
                InputValidator.validate_release_ref(ref)


class TestHostInputs(unittest.TestCase):

    def test_host_name(self):
        self.assertEqual(InputValidator.validate_host_name('web-1'), 'web-1')
        with self.assertRaises(ValidationError):
            InputValidator.validate_host_name('web 1')

    def test_address(self):
        self.assertEqual(InputValidator.validate_address(' Web1.Example.com '), 'web1.example.com')
        self.assertEqual(InputValidator.validate_address('10.0.0.1'), '10.0.0.1')
        self.assertEqual(InputValidator.validate_address('::1'), '::1')
        for address in ('', 'web1..example.com', 'web1;id', '-web1'):
            with self.assertRaises(ValidationError, msg=address):
                InputValidator.validate_address(address)

    def test_url(self):
        self.assertEqual(InputValidator.validate_url('https://example.com/'), 'https://example.com')
        for url in ('', 'ftp://example.com', 'https://'):
            with self.assertRaises(ValidationError, msg=url):
                InputValidator.validate_url(url)

    def test_deploy_root(self):
        self.assertEqual(InputValidator.validate_deploy_root('/var/www/site/'), '/var/www/site')
        for path in ('', '/', 'var/www', '/var/../etc', '/var/www; rm -rf /', '/var/$HOME'):
            with self.assertRaises(ValidationError, msg=path):
                InputValidator.validate_deploy_root(path)


class TestChecksum(unittest.TestCase):

    def test_normalised(self):
        self.assertEqual(InputValidator.validate_checksum('AB' * 32), 'ab' * 32)

    def test_invalid(self):
        for checksum in ('', 'abc', 'g' * 64, 'a' * 63):
            with self.assertRaises(ValidationError, msg=checksum):
                InputValidator.validate_checksum(checksum)


if __name__ == '__main__':
    unittest.main()
