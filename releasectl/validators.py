"""Input validation for releasectl.

Release refs and paths end up inside remote shell commands, so everything
an operator types is validated here before it reaches a host.
"""

import ipaddress
import re
from urllib.parse import urlparse

from .errors import ValidationError


class InputValidator:
    """Validates and sanitizes operator inputs."""

    PATTERNS = {
        'release_ref': re.compile(r'^[a-zA-Z0-9][a-zA-Z0-9._\-]{0,63}$'),
        'host_name': re.compile(r'^[a-zA-Z0-9]([a-zA-Z0-9\-_]{0,62}[a-zA-Z0-9])?$'),
        'hostname': re.compile(r'^[a-zA-Z0-9]([a-zA-Z0-9\-]{0,61}[a-zA-Z0-9])?(\.[a-zA-Z0-9]([a-zA-Z0-9\-]{0,61}[a-zA-Z0-9])?)*$'),
        'checksum': re.compile(r'^[a-f0-9]{64}$'),
        'deploy_root': re.compile(r'^/[a-zA-Z0-9_\-./]*$'),
    }

    MAX_LENGTHS = {
        'address': 253,
        'url': 2048,
        'deploy_root': 1024,
    }

    # Names used by the host layout itself
    RESERVED_REFS = {'current', 'incoming', 'releases', 'current.tmp'}

    @classmethod
    def validate_release_ref(cls, ref: str) -> str:
        """Validate a release reference such as ``v5`` or ``2024.06.01-1``.

        Args:
            ref: Release reference to validate

        Returns:
            The release reference

        Raises:
            ValidationError: If the reference is invalid
        """
        if not ref:
            raise ValidationError("Release reference cannot be empty")

        if not cls.PATTERNS['release_ref'].match(ref):
            raise ValidationError(
                "Release reference must start with a letter or digit and contain only "
                "letters, digits, dots, underscores and hyphens (max 64 characters)"
            )

        if '..' in ref:
            raise ValidationError("Release reference cannot contain '..'")

        if ref.lower() in cls.RESERVED_REFS:
            raise ValidationError(f"Release reference '{ref}' is reserved")

        return ref

    @classmethod
    def validate_host_name(cls, name: str) -> str:
        """Validate the operator-facing name of a host."""
        if not name:
            raise ValidationError("Host name cannot be empty")

        if not cls.PATTERNS['host_name'].match(name):
            raise ValidationError(
                "Host name must contain only letters, digits, hyphens and underscores "
                "and cannot start or end with a separator"
            )

        return name

    @classmethod
    def validate_address(cls, address: str) -> str:
        """Validate a host address (DNS name or IP address).

        Args:
            address: Address to validate

        Returns:
            Normalised address

        Raises:
            ValidationError: If the address is invalid
        """
        if not address:
            raise ValidationError("Host address cannot be empty")

        address = address.strip().lower()

        if len(address) > cls.MAX_LENGTHS['address']:
            raise ValidationError(f"Host address cannot exceed {cls.MAX_LENGTHS['address']} characters")

        try:
            ipaddress.ip_address(address)
            return address
        except ValueError:
            pass

        if not cls.PATTERNS['hostname'].match(address):
            raise ValidationError(f"Invalid host address: {address}")

        return address

    @classmethod
    def validate_url(cls, url: str) -> str:
        """Validate an HTTP(S) URL used for end-to-end health probes.

        Args:
            url: URL to validate

        Returns:
            URL without trailing slash

        Raises:
            ValidationError: If URL is invalid
        """
        if not url:
            raise ValidationError("URL cannot be empty")

        if len(url) > cls.MAX_LENGTHS['url']:
            raise ValidationError(f"URL cannot exceed {cls.MAX_LENGTHS['url']} characters")

        parsed = urlparse(url)
        if parsed.scheme not in ('http', 'https'):
            raise ValidationError("URL must use http or https protocol")

        if not parsed.netloc:
            raise ValidationError("URL must include a host")

        return url.strip().rstrip('/')

    @classmethod
    def validate_deploy_root(cls, path: str) -> str:
        """Validate the deploy root on a host.

        Must be absolute, free of traversal and shell metacharacters, and
        not the filesystem root.
        """
        if not path:
            raise ValidationError("Deploy root cannot be empty")

        path = path.rstrip('/')

        if len(path) > cls.MAX_LENGTHS['deploy_root']:
            raise ValidationError("Deploy root is too long")

        if not path or not cls.PATTERNS['deploy_root'].match(path):
            raise ValidationError(
                "Deploy root must be an absolute path made of letters, digits, "
                "dots, underscores, hyphens and slashes"
            )

        if '..' in path.split('/'):
            raise ValidationError("Deploy root cannot contain '..'")

        return path

    @classmethod
    def validate_checksum(cls, checksum: str) -> str:
        """Validate a sha256 hex digest."""
        checksum = (checksum or '').strip().lower()
        if not cls.PATTERNS['checksum'].match(checksum):
            raise ValidationError("Checksum must be a 64 character sha256 hex digest")
        return checksum
