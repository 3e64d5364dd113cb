"""Configuration management for releasectl with validation and backup.

Configuration never holds credentials. Hosts reference their credentials
through an ``auth_ref`` that is resolved by the secret store at connect time.
"""

import json
import os
import shutil
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Self

from .errors import ConfigurationError
from .models import TargetHost
from .validators import InputValidator, ValidationError


class ConfigError(ConfigurationError):
    """Configuration-related errors."""
    pass


class ConfigValidationError(ConfigError):
    """Raised when configuration validation fails."""
    pass


def default_config_dir() -> Path:
    """Return the configuration directory, honouring ``RELEASECTL_HOME``."""
    env_home = os.environ.get('RELEASECTL_HOME')
    if env_home:
        return Path(env_home)
    return Path.home() / ".releasectl"


class Config:
    """Manages releasectl configuration with validation and backup."""

    CONFIG_SCHEMA: Dict[str, Dict[str, Any]] = {
        'deploy_root': {'type': str, 'default': '/var/www/app', 'validator': 'validate_deploy_root'},
        'retention': {'type': int, 'min': 1, 'max': 100, 'default': 5},
        'transfer_attempts': {'type': int, 'min': 1, 'max': 10, 'default': 3},
        'connect_attempts': {'type': int, 'min': 1, 'max': 10, 'default': 3},
        'backoff_base': {'type': (int, float), 'min': 0, 'max': 60, 'default': 1.0},
        'command_timeout': {'type': int, 'min': 1, 'max': 3600, 'default': 60},
        'transfer_timeout': {'type': int, 'min': 10, 'max': 86400, 'default': 600},
        'health_attempts': {'type': int, 'min': 1, 'max': 50, 'default': 3},
        'health_delay': {'type': (int, float), 'min': 0, 'max': 300, 'default': 2.0},
        'health_path': {'type': str, 'default': '/'},
        'expected_status': {'type': int, 'min': 100, 'max': 599, 'default': 200},
        'probe_timeout': {'type': (int, float), 'min': 1, 'max': 300, 'default': 10},
        'required_files': {'type': list, 'default': ['index.html']},
        'reload_command': {'type': str, 'default': 'sudo systemctl reload nginx'},
        'attempt_timeout': {'type': int, 'min': 30, 'max': 86400, 'default': 900},
        'secret_store': {'type': str, 'choices': ['env', 'vault'], 'default': 'env'},
        'vault_path': {'type': str},
        'backup_count': {'type': int, 'min': 1, 'max': 50, 'default': 5},
        'hosts': {'type': dict, 'default': {}},
    }

    HOST_KEYS = {'address', 'auth_ref', 'deploy_root', 'url', 'port', 'transport'}

    def __init__(self: Self, config_dir: Optional[Path] = None) -> None:
        """Initialize configuration manager.

        Args:
            config_dir: Directory holding config.json. Defaults to
                ``$RELEASECTL_HOME`` or ``~/.releasectl``.
        """
        self.config_dir = Path(config_dir) if config_dir else default_config_dir()
        self.config_file = self.config_dir / "config.json"
        self.backup_dir = self.config_dir / "backups"

    def _ensure_directories(self: Self) -> None:
        """Create config directories with proper permissions."""
        self.config_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(self.config_dir, 0o700)
        self.backup_dir.mkdir(exist_ok=True)
        os.chmod(self.backup_dir, 0o700)

    def _validate_config_schema(self: Self, config: Dict[str, Any]) -> None:
        """Validate configuration against schema.

        Args:
            config: Configuration dictionary to validate.

        Raises:
            ConfigValidationError: If validation fails.
        """
        errors = []

        for key in config:
            if key not in self.CONFIG_SCHEMA:
                errors.append(f"Unknown field '{key}'")

        for key, schema in self.CONFIG_SCHEMA.items():
            value = config.get(key)
            if value is None:
                continue

            expected = schema['type']
            # bool is an int subclass; never accept it for numeric fields
            if isinstance(value, bool) or not isinstance(value, expected):
                names = expected.__name__ if isinstance(expected, type) else '/'.join(t.__name__ for t in expected)
                errors.append(f"Field '{key}' must be of type {names}")
                continue

            if 'choices' in schema and value not in schema['choices']:
                errors.append(f"Field '{key}' must be one of: {', '.join(schema['choices'])}")

            if 'min' in schema and value < schema['min']:
                errors.append(f"Field '{key}' must be >= {schema['min']}")
            if 'max' in schema and value > schema['max']:
                errors.append(f"Field '{key}' must be <= {schema['max']}")

            if 'validator' in schema:
                try:
                    getattr(InputValidator, schema['validator'])(value)
                except ValidationError as e:
                    errors.append(f"Field '{key}': {e}")

        for name, settings in (config.get('hosts') or {}).items():
            errors.extend(self._validate_host(name, settings))

        if errors:
            raise ConfigValidationError(f"Configuration validation failed: {'; '.join(errors)}")

    def _validate_host(self: Self, name: str, settings: Any) -> List[str]:
        if not isinstance(settings, dict):
            return [f"Host '{name}' must be a mapping"]

        errors = []
        unknown = set(settings) - self.HOST_KEYS
        if unknown:
            errors.append(f"Host '{name}' has unknown fields: {', '.join(sorted(unknown))}")

        checks = [
            ('name', InputValidator.validate_host_name, name),
            ('address', InputValidator.validate_address, settings.get('address', '')),
        ]
        if settings.get('url'):
            checks.append(('url', InputValidator.validate_url, settings['url']))
        if settings.get('deploy_root'):
            checks.append(('deploy_root', InputValidator.validate_deploy_root, settings['deploy_root']))

        for field_name, check, value in checks:
            try:
                check(value)
            except ValidationError as e:
                errors.append(f"Host '{name}' {field_name}: {e}")

        if settings.get('transport', 'ssh') not in ('ssh', 'local'):
            errors.append(f"Host '{name}' transport must be 'ssh' or 'local'")

        return errors

    def _create_backup(self: Self) -> None:
        """Create a backup of the current configuration."""
        if not self.config_file.exists():
            return

        try:
            timestamp = datetime.now().strftime('%Y%m%d_%H%M%S_%f')
            backup_file = self.backup_dir / f"config_{timestamp}.json"
            shutil.copy2(self.config_file, backup_file)
            os.chmod(backup_file, 0o600)
        except OSError as e:
            raise ConfigError(f"Failed to create backup: {e}")

        self._cleanup_old_backups()

    def _cleanup_old_backups(self: Self) -> None:
        """Remove old backup files beyond the configured limit."""
        backup_files = sorted(self.backup_dir.glob("config_*.json"), reverse=True)
        max_backups = self.load(validate=False).get('backup_count', 5)
        for old_backup in backup_files[max_backups:]:
            old_backup.unlink(missing_ok=True)

    def list_backups(self: Self) -> List[str]:
        """List available configuration backups, newest first."""
        if not self.backup_dir.is_dir():
            return []
        return sorted(
            (path.name[len("config_"):-len(".json")] for path in self.backup_dir.glob("config_*.json")),
            reverse=True,
        )

    def restore_from_backup(self: Self, backup_timestamp: Optional[str] = None) -> None:
        """Restore configuration from backup.

        Args:
            backup_timestamp: Optional backup timestamp to restore from.
                If None, restores from the most recent backup.

        Raises:
            ConfigError: If no backup exists or restoration fails.
        """
        backups = self.list_backups()
        if not backups:
            raise ConfigError("No backup files found")

        timestamp = backup_timestamp or backups[0]
        backup_file = self.backup_dir / f"config_{timestamp}.json"
        if not backup_file.exists():
            raise ConfigError(f"Backup file not found: {backup_file}")

        try:
            shutil.copy2(backup_file, self.config_file)
            os.chmod(self.config_file, 0o600)
        except OSError as e:
            raise ConfigError(f"Failed to restore from backup: {e}")

    def load(self: Self, validate: bool = True) -> Dict[str, Any]:
        """Load configuration from file, applying defaults.

        Args:
            validate: Whether to validate the configuration schema.

        Returns:
            Dictionary containing configuration data.

        Raises:
            ConfigError: If loading fails.
        """
        config: Dict[str, Any] = {}
        if self.config_file.exists():
            try:
                with open(self.config_file, 'r') as f:
                    config = json.load(f)
            except (json.JSONDecodeError, IOError) as e:
                raise ConfigError(
                    f"Failed to load configuration: {e}",
                    ["Restore the last good configuration: releasectl config --restore"],
                )

        for key, schema in self.CONFIG_SCHEMA.items():
            if key not in config and 'default' in schema:
                default = schema['default']
                config[key] = default.copy() if isinstance(default, (dict, list)) else default

        if validate:
            self._validate_config_schema(config)

        return config

    def save(self: Self, config: Dict[str, Any], create_backup: bool = True) -> None:
        """Save configuration to file after validation.

        Args:
            config: Configuration dictionary to save.
            create_backup: Whether to create a backup before saving.

        Raises:
            ConfigError: If validation or saving fails.
        """
        self._validate_config_schema(config)
        self._ensure_directories()

        if create_backup and self.config_file.exists():
            self._create_backup()

        # Write to temporary file first, then move to prevent corruption
        temp_file = self.config_file.with_suffix('.tmp')
        try:
            with open(temp_file, 'w') as f:
                json.dump(config, f, indent=2, sort_keys=True)
            os.chmod(temp_file, 0o600)
            temp_file.replace(self.config_file)
        except OSError as e:
            temp_file.unlink(missing_ok=True)
            raise ConfigError(f"Failed to save configuration: {e}")

    def get(self: Self, key: str, default: Any = None) -> Any:
        """Get configuration value.

        Args:
            key: Configuration key to retrieve.
            default: Default value if key not found.

        Returns:
            Configuration value or default.
        """
        return self.load().get(key, default)

    def set(self: Self, key: str, value: Any) -> None:
        """Set a configuration value with validation.

        Raises:
            ConfigError: If the key is unknown or the value is invalid.
        """
        if key not in self.CONFIG_SCHEMA or key == 'hosts':
            raise ConfigError(f"Unknown configuration key: {key}")
        config = self.load(validate=False)
        config[key] = value
        self.save(config)

    def set_from_string(self: Self, assignment: str) -> None:
        """Apply a ``key=value`` assignment typed on the command line.

        The value is parsed as JSON when possible so numbers and lists keep
        their types; anything else is stored as a plain string.
        """
        if '=' not in assignment:
            raise ConfigError(f"Expected key=value, got '{assignment}'")
        key, raw = assignment.split('=', 1)
        try:
            value = json.loads(raw)
        except json.JSONDecodeError:
            value = raw
        self.set(key.strip(), value)

    def add_host(self: Self, name: str, **settings: Any) -> TargetHost:
        """Register or update a target host."""
        config = self.load(validate=False)
        hosts = config.setdefault('hosts', {})
        entry = {key: value for key, value in settings.items() if value not in (None, '')}
        hosts[name] = {**hosts.get(name, {}), **entry}
        self.save(config)
        return TargetHost.from_config(name, hosts[name], config)

    def remove_host(self: Self, name: str) -> None:
        """Forget a target host. Nothing on the host itself is touched."""
        config = self.load(validate=False)
        if name not in config.get('hosts', {}):
            raise ConfigError(f"Unknown host: {name}")
        del config['hosts'][name]
        self.save(config)

    def get_host(self: Self, name: str) -> TargetHost:
        """Resolve a configured host by name.

        Raises:
            ConfigError: If the host is not configured.
        """
        config = self.load()
        settings = config.get('hosts', {}).get(name)
        if settings is None:
            raise ConfigError(
                f"Unknown host: {name}",
                [f"Register it first: releasectl hosts add {name} --address <ADDRESS>"],
            )
        return TargetHost.from_config(name, settings, config)

    def list_hosts(self: Self) -> List[TargetHost]:
        config = self.load()
        return [
            TargetHost.from_config(name, settings, config)
            for name, settings in sorted(config.get('hosts', {}).items())
        ]

    def reset(self: Self) -> None:
        """Reset configuration to defaults, keeping a backup of the old one."""
        self._ensure_directories()
        if self.config_file.exists():
            self._create_backup()
            self.config_file.unlink()
        self.save({}, create_backup=False)
