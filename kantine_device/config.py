"""Configuration management for the Kantine device client with validation and backup."""

import json
import os
import shutil
import uuid
from datetime import datetime
from pathlib import Path
from typing import Optional, Dict, Any, Self, List

from .errors import ConfigurationError

DEFAULT_URL = "https://kantinekoning.com"


def kantine_home() -> Path:
    """Return the state directory, honouring ``KANTINE_HOME``."""
    override = os.environ.get("KANTINE_HOME")
    if override:
        return Path(override).expanduser()
    return Path.home() / ".kantine"


class ConfigError(ConfigurationError):
    """Configuration-related errors."""
    pass


class ConfigValidationError(ConfigError):
    """Raised when configuration validation fails."""
    pass


class ConfigBackupError(ConfigError):
    """Raised when backup operations fail."""
    pass


class Config:
    """Manages device configuration with validation and backup."""

    # Configuration schema for validation
    CONFIG_SCHEMA = {
        'url': {'type': str, 'required': False, 'validator': 'validate_url', 'default': DEFAULT_URL},
        'timeout': {'type': int, 'required': False, 'min': 5, 'max': 300, 'default': 30},
        'retries': {'type': int, 'required': False, 'min': 0, 'max': 10, 'default': 3},
        'reconcile_interval': {'type': int, 'required': False, 'min': 60, 'max': 86400, 'default': 3600},
        'fresh_data_timeout': {'type': float, 'required': False, 'min': 0.5, 'max': 60, 'default': 5.0},
        'push_retry_delay': {'type': float, 'required': False, 'min': 1, 'max': 3600, 'default': 30.0},
        'cache_ttl_default': {'type': int, 'required': False, 'min': 1, 'default': 300},
        'cache_ttl_long': {'type': int, 'required': False, 'min': 1, 'default': 3600},
        'cache_memory_bytes': {'type': int, 'required': False, 'min': 1024, 'default': 50 * 1024 * 1024},
        'hardware_identifier': {'type': str, 'required': False},
        'backup_count': {'type': int, 'required': False, 'min': 1, 'max': 50, 'default': 5}
    }

    def __init__(self: Self, home: Optional[Path] = None) -> None:
        """Initialize configuration manager.

        Args:
            home: State directory. Defaults to ``kantine_home()``.
        """
        self.config_dir = Path(home) if home else kantine_home()
        self.config_file = self.config_dir / "config.json"
        self.backup_dir = self.config_dir / "backups"
        self._ensure_directories()

    def _ensure_directories(self: Self) -> None:
        """Create config directories with proper permissions."""
        self.config_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(self.config_dir, 0o700)

        self.backup_dir.mkdir(exist_ok=True)
        os.chmod(self.backup_dir, 0o700)

    @staticmethod
    def _matches_type(value: Any, expected: type) -> bool:
        if isinstance(value, bool):
            return expected is bool
        if expected is float:
            return isinstance(value, (int, float))
        return isinstance(value, expected)

    def _validate_config_schema(self: Self, config: Dict[str, Any]) -> None:
        """Validate configuration against schema.

        Args:
            config: Configuration dictionary to validate.

        Raises:
            ConfigValidationError: If validation fails.
        """
        errors = []

        for key, schema in self.CONFIG_SCHEMA.items():
            value = config.get(key)

            if schema['required'] and value is None:
                errors.append(f"Required field '{key}' is missing")
                continue

            if value is None:
                continue

            if not self._matches_type(value, schema['type']):
                errors.append(f"Field '{key}' must be of type {schema['type'].__name__}")
                continue

            if 'min' in schema and value < schema['min']:
                errors.append(f"Field '{key}' must be >= {schema['min']}")
            if 'max' in schema and value > schema['max']:
                errors.append(f"Field '{key}' must be <= {schema['max']}")

            if 'validator' in schema:
                validator = getattr(self, schema['validator'], None)
                if validator and not validator(value):
                    errors.append(f"Field '{key}' failed validation")

        unknown = sorted(set(config) - set(self.CONFIG_SCHEMA))
        if unknown:
            errors.append(f"Unknown field(s): {', '.join(unknown)}")

        if errors:
            raise ConfigValidationError(f"Configuration validation failed: {'; '.join(errors)}")

    def validate_url(self: Self, url: str) -> bool:
        """Validate URL format.

        Args:
            url: URL to validate.

        Returns:
            True if valid, False otherwise.
        """
        if not isinstance(url, str):
            return False
        return url.startswith(('http://', 'https://'))

    def _create_backup(self: Self) -> None:
        """Create a backup of the current configuration."""
        if not self.config_file.exists():
            return

        try:
            timestamp = datetime.now().strftime('%Y%m%d_%H%M%S_%f')
            backup_file = self.backup_dir / f"config_{timestamp}.json"

            shutil.copy2(self.config_file, backup_file)
            os.chmod(backup_file, 0o600)

            self._cleanup_old_backups()

        except OSError as e:
            raise ConfigBackupError(f"Failed to create backup: {e}")

    def _cleanup_old_backups(self: Self) -> None:
        """Remove old backup files beyond the configured limit."""
        backup_files = sorted(
            self.backup_dir.glob("config_*.json"),
            key=lambda x: x.name,
            reverse=True
        )

        max_backups = self._read_raw().get('backup_count', 5)
        for old_backup in backup_files[max_backups:]:
            try:
                old_backup.unlink()
            except OSError:
                # Don't fail on backup cleanup errors
                continue

    def _read_raw(self: Self) -> Dict[str, Any]:
        try:
            with open(self.config_file, 'r') as f:
                data = json.load(f)
            return data if isinstance(data, dict) else {}
        except (OSError, json.JSONDecodeError):
            return {}

    def restore_from_backup(self: Self, backup_timestamp: Optional[str] = None) -> None:
        """Restore configuration from backup.

        Args:
            backup_timestamp: Optional backup timestamp to restore from.
                            If None, restores from the most recent backup.

        Raises:
            ConfigError: If no backup exists or restoration fails.
        """
        if backup_timestamp:
            backup_file = self.backup_dir / f"config_{backup_timestamp}.json"
        else:
            backup_files = list(self.backup_dir.glob("config_*.json"))
            if not backup_files:
                raise ConfigError("No backup files found")

            backup_file = max(backup_files, key=lambda x: x.name)

        if not backup_file.exists():
            raise ConfigError(f"Backup file not found: {backup_file}")

        try:
            shutil.copy2(backup_file, self.config_file)
            os.chmod(self.config_file, 0o600)
        except OSError as e:
            raise ConfigError(f"Failed to restore from backup: {e}")

    def load(self: Self, validate: bool = True) -> Dict[str, Any]:
        """Load configuration from file with defaults applied.

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
            except json.JSONDecodeError as e:
                # Try to restore from backup if current config is corrupted
                try:
                    self.restore_from_backup()
                except ConfigError:
                    raise ConfigError(f"Failed to load configuration: {e}")
                return self.load(validate=validate)
            except OSError as e:
                raise ConfigError(f"Failed to load configuration: {e}")

            if not isinstance(config, dict):
                raise ConfigError("Failed to load configuration: expected a JSON object")

        for key, schema in self.CONFIG_SCHEMA.items():
            if key not in config and 'default' in schema:
                config[key] = schema['default']

        override = os.environ.get("KANTINE_API_URL")
        if override:
            config['url'] = override

        if validate:
            self._validate_config_schema(config)

        return config

    def save(self: Self, config: Dict[str, Any], create_backup: bool = True) -> None:
        """Save configuration to file with validation.

        Args:
            config: Configuration dictionary to save.
            create_backup: Whether to create a backup before saving.

        Raises:
            ConfigError: If validation or saving fails.
        """
        self._validate_config_schema(config)

        if create_backup and self.config_file.exists():
            self._create_backup()

        # Write to temporary file first, then move to prevent corruption
        temp_file = self.config_file.with_suffix('.tmp')
        try:
            with open(temp_file, 'w') as f:
                json.dump(config, f, indent=2)

            os.chmod(temp_file, 0o600)
            temp_file.replace(self.config_file)
        except OSError as e:
            if temp_file.exists():
                temp_file.unlink()
            raise ConfigError(f"Failed to save configuration: {e}")

    def get(self: Self, key: str, default: Any = None) -> Any:
        """Get configuration value.

        Args:
            key: Configuration key to retrieve.
            default: Default value if key not found.

        Returns:
            Configuration value or default.
        """
        try:
            config = self.load(validate=False)
            return config.get(key, default)
        except ConfigError:
            return default

    def set(self: Self, key: str, value: Any) -> None:
        """Set configuration value with validation.

        Args:
            key: Configuration key to set.
            value: Value to set for the key.

        Raises:
            ConfigError: If validation fails.
        """
        config = self._read_raw()
        config[key] = value
        self.save(config, create_backup=True)

    def get_url(self: Self) -> str:
        """Get the backend base URL."""
        return self.get('url', DEFAULT_URL)

    def get_hardware_identifier(self: Self) -> str:
        """Return the persistent hardware identifier, generating it on first use."""
        identifier = self._read_raw().get('hardware_identifier')
        if identifier:
            return identifier
        identifier = str(uuid.uuid4())
        self.set('hardware_identifier', identifier)
        return identifier

    def list_backups(self: Self) -> List[str]:
        """List available configuration backups.

        Returns:
            List of backup timestamps, newest first.
        """
        timestamps = []
        for backup_file in self.backup_dir.glob("config_*.json"):
            name = backup_file.name
            timestamps.append(name[len("config_"):-len(".json")])
        return sorted(timestamps, reverse=True)

    def validate_configuration(self: Self) -> Dict[str, Any]:
        """Validate current configuration and return validation results.

        Returns:
            Dictionary with validation results and suggestions.
        """
        results = {
            'valid': True,
            'errors': [],
            'warnings': [],
            'suggestions': []
        }

        try:
            config = self.load()

            if config['cache_ttl_long'] < config['cache_ttl_default']:
                results['warnings'].append("cache_ttl_long is shorter than cache_ttl_default")
                results['suggestions'].append("Use the long TTL class for slowly changing data")

            if config['reconcile_interval'] < 600:
                results['warnings'].append(
                    f"Reconciliation every {config['reconcile_interval']}s may put load on the backend"
                )
                results['suggestions'].append("Consider the default interval of 3600 seconds")

        except ConfigError as e:
            results['valid'] = False
            results['errors'].append(str(e))
            results['suggestions'].append("Try restoring from backup or reset the configuration")

        return results

    def reset(self: Self) -> None:
        """Reset configuration to default state.

        Creates a backup before resetting. The hardware identifier is kept so
        the backend keeps recognising this device.
        """
        identifier = self._read_raw().get('hardware_identifier')
        if self.config_file.exists():
            self._create_backup()
            self.config_file.unlink()

        config = {}
        for key, schema in self.CONFIG_SCHEMA.items():
            if 'default' in schema:
                config[key] = schema['default']
        if identifier:
            config['hardware_identifier'] = identifier

        self.save(config, create_backup=False)
