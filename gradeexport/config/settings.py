"""
Configuration Management

Configuration of the grade exporter: the database to read, the roles that
count as graded, the profile columns and grade display types to export,
and how to log. A JSON file is merged over the schema defaults and every
field is checked against the schema. A bad value is reported and replaced
by its default so a typo in the file never blocks an export.

Features:
- Dot notation, attribute access and dictionary access
- Per-field type, range, allowed-value and custom checks
- Only values the user set are written back to the file
- Builders for the query settings and the logging configuration

Usage Examples:
    config = get_config()

    config.get('database.fetch_size')
    config.database.fetch_size
    config['database']['fetch_size']
    config.safe_get('database.fetch_size', 500, int)
"""

import copy
import json
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple, Type, Union

from ..storage.queries import QuerySettings
from ..utils.logger import get_logger
from .constants import (
    ConfigDefaults, DISPLAY_TYPES, SORT_DIRECTIONS, SORTABLE_USER_FIELDS, USER_DEFAULT_FIELDS,
)

TRUE_STRINGS = ('true', 'yes', '1', 'on')


class ConfigurationError(Exception):
    """Configuration could not be read or written."""


class ConfigurationValidationError(ConfigurationError):
    """A value was rejected by the configuration schema."""


def _coerce(value: Any, target: Type) -> Any:
    """Convert ``value`` to ``target``; lists and dicts are never converted."""
    if isinstance(value, target):
        return value
    if target in (list, dict):
        raise TypeError(target.__name__)
    if target is bool and isinstance(value, str):
        return value.strip().lower() in TRUE_STRINGS
    return target(value)


@dataclass
class ConfigField:
    """One entry of the configuration schema."""
    name: str
    field_type: Type
    default: Any
    description: str = ""
    required: bool = False
    min_value: Optional[Union[int, float]] = None
    max_value: Optional[Union[int, float]] = None
    allowed_values: Optional[List[Any]] = None
    validation_func: Optional[Callable[[Any], bool]] = None

    def validate(self, value: Any) -> Tuple[bool, str]:
        """
        Check a value against this field.

        Returns:
            Tuple[bool, str]: (is_valid, problem); the problem is empty when valid
        """
        if value is None:
            return (False, f"'{self.name}' is required") if self.required else (True, "")

        try:
            value = _coerce(value, self.field_type)
        except (ValueError, TypeError):
            return False, f"'{self.name}' expects {self.field_type.__name__}, got {value!r}"

        if self.min_value is not None and value < self.min_value:
            return False, f"'{self.name}' is below the minimum of {self.min_value}"
        if self.max_value is not None and value > self.max_value:
            return False, f"'{self.name}' is above the maximum of {self.max_value}"
        if self.allowed_values is not None and value not in self.allowed_values:
            return False, f"'{self.name}' must be one of {self.allowed_values}"

        if self.validation_func is not None:
            try:
                accepted = self.validation_func(value)
            except Exception as e:
                return False, f"'{self.name}' could not be checked: {e}"
            if not accepted:
                return False, f"'{self.name}' has an unsupported value {value!r}"

        return True, ""


class ConfigSection:
    """Read-only view of one configuration section with attribute and item access."""

    def __init__(self, name: str, data: Dict[str, Any]):
        self._name = name
        self._data = data

    def __getattr__(self, key: str) -> Any:
        if key.startswith('_'):
            raise AttributeError(key)
        try:
            return self._data[key]
        except KeyError:
            raise AttributeError(f"Section '{self._name}' has no setting '{key}'") from None

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __contains__(self, key: str) -> bool:
        return key in self._data

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def to_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(self._data)


def _merge(base: Dict[str, Any], overrides: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in overrides.items():
        if isinstance(merged.get(key), dict) and isinstance(value, dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _field(section: str, key: str, description: str, **kwargs) -> ConfigField:
    default, field_type = ConfigDefaults.get_default_and_type(section, key)
    return ConfigField(key, field_type, default, description, **kwargs)


def _valid_display_types(value: List[str]) -> bool:
    return bool(value) and all(str(v).lower() in DISPLAY_TYPES for v in value)


def _valid_profile_fields(value: List[str]) -> bool:
    return all(v in USER_DEFAULT_FIELDS for v in value)


def _valid_roles(value: List[int]) -> bool:
    return all(isinstance(v, int) and not isinstance(v, bool) for v in value)


class GradeExportConfig:
    """
    Grade exporter configuration manager.

    An unreadable file or an invalid value falls back to the defaults and
    is logged; it is never fatal.
    """

    CONFIG_SCHEMA = {
        'app_info': {
            'name': ConfigField('name', str, 'Grade Export', 'Application name'),
            'version': ConfigField('version', str, '0.1.0', 'Application version'),
        },
        'database': {
            'url': _field('database', 'url', 'SQLAlchemy URL of the gradebook database'),
            'fetch_size': _field('database', 'fetch_size', 'Rows fetched per round trip while streaming',
                                 min_value=1, max_value=100000),
            'echo': _field('database', 'echo', 'Log every SQL statement'),
        },
        'gradebook': {
            'gradebook_roles': _field('gradebook', 'gradebook_roles',
                                      'Role ids whose holders are graded (empty = no role filter)',
                                      validation_func=_valid_roles),
            'profile_fields': _field('gradebook', 'profile_fields', 'Standard user fields to export',
                                     validation_func=_valid_profile_fields),
            'custom_profile_fields': _field('gradebook', 'custom_profile_fields',
                                            'Shortnames of custom profile fields to export'),
        },
        'export': {
            'display_types': _field('export', 'display_types', 'Grade display types to export',
                                    validation_func=_valid_display_types),
            'decimal_points': _field('export', 'decimal_points', 'Decimal places of real and percentage grades',
                                     min_value=0, max_value=5),
            'export_feedback': _field('export', 'export_feedback', 'Add a feedback column per grade item'),
            'feedback_as_markdown': _field('export', 'feedback_as_markdown', 'Convert HTML feedback to Markdown'),
            'only_active': _field('export', 'only_active', 'Only export users with an active enrolment'),
            'include_custom_fields': _field('export', 'include_custom_fields', 'Export custom profile fields'),
            'sortfield1': _field('export', 'sortfield1', 'First user sort field',
                                 allowed_values=[''] + list(SORTABLE_USER_FIELDS)),
            'sortorder1': _field('export', 'sortorder1', 'First sort direction',
                                 allowed_values=list(SORT_DIRECTIONS)),
            'sortfield2': _field('export', 'sortfield2', 'Second user sort field',
                                 allowed_values=[''] + list(SORTABLE_USER_FIELDS)),
            'sortorder2': _field('export', 'sortorder2', 'Second sort direction',
                                 allowed_values=list(SORT_DIRECTIONS)),
            'output_folder': _field('export', 'output_folder', 'Folder for exported files'),
        },
        'paths': {
            'config_folder': ConfigField('config_folder', str, 'config', 'Folder holding config and profiles'),
            'logs_folder': ConfigField('logs_folder', str, 'logs', 'Folder for rotating log files'),
        },
        'logging': {
            'level': ConfigField('level', str, 'INFO', 'Root log level',
                                 allowed_values=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']),
            'console_output': ConfigField('console_output', bool, True, 'Log to stderr'),
            'use_rich_console': ConfigField('use_rich_console', bool, True, 'Use the Rich log handler'),
            'file_output': ConfigField('file_output', bool, False, 'Write JSON log files'),
            'max_log_size_mb': ConfigField('max_log_size_mb', int, 50, 'Rotate log files at this size',
                                           min_value=1, max_value=1000),
            'backup_count': ConfigField('backup_count', int, 5, 'Rotated log files to keep',
                                        min_value=1, max_value=50),
            'format': ConfigField('format', str, '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
                                  'Format of plain console lines'),
        },
        'ui': {
            'use_rich_progress': ConfigField('use_rich_progress', bool, True, 'Show a Rich progress bar'),
            'show_progress': ConfigField('show_progress', bool, True, 'Show export progress'),
            'progress_update_every': ConfigField('progress_update_every', int, 50,
                                                 'Users between plain progress lines',
                                                 min_value=1, max_value=100000),
            'color_output': ConfigField('color_output', bool, True, 'Colour console output'),
        },
    }

    def __init__(self, config_file: Union[str, Path] = None, create_if_missing: bool = True):
        """
        Load and check the configuration.

        Args:
            config_file: JSON file to read (default ``config/config.json``)
            create_if_missing: Write an empty file when none exists
        """
        self.logger = get_logger(__name__)
        self._lock = threading.RLock()
        self.config_file = Path(config_file) if config_file else Path('config') / 'config.json'
        self.create_if_missing = create_if_missing

        self._user_config: Dict[str, Any] = {}
        self._validation_errors: List[str] = []
        self._config = self._defaults()

        self._user_config = self._read_user_config()
        self._config = _merge(self._config, self._user_config)
        self._validate_configuration()

        self.logger.debug("Configuration ready", config_file=str(self.config_file),
                          problems=len(self._validation_errors))

    @classmethod
    def _defaults(cls) -> Dict[str, Dict[str, Any]]:
        return {
            section: {name: copy.deepcopy(f.default) for name, f in fields.items()}
            for section, fields in cls.CONFIG_SCHEMA.items()
        }

    def __getattr__(self, name: str) -> ConfigSection:
        if name.startswith('_'):
            raise AttributeError(name)
        section = self._config.get(name)
        if not isinstance(section, dict):
            self.logger.warning(f"Unknown configuration section '{name}'")
            section = {}
        return ConfigSection(name, section)

    def __getitem__(self, key: str) -> Any:
        return self._config[key]

    def get(self, key_path: str, default: Any = None) -> Any:
        """
        Look up a value by dotted path such as ``'database.fetch_size'``.

        Returns ``default`` when any part of the path is missing.
        """
        with self._lock:
            node: Any = self._config
            for part in key_path.split('.'):
                if not isinstance(node, dict) or part not in node:
                    return default
                node = node[part]
            return node

    def safe_get(self, key_path: str, default: Any = None, expected_type: Type = None) -> Any:
        """
        Like get(), but converted to ``expected_type``.

        Strings such as ``"no"`` become booleans. Values that cannot be
        converted, and anything that is not already a list or dict when
        one is expected, give back ``default``.
        """
        value = self.get(key_path, default)
        if expected_type is None or value is None:
            return value

        try:
            return _coerce(value, expected_type)
        except (ValueError, TypeError):
            self.logger.warning(f"'{key_path}' is not a usable {expected_type.__name__}, using default")
            return default

    def set(self, key_path: str, value: Any) -> None:
        """
        Change a value and remember it as a user setting.

        Raises:
            ConfigurationValidationError: Unknown key or rejected value
        """
        section, _, name = key_path.partition('.')
        schema_field = self.CONFIG_SCHEMA.get(section, {}).get(name)
        if schema_field is None:
            raise ConfigurationValidationError(f"Unknown configuration key '{key_path}'")

        ok, problem = schema_field.validate(value)
        if not ok:
            raise ConfigurationValidationError(problem)

        with self._lock:
            self._config[section][name] = value
            self._user_config.setdefault(section, {})[name] = value

    def _read_user_config(self) -> Dict[str, Any]:
        if not self.config_file.exists():
            if self.create_if_missing:
                try:
                    self.save_config()
                    self.logger.info(f"Wrote empty configuration to {self.config_file}")
                except ConfigurationError as e:
                    self.logger.warning("Could not write a configuration file", exception=e)
            return {}

        try:
            with open(self.config_file, encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            self.logger.error("Configuration file unreadable, using defaults", exception=e,
                              config_file=str(self.config_file))
            return {}

        if not isinstance(data, dict):
            self.logger.error("Configuration file is not a JSON object, using defaults",
                              config_file=str(self.config_file))
            return {}

        return data

    def _validate_configuration(self) -> None:
        problems = []
        for section, fields in self.CONFIG_SCHEMA.items():
            values = self._config.get(section)
            if not isinstance(values, dict):
                self._config[section] = {n: copy.deepcopy(f.default) for n, f in fields.items()}
                problems.append(f"{section}: expected an object")
                continue

            for name, schema_field in fields.items():
                ok, problem = schema_field.validate(values.get(name))
                if not ok:
                    problems.append(f"{section}.{name}: {problem}")
                    values[name] = copy.deepcopy(schema_field.default)

        self._validation_errors = problems
        for problem in problems:
            self.logger.warning(f"Configuration value replaced by default: {problem}")

    def save_config(self) -> None:
        """
        Write the user settings (not the defaults) to the configuration file.

        Raises:
            ConfigurationError: If the file cannot be written
        """
        try:
            with self._lock:
                self.config_file.parent.mkdir(parents=True, exist_ok=True)
                with open(self.config_file, 'w', encoding='utf-8') as f:
                    json.dump(self._user_config, f, indent=2)
        except OSError as e:
            self.logger.error("Saving configuration failed", exception=e)
            raise ConfigurationError(f"Cannot write {self.config_file}: {e}") from e

    def get_validation_errors(self) -> List[str]:
        """Problems found at load time, before defaults replaced the bad values."""
        return list(self._validation_errors)

    def validate_config(self) -> List[str]:
        """Check the current values again and return the problems found."""
        self._validate_configuration()
        return list(self._validation_errors)

    def reset_to_defaults(self) -> None:
        """Drop all user settings and save the empty configuration."""
        with self._lock:
            self._user_config = {}
            self._config = self._defaults()
            self.save_config()
        self.logger.info("Configuration reset to defaults")

    def get_query_settings(self) -> QuerySettings:
        """Settings for the gradebook query layer."""
        return QuerySettings(
            gradebook_roles=list(self.safe_get('gradebook.gradebook_roles', [], list)),
            custom_profile_fields=list(self.safe_get('gradebook.custom_profile_fields', [], list)),
            fetch_size=self.safe_get('database.fetch_size', 500, int),
        )

    def get_logging_config(self) -> Dict[str, Any]:
        """Logging section with the logs folder, as ``setup_logging`` expects it."""
        logging_config = dict(self._config.get('logging', {}))
        logging_config['logs_folder'] = self.safe_get('paths.logs_folder', 'logs', str)
        return logging_config

    def get_config_summary(self) -> Dict[str, Any]:
        return {
            'config_file': str(self.config_file),
            'sections': sorted(self._config),
            'user_settings': sum(len(v) for v in self._user_config.values() if isinstance(v, dict)),
            'problems': len(self._validation_errors),
            'database_configured': bool(self.get('database.url')),
            'display_types': self.get('export.display_types'),
            'generated_at': datetime.now().isoformat(),
        }


_config_instance: Optional[GradeExportConfig] = None
_config_lock = threading.Lock()


def get_config(config_file: Union[str, Path] = None) -> GradeExportConfig:
    """
    Process-wide configuration, created on first use.

    Args:
        config_file: File to load; only honoured on the first call
    """
    global _config_instance

    with _config_lock:
        if _config_instance is None:
            _config_instance = GradeExportConfig(config_file)
        return _config_instance


def reset_config() -> None:
    """Forget the process-wide configuration so the next get_config() reloads."""
    global _config_instance

    with _config_lock:
        _config_instance = None


def validate_config_file(config_file: Path) -> Tuple[bool, List[str]]:
    """
    Check a configuration file without touching the global instance.

    Returns:
        Tuple[bool, List[str]]: (is_valid, problems)
    """
    errors = GradeExportConfig(config_file, create_if_missing=False).get_validation_errors()
    return not errors, errors
