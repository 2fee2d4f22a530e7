"""
Configuration loading and management for Squadron Sync.

This module handles loading configuration from YAML files and environment
variables, with validation and defaults, and freezes the result into the
immutable SyncSettings passed to the engine.
"""

import os
import yaml
import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Any, Mapping, Optional, Tuple

from squadron_sync.lifecycle import LifecycleThresholds
from squadron_sync.models import GroupKind, GroupTemplate, MemberType, Moderation

logger = logging.getLogger(__name__)


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing required fields."""
    pass


ALL_MEMBER_TYPES = [t.value for t in MemberType]
SQUADRON_MEMBER_TYPES = ['CADET', 'SENIOR', 'FIFTY_YEAR', 'LIFE']

DEFAULT_GROUP_TEMPLATES = [
    {
        'kind': 'access',
        'address': '{squadron}.access@{domain}',
        'name': '{squadron_code} Access',
        'description': 'Shared drive and resource access for {name}',
        'include_types': SQUADRON_MEMBER_TYPES,
        'listed': False,
        'moderation': 'ALL_MANAGERS_CAN_POST',
    },
    {
        'kind': 'public_contact',
        'address': '{squadron}@{domain}',
        'name': '{name}',
        'description': 'Public contact address for {name}',
        'listed': True,
        'moderation': 'ANYONE_CAN_POST',
    },
    {
        'kind': 'allhands',
        'address': '{squadron}.allhands@{domain}',
        'name': '{squadron_code} All Hands',
        'description': 'All members of {name}',
        'include_types': SQUADRON_MEMBER_TYPES,
        'moderation': 'ALL_IN_DOMAIN_CAN_POST',
    },
    {
        'kind': 'cadets',
        'address': '{squadron}.cadets@{domain}',
        'name': '{squadron_code} Cadets',
        'description': 'Cadet members of {name}',
        'include_types': ['CADET'],
        'moderation': 'ALL_IN_DOMAIN_CAN_POST',
    },
    {
        'kind': 'seniors',
        'address': '{squadron}.seniors@{domain}',
        'name': '{squadron_code} Seniors',
        'description': 'Senior members of {name}',
        'include_types': ['SENIOR', 'FIFTY_YEAR', 'LIFE'],
        'moderation': 'ALL_IN_DOMAIN_CAN_POST',
    },
    {
        'kind': 'parents',
        'address': '{squadron}.parents@{domain}',
        'name': '{squadron_code} Cadet Parents',
        'description': 'Parents and guardians of {name} cadets',
        'include_types': ['CADET'],
        'moderation': 'ALL_MANAGERS_CAN_POST',
    },
]


@dataclass(frozen=True)
class SyncSettings:
    """Immutable run configuration handed to the engine."""

    directory: Mapping[str, Any]
    snapshot_path: str
    checkpoint_path: str
    max_snapshot_age_hours: Optional[float] = None
    thresholds: LifecycleThresholds = LifecycleThresholds()
    batch_size: int = 100
    time_budget_seconds: float = 330.0
    max_attempts: int = 3
    retry_wait_seconds: float = 2.0
    inter_call_delay_seconds: float = 0.5
    groups_enabled: bool = True
    group_domain: str = ''
    group_templates: Tuple[GroupTemplate, ...] = ()
    duty_positions: Tuple[str, ...] = ()
    recruiting_mailbox: str = ''
    logging: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    notifications: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    dry_run: bool = False


class ConfigLoader:
    """Handles loading and validation of application configuration."""

    # Environment variable mappings for sensitive fields
    ENV_OVERRIDES = {
        'directory.auth.token': 'DIRECTORY_TOKEN',
        'directory.auth.client_secret': 'DIRECTORY_CLIENT_SECRET',
        'notifications.smtp_password': 'SMTP_PASSWORD',
    }

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize config loader.

        Args:
            config_path: Path to config file. If None, uses CONFIG_PATH env var or 'config.yaml'
        """
        self.config_path = config_path or os.getenv('CONFIG_PATH', 'config.yaml')
        self.config = {}

    def load(self) -> Dict[str, Any]:
        """
        Load configuration from file and apply environment overrides.

        Returns:
            Parsed and validated configuration dictionary

        Raises:
            ConfigurationError: If config file not found or validation fails
        """
        try:
            with open(self.config_path, 'r') as f:
                self.config = yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise ConfigurationError(f"Configuration file not found: {self.config_path}")
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in config file: {e}")

        if not isinstance(self.config, dict):
            raise ConfigurationError(f"Configuration file {self.config_path} must contain a mapping")

        self._apply_env_overrides()
        self._apply_defaults()
        self._validate()

        logger.info(f"Configuration loaded successfully from {self.config_path}")
        return self.config

    def _apply_env_overrides(self):
        """Apply environment variable overrides for sensitive fields."""
        for config_key, env_var in self.ENV_OVERRIDES.items():
            env_value = os.getenv(env_var)
            if env_value:
                self._set_nested_value(self.config, config_key, env_value)
                logger.debug(f"Applied environment override for {config_key}")

    def _set_nested_value(self, config: Dict, key_path: str, value: Any):
        """Set a nested configuration value using dot notation."""
        keys = key_path.split('.')
        current = config
        for key in keys[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]
        current[keys[-1]] = value

    def _apply_defaults(self):
        """Apply default values for optional configuration fields."""
        defaults = {
            'directory': {
                'backend': 'workspace',
                'base_url': 'https://www.googleapis.com',
                'archive_mode': 'org_unit',
                'archive_org_unit': '/Archived',
                'active_org_unit': '/',
                'verify_ssl': True,
                'timeout_seconds': 30,
            },
            'registry': {
                'max_snapshot_age_hours': None,
            },
            'lifecycle': {
                'suspension_grace_days': 7,
                'days_before_archive': 365,
                'days_before_delete': 1825,
            },
            'batch': {
                'batch_size': 100,
                'time_budget_seconds': 330,
            },
            'error_handling': {
                'max_attempts': 3,
                'retry_wait_seconds': 2,
                'inter_call_delay_seconds': 0.5,
            },
            'groups': {
                'enabled': True,
                'duty_positions': ['Commander', 'Recruiting Officer', 'Public Affairs Officer'],
                'recruiting_mailbox': 'recruiting@{wing}.{domain}',
                'templates': DEFAULT_GROUP_TEMPLATES,
            },
            'state': {
                'checkpoint_path': 'state/checkpoint.json',
            },
            'logging': {
                'level': 'INFO',
                'log_dir': 'logs',
                'rotation': 'daily',
                'retention_days': 7,
            },
            'notifications': {
                'enable_email': True,
                'email_on_failure': True,
                'email_on_success': False,
                'smtp_port': 587,
                'smtp_tls': True,
            },
        }
        for section, section_defaults in defaults.items():
            current = self.config.get(section)
            if not isinstance(current, dict):
                current = {}
                self.config[section] = current
            for key, value in section_defaults.items():
                current.setdefault(key, value)

        groups = self.config['groups']
        groups.setdefault('domain', self.config['directory'].get('domain', ''))

    def _validate(self):
        """Validate required configuration fields."""
        errors = []

        directory = self.config['directory']
        if not directory.get('base_url'):
            errors.append("Missing required directory field: base_url")
        if directory.get('archive_mode') not in ('org_unit', 'attribute'):
            errors.append("directory.archive_mode must be 'org_unit' or 'attribute'")

        auth = directory.get('auth') or {}
        if auth and not auth.get('method'):
            errors.append("Missing auth method for directory")

        if not self.config['registry'].get('snapshot_path'):
            errors.append("Missing required registry field: snapshot_path")

        for section, key, minimum in (
            ('lifecycle', 'suspension_grace_days', 0),
            ('lifecycle', 'days_before_archive', 1),
            ('lifecycle', 'days_before_delete', 1),
            ('batch', 'batch_size', 1),
            ('batch', 'time_budget_seconds', 1),
            ('error_handling', 'max_attempts', 1),
        ):
            value = self.config[section].get(key)
            if not isinstance(value, (int, float)) or isinstance(value, bool) or value < minimum:
                qualifier = 'zero or a positive' if minimum == 0 else 'a positive'
                errors.append(f"{section}.{key} must be {qualifier} number")

        for key in ('retry_wait_seconds', 'inter_call_delay_seconds'):
            value = self.config['error_handling'].get(key)
            if not isinstance(value, (int, float)) or value < 0:
                errors.append(f"error_handling.{key} must be zero or a positive number")

        groups = self.config['groups']
        if groups.get('enabled'):
            if not groups.get('domain'):
                errors.append("Missing groups.domain (or directory.domain)")
            seen_kinds = set()
            for i, template in enumerate(groups.get('templates') or []):
                prefix = f"groups.templates[{i}]"
                try:
                    kind = GroupKind(template.get('kind'))
                except ValueError:
                    errors.append(f"Unknown group kind for {prefix}: {template.get('kind')}")
                    continue
                if kind in seen_kinds:
                    errors.append(f"Duplicate group kind {kind.value} in {prefix}")
                seen_kinds.add(kind)
                for name in ('address', 'name'):
                    if not template.get(name):
                        errors.append(f"Missing {name} for {prefix}")
                for member_type in template.get('include_types') or []:
                    if member_type not in ALL_MEMBER_TYPES:
                        errors.append(f"Unknown member type {member_type} in {prefix}")
                moderation = template.get('moderation', 'ALL_MEMBERS_CAN_POST')
                if moderation not in [m.value for m in Moderation]:
                    errors.append(f"Unknown moderation {moderation} in {prefix}")

        notifications = self.config['notifications']
        if notifications.get('enable_email'):
            for name in ('smtp_server', 'email_from', 'email_to'):
                if not notifications.get(name):
                    errors.append(f"Missing notifications.{name} (required when enable_email is set)")

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"  - {error}" for error in errors))

    def to_settings(self, dry_run: bool = False) -> SyncSettings:
        """Freeze the loaded configuration into SyncSettings."""
        if not self.config:
            self.load()
        return build_settings(self.config, dry_run=dry_run)


def _freeze(value: Any) -> Any:
    if isinstance(value, dict):
        return MappingProxyType({k: _freeze(v) for k, v in value.items()})
    if isinstance(value, list):
        return tuple(_freeze(v) for v in value)
    return value


def parse_group_template(raw: Dict[str, Any]) -> GroupTemplate:
    return GroupTemplate(
        kind=GroupKind(raw['kind']),
        address=raw['address'],
        name=raw['name'],
        description=raw.get('description', ''),
        include_types=frozenset(MemberType(t) for t in raw.get('include_types') or []),
        listed=bool(raw.get('listed', False)),
        moderation=Moderation(raw.get('moderation', 'ALL_MEMBERS_CAN_POST')),
    )


def build_settings(config: Dict[str, Any], dry_run: bool = False) -> SyncSettings:
    """
    Build SyncSettings from an already validated configuration dictionary.

    Args:
        config: Output of ConfigLoader.load()
        dry_run: Compute actions without mutating the directory

    Returns:
        Frozen settings
    """
    lifecycle = config['lifecycle']
    batch = config['batch']
    error_handling = config['error_handling']
    groups = config['groups']

    return SyncSettings(
        directory=_freeze(config['directory']),
        snapshot_path=config['registry']['snapshot_path'],
        max_snapshot_age_hours=config['registry'].get('max_snapshot_age_hours'),
        checkpoint_path=config['state']['checkpoint_path'],
        thresholds=LifecycleThresholds(
            suspension_grace_days=int(lifecycle['suspension_grace_days']),
            days_before_archive=int(lifecycle['days_before_archive']),
            days_before_delete=int(lifecycle['days_before_delete']),
        ),
        batch_size=int(batch['batch_size']),
        time_budget_seconds=float(batch['time_budget_seconds']),
        max_attempts=int(error_handling['max_attempts']),
        retry_wait_seconds=float(error_handling['retry_wait_seconds']),
        inter_call_delay_seconds=float(error_handling['inter_call_delay_seconds']),
        groups_enabled=bool(groups.get('enabled', True)),
        group_domain=groups.get('domain', ''),
        group_templates=tuple(parse_group_template(t) for t in groups.get('templates') or []),
        duty_positions=tuple(groups.get('duty_positions') or ()),
        recruiting_mailbox=groups.get('recruiting_mailbox') or '',
        logging=_freeze(config['logging']),
        notifications=_freeze(config['notifications']),
        dry_run=dry_run,
    )


def load_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Convenience function to load configuration.

    Args:
        config_path: Path to config file

    Returns:
        Loaded configuration dictionary
    """
    loader = ConfigLoader(config_path)
    return loader.load()


def load_settings(config_path: Optional[str] = None, dry_run: bool = False) -> SyncSettings:
    """Load, validate and freeze configuration in one step."""
    return build_settings(load_config(config_path), dry_run=dry_run)
