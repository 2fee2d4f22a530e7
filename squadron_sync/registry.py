"""
Registry snapshot loading.

The registry import step runs before the engine and writes a snapshot of
members and organizations. This module reads that snapshot; it does not
parse the registry's own export formats.

A malformed organization record makes the whole snapshot unusable, because
the exclusion flag of its members can no longer be trusted. Malformed member
records are skipped.
"""

import os
import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Dict, Any, List, Optional

import yaml

from squadron_sync.clock import Clock
from squadron_sync.lifecycle import as_utc
from squadron_sync.models import (
    Member, MemberType, Organization, RegistrySnapshot, RegistryStatus
)

logger = logging.getLogger(__name__)


class RegistryUnavailableError(Exception):
    """Raised when no usable registry snapshot exists for this run."""
    pass


class RegistrySource(ABC):
    """Source of member and organization records for one run."""

    @abstractmethod
    def load(self) -> RegistrySnapshot:
        """
        Load the current snapshot.

        Raises:
            RegistryUnavailableError: If the snapshot is missing, unreadable or stale
        """


class FileRegistrySource(RegistrySource):
    """Reads a JSON or YAML snapshot file written by the import step."""

    def __init__(self, path: str, clock: Optional[Clock] = None,
                 max_age_hours: Optional[float] = None):
        self.path = path
        self.clock = clock or Clock()
        self.max_age_hours = max_age_hours

    def load(self) -> RegistrySnapshot:
        data = self._read()

        organizations = {}
        for raw in data.get('organizations') or []:
            try:
                org = parse_organization(raw)
            except (KeyError, TypeError, ValueError) as e:
                raise RegistryUnavailableError(f"Malformed organization record {raw!r}: {e}")
            organizations[org.org_id] = org

        members = []
        for raw in data.get('members') or []:
            try:
                members.append(parse_member(raw))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed member record {raw.get('member_id', '?') if isinstance(raw, dict) else raw!r}: {e}")

        generated_at = parse_timestamp(data.get('generated_at'))
        if generated_at is None:
            generated_at = as_utc(datetime.fromtimestamp(os.path.getmtime(self.path)))
        self._check_age(generated_at)

        logger.info(f"Loaded registry snapshot {self.path}: {len(members)} members, "
                    f"{len(organizations)} organizations")
        return RegistrySnapshot(members=members, organizations=organizations,
                                generated_at=generated_at)

    def _read(self) -> Dict[str, Any]:
        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                if self.path.endswith('.json'):
                    data = json.load(f)
                else:
                    data = yaml.safe_load(f)
        except FileNotFoundError:
            raise RegistryUnavailableError(f"Registry snapshot not found: {self.path}")
        except (OSError, ValueError, yaml.YAMLError) as e:
            raise RegistryUnavailableError(f"Registry snapshot unreadable: {e}")

        if not isinstance(data, dict):
            raise RegistryUnavailableError(f"Registry snapshot {self.path} has no records")
        return data

    def _check_age(self, generated_at: datetime) -> None:
        if not self.max_age_hours:
            return
        age = as_utc(self.clock.now()) - generated_at
        if age > timedelta(hours=self.max_age_hours):
            raise RegistryUnavailableError(
                f"Registry snapshot is stale: generated {generated_at.isoformat()}, "
                f"older than {self.max_age_hours} hours"
            )


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse ISO dates/datetimes (or datetime objects from YAML) into aware UTC values."""
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return as_utc(value)
    if hasattr(value, 'isoformat'):
        # yaml loads bare dates as datetime.date
        return as_utc(datetime(value.year, value.month, value.day))
    return as_utc(datetime.fromisoformat(str(value).replace('Z', '+00:00')))


def parse_organization(raw: Dict[str, Any]) -> Organization:
    return Organization(
        org_id=str(raw['org_id']),
        squadron_code=str(raw['squadron_code']),
        wing=str(raw.get('wing', '')),
        name=str(raw.get('name', '')),
        excluded=parse_flag(raw.get('excluded', False)),
    )


def parse_flag(value: Any) -> bool:
    """Interpret a boolean flag written as a bool, number or string."""
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    if isinstance(value, (int, float)):
        return bool(value)
    text = str(value).strip().lower()
    if text in ('true', 'yes', 'y', '1'):
        return True
    if text in ('false', 'no', 'n', '0', ''):
        return False
    raise ValueError(f"not a boolean: {value!r}")


def parse_member(raw: Dict[str, Any]) -> Member:
    return Member(
        member_id=str(raw['member_id']),
        email=str(raw['email']).strip().lower(),
        org_id=str(raw['org_id']),
        member_type=MemberType.parse(raw['member_type']),
        registry_status=RegistryStatus(str(raw.get('registry_status', 'active')).lower()),
        status_changed_at=parse_timestamp(raw.get('status_changed_at')),
        duty_positions=tuple(_as_list(raw.get('duty_positions'))),
        parent_emails=tuple(e.strip().lower() for e in _as_list(raw.get('parent_emails')) if e),
    )


def _as_list(value: Any) -> List[str]:
    if not value:
        return []
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value]
