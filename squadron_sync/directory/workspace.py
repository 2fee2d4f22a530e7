"""
Google Workspace directory backend.

Implements DirectoryClientBase over the Admin SDK Directory API and the
Groups Settings API, both served from www.googleapis.com. Account status
changes are stamped into a custom schema field so age-based transitions can
be measured from the directory's own state.
"""

import logging
from datetime import datetime
from typing import Dict, Any, Optional

from squadron_sync.clock import Clock
from squadron_sync.models import AccountStatus, DirectoryAccount, Group, Moderation
from squadron_sync.retry import Result, Success
from .base import DirectoryClientBase, member_emails

logger = logging.getLogger(__name__)

DIRECTORY_PATH = 'admin/directory/v1'
SETTINGS_PATH = 'groups/v1/groups'


class WorkspaceDirectoryClient(DirectoryClientBase):
    """
    Directory client for Google Workspace.

    Archiving is either an org-unit move (archive_mode 'org_unit', the
    default) or the Archived User license flag (archive_mode 'attribute').
    """

    def __init__(self, config: Dict[str, Any], clock: Optional[Clock] = None):
        super().__init__(config)
        self.clock = clock or Clock()
        self.archive_mode = config.get('archive_mode', 'org_unit')
        self.active_org_unit = config.get('active_org_unit', '/')
        self.archive_org_unit = config.get('archive_org_unit', '/Archived')
        self.status_schema = config.get('status_schema', 'Lifecycle')
        self.status_field = config.get('status_field', 'statusChangedAt')
        self.page_size = config.get('page_size', 200)

        logger.info(f"Initialized Workspace directory client for {self.name} "
                    f"(archive_mode={self.archive_mode})")

    # Users

    def get_user(self, email: str) -> Result:
        result = self.call('GET', f'{DIRECTORY_PATH}/users/{self.quote(email)}',
                           params={'projection': 'full'})
        if not isinstance(result, Success):
            return result
        return Success(self._parse_account(email, result.value))

    def _parse_account(self, email: str, user: Dict[str, Any]) -> DirectoryAccount:
        if self._is_archived(user):
            status = AccountStatus.ARCHIVED
        elif user.get('suspended'):
            status = AccountStatus.SUSPENDED
        else:
            status = AccountStatus.ACTIVE

        stamp = user.get('customSchemas', {}).get(self.status_schema, {}).get(self.status_field)
        changed_at = None
        if stamp:
            try:
                changed_at = datetime.fromisoformat(stamp.replace('Z', '+00:00'))
            except ValueError:
                logger.warning(f"Ignoring unparseable status timestamp for {email}: {stamp!r}")

        return DirectoryAccount(email=user.get('primaryEmail', email).lower(),
                                status=status, status_changed_at=changed_at)

    def _is_archived(self, user: Dict[str, Any]) -> bool:
        if self.archive_mode == 'attribute':
            return bool(user.get('archived'))
        return user.get('orgUnitPath', '/') == self.archive_org_unit

    def _stamp(self) -> Dict[str, Any]:
        return {self.status_schema: {self.status_field: self.clock.now().isoformat()}}

    def _patch_user(self, email: str, changes: Dict[str, Any]) -> Result:
        body = dict(changes)
        body['customSchemas'] = self._stamp()
        result = self.call('PATCH', f'{DIRECTORY_PATH}/users/{self.quote(email)}', body=body)
        if isinstance(result, Success):
            return Success(email)
        return result

    def suspend_user(self, email: str) -> Result:
        return self._patch_user(email, {'suspended': True})

    def reactivate_user(self, email: str) -> Result:
        changes = {'suspended': False}
        if self.archive_mode == 'attribute':
            changes['archived'] = False
        else:
            changes['orgUnitPath'] = self.active_org_unit
        return self._patch_user(email, changes)

    def archive_user(self, email: str) -> Result:
        changes = {'suspended': True}
        if self.archive_mode == 'attribute':
            changes['archived'] = True
        else:
            changes['orgUnitPath'] = self.archive_org_unit
        return self._patch_user(email, changes)

    def delete_user(self, email: str) -> Result:
        result = self.call('DELETE', f'{DIRECTORY_PATH}/users/{self.quote(email)}')
        if isinstance(result, Success):
            return Success(email)
        return result

    # Groups

    def get_group(self, email: str) -> Result:
        """Return Success(dict) with name, description, listed and moderation."""
        group = self.call('GET', f'{DIRECTORY_PATH}/groups/{self.quote(email)}')
        if not isinstance(group, Success):
            return group
        settings = self.call('GET', f'{SETTINGS_PATH}/{self.quote(email)}', params={'alt': 'json'})
        if not isinstance(settings, Success):
            return settings

        moderation = settings.value.get('whoCanPostMessage', Moderation.ALL_MEMBERS_CAN_POST.value)
        try:
            moderation = Moderation(moderation)
        except ValueError:
            logger.debug(f"Group {email} has unrecognized posting policy {moderation}")

        return Success({
            'name': group.value.get('name', ''),
            'description': group.value.get('description', ''),
            'listed': str(settings.value.get('includeInGlobalAddressList', 'false')).lower() == 'true',
            'moderation': moderation,
        })

    def _settings_body(self, group: Group) -> Dict[str, Any]:
        return {
            'includeInGlobalAddressList': 'true' if group.listed else 'false',
            'showInGroupDirectory': 'true' if group.listed else 'false',
            'whoCanPostMessage': group.moderation.value,
        }

    def create_group(self, group: Group) -> Result:
        result = self.call('POST', f'{DIRECTORY_PATH}/groups', body={
            'email': group.email,
            'name': group.name,
            'description': group.description,
        })
        if not isinstance(result, Success):
            return result
        return self._apply_settings(group)

    def patch_group(self, group: Group) -> Result:
        result = self.call('PATCH', f'{DIRECTORY_PATH}/groups/{self.quote(group.email)}', body={
            'name': group.name,
            'description': group.description,
        })
        if not isinstance(result, Success):
            return result
        return self._apply_settings(group)

    def _apply_settings(self, group: Group) -> Result:
        result = self.call('PATCH', f'{SETTINGS_PATH}/{self.quote(group.email)}',
                           body=self._settings_body(group), params={'alt': 'json'})
        if isinstance(result, Success):
            return Success(group.email)
        return result

    def list_group_members(self, group_email: str) -> Result:
        emails = []
        page_token = None
        while True:
            result = self.call('GET', f'{DIRECTORY_PATH}/groups/{self.quote(group_email)}/members',
                               params={'maxResults': self.page_size, 'pageToken': page_token})
            if not isinstance(result, Success):
                return result
            emails.extend(member_emails(result.value.get('members', [])))
            page_token = result.value.get('nextPageToken')
            if not page_token:
                break
        logger.debug(f"Group {group_email} has {len(emails)} members")
        return Success(emails)

    def add_group_member(self, group_email: str, member_email: str) -> Result:
        result = self.call('POST', f'{DIRECTORY_PATH}/groups/{self.quote(group_email)}/members',
                           body={'email': member_email, 'role': 'MEMBER'})
        if isinstance(result, Success):
            return Success(member_email)
        return result

    def remove_group_member(self, group_email: str, member_email: str) -> Result:
        result = self.call('DELETE', f'{DIRECTORY_PATH}/groups/{self.quote(group_email)}'
                                     f'/members/{self.quote(member_email)}')
        if isinstance(result, Success):
            return Success(member_email)
        return result
