"""
Identity provider adapter.

Manages users and group memberships through the identity provider's SCIM
admin API and acquires the OAuth2 bearer token used for every call.
"""

import logging
from typing import Dict, Any, List, Optional
from urllib.parse import urlencode

from .base import (
    DirectoryAdapter, DirectoryAPIError, RecordLookupError, GroupNotFoundError,
    RecordHandle, render_template, person_template_values, basic_auth_header
)
from identity_sync.errors import FatalRunError
from identity_sync.logging_setup import audit_logger

logger = logging.getLogger(__name__)


def split_group_list(group_list: str) -> List[str]:
    """Split a comma-delimited group list, ignoring blank entries."""
    return [name.strip() for name in (group_list or '').split(',') if name.strip()]


def _scim_string(value: str) -> str:
    return value.strip().replace('\\', '\\\\').replace('"', '\\"')


class IdentityProviderAdapter(DirectoryAdapter):
    """
    Identity provider client.

    Users are keyed by userName. First-time users are added to the manager or
    user group list depending on their direct reports; existing users keep
    whatever groups they already have.
    """

    USERS_PATH = '/admin/v1/Users'
    GROUPS_PATH = '/admin/v1/Groups'
    TOKEN_PATH = '/oauth2/v1/token'

    def __init__(self, config: Dict[str, Any], error_handling: Optional[Dict[str, Any]] = None):
        """
        Initialize identity provider adapter.

        Args:
            config: identity_provider configuration block
            error_handling: Retry configuration block
        """
        super().__init__(config, error_handling)

        self.create_user_template = config['create_user_payload']
        self.add_to_group_template = config['add_user_to_group_payload']
        self.remove_from_group_template = config.get('remove_user_from_group_payload', '')
        self.user_groups = split_group_list(config.get('user_groups', ''))
        self.manager_groups = split_group_list(config.get('manager_groups', ''))
        self.scope = config.get('scope', 'urn:opc:idm:__myscopes__')

        # Group ids are stable for the duration of a run
        self._group_ids = {}

        logger.info(f"Initialized identity provider adapter for {self.name}")

    def acquire_token(self) -> str:
        """
        Obtain a bearer token with the client credentials grant.

        Returns:
            Access token

        Raises:
            FatalRunError: If the token cannot be obtained
        """
        auth = self.config['auth']
        client_id = auth['client_id']
        body = urlencode({'grant_type': 'client_credentials', 'scope': self.scope})
        headers = {
            'Authorization': basic_auth_header(client_id, auth['client_secret']),
            'Content-Type': 'application/x-www-form-urlencoded',
        }

        try:
            response = self.client.request('POST', self.TOKEN_PATH, body=body, headers=headers)
            access_token = response.json().get('access_token')
        except DirectoryAPIError as e:
            audit_logger.log_authentication_attempt(self.name, client_id, False)
            raise FatalRunError(f"Getting {self.name} bearer token failed: {e}")

        if not access_token:
            audit_logger.log_authentication_attempt(self.name, client_id, False)
            raise FatalRunError(f"{self.name} bearer token not retrieved")

        audit_logger.log_authentication_attempt(self.name, client_id, True)
        logger.info(f"Obtained bearer token for {self.name}")
        return access_token

    def groups_for(self, person) -> List[str]:
        """Role-selected group list: manager groups with direct reports, else user groups."""
        return self.manager_groups if person.is_manager else self.user_groups

    def find_by_key(self, ctx, key: str) -> Optional[RecordHandle]:
        params = {'filter': f'userName eq "{_scim_string(key)}"'}
        try:
            response = self._idempotent('user lookup', self.client.request, 'GET', self.USERS_PATH,
                                        params=params, token=ctx.token)
            resources = response.json().get('Resources') or []
        except DirectoryAPIError as e:
            raise RecordLookupError(f"Getting user ID for {key} from {self.name} failed: {e}",
                                    e.status_code, e.body)

        if not resources or not resources[0].get('id'):
            return None
        return RecordHandle(key=key, id=resources[0]['id'], attributes=resources[0])

    def create(self, ctx, person) -> RecordHandle:
        payload = render_template(self.create_user_template, person_template_values(person))

        try:
            response = self.client.request('POST', self.USERS_PATH, body=payload, token=ctx.token)
        except DirectoryAPIError as e:
            if e.status_code != 409:
                raise
            logger.info(f"User {person.id} already exists in {self.name}")
            try:
                return self.find_by_key(ctx, person.id) or RecordHandle.empty(person.id)
            except RecordLookupError as lookup_error:
                logger.warning(f"Could not re-read existing user {person.id}: {lookup_error}")
                return RecordHandle.empty(person.id)

        data = response.json()
        audit_logger.log_user_operation('create', person.id, self.name, True)
        logger.info(f"Created user {person.id} with ID {data.get('id')} in {self.name}")
        return RecordHandle(key=person.id, id=data.get('id'), attributes=data, created=True)

    def update(self, ctx, handle: RecordHandle, person) -> None:
        """Patch group membership only: add the person to the role-selected groups."""
        self.assign_role_groups(ctx, handle, person)

    def delete(self, ctx, handle: RecordHandle) -> None:
        """Force-delete the user, which also drops all group memberships."""
        if handle.is_empty:
            return

        try:
            self._idempotent('user delete', self.client.request, 'DELETE',
                             f"{self.USERS_PATH}/{handle.id}", params={'forceDelete': 'true'},
                             token=ctx.token)
        except DirectoryAPIError as e:
            if e.status_code != 404:
                raise
            logger.info(f"User {handle.key} already removed from {self.name}")
            return

        audit_logger.log_user_operation('delete', handle.key, self.name, True)
        logger.info(f"Deleted user {handle.key} from {self.name}")

    def assign_role_groups(self, ctx, handle: RecordHandle, person) -> List[str]:
        """
        Add the user to every group in the role-selected list.

        Returns:
            Names of the groups the user was added to

        Raises:
            GroupNotFoundError: If a group name does not resolve
            DirectoryAPIError: If a membership patch fails
        """
        groups = self.groups_for(person)
        for group_name in groups:
            self.add_to_group(ctx, handle, group_name)
        logger.info(f"Added {person.id} ({person.role}) to {len(groups)} groups in {self.name}")
        return groups

    def resolve_group(self, ctx, group_name: str) -> str:
        """
        Resolve a group display name to its id, caching the answer for the run.

        Raises:
            RecordLookupError: If the query fails
            GroupNotFoundError: If no group has that name
        """
        group_name = group_name.strip()
        if group_name in self._group_ids:
            return self._group_ids[group_name]

        params = {'filter': f'displayName eq "{_scim_string(group_name)}"'}
        try:
            response = self._idempotent('group lookup', self.client.request, 'GET', self.GROUPS_PATH,
                                        params=params, token=ctx.token)
            resources = response.json().get('Resources') or []
        except DirectoryAPIError as e:
            raise RecordLookupError(f"Getting group ID for {group_name} from {self.name} failed: {e}",
                                    e.status_code, e.body)

        if not resources or not resources[0].get('id'):
            raise GroupNotFoundError(f"Group name [{group_name}] not found in {self.name}")

        self._group_ids[group_name] = resources[0]['id']
        return self._group_ids[group_name]

    def add_to_group(self, ctx, handle: RecordHandle, group_name: str) -> None:
        group_id = self.resolve_group(ctx, group_name)
        payload = render_template(self.add_to_group_template, {'USERID': handle.id, 'USERNAME': handle.key})

        try:
            self.client.request('PATCH', f"{self.GROUPS_PATH}/{group_id}", body=payload, token=ctx.token)
        except DirectoryAPIError as e:
            if e.status_code != 409:
                raise
            logger.debug(f"{handle.key} already a member of {group_name}")

        audit_logger.log_user_operation(f'add to group {group_name}', handle.key, self.name, True)

    def remove_from_group(self, ctx, handle: RecordHandle, group_name: str) -> None:
        if not self.remove_from_group_template:
            raise DirectoryAPIError(f"No remove_user_from_group_payload configured for {self.name}")

        group_id = self.resolve_group(ctx, group_name)
        payload = render_template(self.remove_from_group_template, {'USERID': handle.id, 'USERNAME': handle.key})
        self.client.request('PATCH', f"{self.GROUPS_PATH}/{group_id}", body=payload, token=ctx.token)

        audit_logger.log_user_operation(f'remove from group {group_name}', handle.key, self.name, True)
