"""
Business application user store adapter.

Each configured business app exposes a REST business object holding its
users. Records are keyed by email and refreshed in full on every run so that
manager, role and line-of-business never drift.
"""

import logging
from typing import Dict, Any, List, Optional

from .base import (
    DirectoryAdapter, DirectoryAPIError, RecordLookupError, RecordHandle,
    render_template, person_template_values
)
from identity_sync.logging_setup import audit_logger

logger = logging.getLogger(__name__)


def _query_string(value: str) -> str:
    return value.strip().replace('\\', '\\\\').replace("'", "\\'")


class BusinessAppAdapter(DirectoryAdapter):
    """
    Business app user store client.

    The endpoint configured for the app is the user collection itself;
    individual records live at {endpoint}/{id}.
    """

    def __init__(self, config: Dict[str, Any], error_handling: Optional[Dict[str, Any]] = None):
        """
        Initialize business app adapter.

        Args:
            config: One entry of the business_apps configuration list
            error_handling: Retry configuration block
        """
        super().__init__(config, error_handling, base_url_field='endpoint')

        self.create_user_template = config['create_user_payload']
        self.update_user_template = config['update_user_payload']
        self.user_role_code = config['user_role_code']
        self.manager_role_code = config['manager_role_code']
        self.key_field = config.get('key_field', 'userEmail')
        self.manager_field = config.get('manager_field', 'manager')
        self.page_size = config.get('page_size', 500)

        logger.info(f"Initialized business app adapter for {self.name}")

    def role_code_for(self, person) -> str:
        return self.manager_role_code if person.is_manager else self.user_role_code

    def _template_values(self, person) -> Dict[str, Any]:
        return person_template_values(person, ROLE=self.role_code_for(person))

    def find_by_key(self, ctx, key: str) -> Optional[RecordHandle]:
        params = {'q': f"{self.key_field}='{_query_string(key)}'"}
        try:
            response = self._idempotent('user lookup', self.client.request, 'GET', params=params)
            items = response.json().get('items') or []
        except DirectoryAPIError as e:
            raise RecordLookupError(f"Getting {self.name} user by email {key} failed: {e}",
                                    e.status_code, e.body)

        if not items or not items[0].get('id'):
            return None
        return RecordHandle(key=key, id=str(items[0]['id']), attributes=items[0])

    def create(self, ctx, person) -> RecordHandle:
        payload = render_template(self.create_user_template, self._template_values(person))

        try:
            response = self.client.request('POST', body=payload)
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
        logger.info(f"Added user {person.id} to {self.name} as {self.role_code_for(person)}")
        record_id = data.get('id')
        return RecordHandle(key=person.id, id=str(record_id) if record_id is not None else None,
                            attributes=data, created=True)

    def update(self, ctx, handle: RecordHandle, person) -> None:
        """Refresh every templated field unconditionally."""
        if handle.is_empty:
            raise DirectoryAPIError(f"Cannot update {person.id} in {self.name} without a record id")

        current_manager = handle.attributes.get(self.manager_field)
        if current_manager != person.manager_ref:
            logger.info(f"Manager of {person.id} in {self.name} changes "
                        f"'{current_manager}' -> '{person.manager_ref}'")

        payload = render_template(self.update_user_template, self._template_values(person))
        try:
            self.client.request('PATCH', handle.id, body=payload)
        except DirectoryAPIError as e:
            if e.status_code != 409:
                raise
            logger.debug(f"Update of {person.id} in {self.name} reported a conflict, record is current")

        audit_logger.log_user_operation('update', person.id, self.name, True)

    def delete(self, ctx, handle: RecordHandle) -> None:
        if handle.is_empty:
            return

        try:
            self._idempotent('user delete', self.client.request, 'DELETE', handle.id)
        except DirectoryAPIError as e:
            if e.status_code != 404:
                raise
            logger.info(f"User {handle.key} already removed from {self.name}")
            return

        audit_logger.log_user_operation('delete', handle.key, self.name, True)
        logger.info(f"Deleted user {handle.key} from {self.name}")

    def list_keys(self, ctx) -> List[str]:
        """
        List the key (email) of every provisioned user, following pagination.

        Raises:
            RecordLookupError: If any page cannot be fetched
        """
        keys = []
        offset = 0
        while True:
            params = {'limit': self.page_size, 'offset': offset,
                      'fields': self.key_field, 'onlyData': 'true'}
            try:
                response = self._idempotent('user listing', self.client.request, 'GET', params=params)
                data = response.json()
            except DirectoryAPIError as e:
                raise RecordLookupError(f"Listing {self.name} users failed: {e}", e.status_code, e.body)

            items = data.get('items') or []
            for item in items:
                value = item.get(self.key_field)
                if value and str(value).strip():
                    keys.append(str(value).strip())

            if not data.get('hasMore') or not items:
                break
            offset += len(items)

        logger.info(f"Listed {len(keys)} users in {self.name}")
        return keys
