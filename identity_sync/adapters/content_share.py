"""
Content-sharing system adapter.

Content-share user profiles are derived from the identity provider, so they
only exist after a profile sync. Provisioning a person means granting them
downloader access on a configured root folder.
"""

import logging
from typing import Dict, Any, Optional

from .base import (
    DirectoryAdapter, DirectoryAPIError, RecordLookupError, RecordHandle, render_template
)
from identity_sync.errors import FatalRunError
from identity_sync.logging_setup import audit_logger

logger = logging.getLogger(__name__)


class ContentShareAdapter(DirectoryAdapter):
    """Content-share client: profile sync, user lookup, folder share grant/revoke."""

    SYNC_PATH = '/documents/integration/{app}'
    USER_SEARCH_PATH = '/documents/api/1.2/users/search/items'
    SHARE_PATH = '/documents/api/1.2/shares/{folder}'
    UNSHARE_PATH = '/documents/api/1.2/shares/{folder}/user'

    ALREADY_SHARED_KEY = '!csFolderAlreadyShared'
    NOT_SHARED_KEY = '!csUserHasNotBeenShared'

    def __init__(self, config: Dict[str, Any], error_handling: Optional[Dict[str, Any]] = None):
        """
        Initialize content-share adapter.

        Args:
            config: content_share configuration block
            error_handling: Retry configuration block
        """
        super().__init__(config, error_handling)

        self.folder_id = config['folder_id']
        self.add_user_template = config['add_user_payload']
        self.remove_user_template = config['remove_user_payload']
        self.integration_app = config.get('integration_app', 'ecal')

        logger.info(f"Initialized content-share adapter for {self.name}")

    def sync_profiles(self, ctx) -> None:
        """
        Pull user profiles from the identity provider. Expensive; once per run.

        Raises:
            FatalRunError: If the sync call fails
        """
        logger.info(f"Synchronizing {self.name} profiles with the identity provider")
        try:
            self.client.request('POST', self.SYNC_PATH.format(app=self.integration_app),
                                params={'IdcService': 'SYNC_USERS_AND_ATTRIBUTES'})
        except DirectoryAPIError as e:
            raise FatalRunError(f"Sync profile data in {self.name} failed: {e}")

    def find_by_key(self, ctx, key: str) -> Optional[RecordHandle]:
        try:
            response = self._idempotent('user lookup', self.client.request, 'GET', self.USER_SEARCH_PATH,
                                        params={'email': key.strip()})
            items = response.json().get('items') or []
        except DirectoryAPIError as e:
            raise RecordLookupError(f"Getting {self.name} user by email {key} failed: {e}",
                                    e.status_code, e.body)

        if not items or not items[0].get('id'):
            return None
        return RecordHandle(key=key, id=items[0]['id'], attributes=items[0])

    def create(self, ctx, person) -> RecordHandle:
        """Grant the person downloader access on the folder."""
        handle = self.find_by_key(ctx, person.id)
        if handle is None:
            raise DirectoryAPIError(f"No ID returned for {person.id}; {self.name} not synced with this user")
        self.grant(ctx, handle)
        return handle

    def update(self, ctx, handle: RecordHandle, person) -> None:
        self.grant(ctx, handle)

    def grant(self, ctx, handle: RecordHandle) -> None:
        payload = render_template(self.add_user_template, {'USERID': handle.id, 'USERNAME': handle.id,
                                                           'EMAIL': handle.key})
        try:
            self.client.request('POST', self.SHARE_PATH.format(folder=self.folder_id), body=payload)
        except DirectoryAPIError as e:
            if not (e.error_key or '').startswith(self.ALREADY_SHARED_KEY):
                raise
            logger.info(f"User {handle.key} already shared on {self.name} folder")
            return

        audit_logger.log_user_operation('grant', handle.key, self.name, True)
        logger.info(f"Shared {self.name} folder with {handle.key}")

    def delete(self, ctx, handle: RecordHandle) -> None:
        """Revoke the folder share."""
        if handle.is_empty:
            return

        payload = render_template(self.remove_user_template, {'USERID': handle.id, 'USERNAME': handle.id,
                                                              'EMAIL': handle.key})
        try:
            self.client.request('DELETE', self.UNSHARE_PATH.format(folder=self.folder_id), body=payload)
        except DirectoryAPIError as e:
            if not (e.error_key or '').startswith(self.NOT_SHARED_KEY):
                raise
            logger.info(f"User {handle.key} already unshared from {self.name} folder")
            return

        audit_logger.log_user_operation('revoke', handle.key, self.name, True)
        logger.info(f"Unshared {self.name} folder from {handle.key}")
