#!/usr/bin/env python3
"""
Unit tests for the identity provider adapter.
"""

import os
import sys
import json
import unittest
from unittest.mock import Mock, patch

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from identity_sync.adapters.base import (
    RestResponse, RecordHandle, DirectoryAPIError, RecordLookupError, GroupNotFoundError
)
from identity_sync.adapters.identity_provider import IdentityProviderAdapter, split_group_list
from identity_sync.context import RunContext
from identity_sync.errors import FatalRunError
from identity_sync.roster import Person


def response(body=None, status=200):
    return RestResponse(status, 'OK', json.dumps(body) if body is not None else '')


class TestIdentityProviderAdapter(unittest.TestCase):

    def setUp(self):
        self.config = {
            'name': 'idp',
            'base_url': 'https://idp.example.com',
            'auth': {'method': 'oauth2', 'client_id': 'sync-client', 'client_secret': 'secret'},
            'user_groups': 'Users, ,Portal',
            'manager_groups': 'Managers',
            'create_user_payload': '{"userName": "%USERNAME%", "familyName": "%LASTNAME%"}',
            'add_user_to_group_payload': '{"value": "%USERID%"}',
            'remove_user_from_group_payload': '{"remove": "%USERID%"}',
        }
        self.adapter = IdentityProviderAdapter(self.config, {'max_retries': 1, 'retry_wait_seconds': 0})
        self.adapter.client.request = Mock()
        self.request = self.adapter.client.request
        self.ctx = RunContext.create({}, token='tok')
        self.contributor = Person(id='ann@example.com', first_name='Ann', last_name="O'Neil \"Jr\"")
        self.manager = Person(id='max@example.com', direct_report_count=4)

    def test_split_group_list(self):
        self.assertEqual(split_group_list('Users, ,Portal'), ['Users', 'Portal'])
        self.assertEqual(split_group_list(''), [])

    def test_groups_follow_role(self):
        self.assertEqual(self.adapter.groups_for(self.contributor), ['Users', 'Portal'])
        self.assertEqual(self.adapter.groups_for(self.manager), ['Managers'])

    def test_acquire_token(self):
        self.request.return_value = response({'access_token': 'abc'})

        self.assertEqual(self.adapter.acquire_token(), 'abc')

        args, kwargs = self.request.call_args
        self.assertEqual(args, ('POST', '/oauth2/v1/token'))
        self.assertIn('grant_type=client_credentials', kwargs['body'])
        self.assertTrue(kwargs['headers']['Authorization'].startswith('Basic '))

    def test_token_failure_is_fatal(self):
        self.request.side_effect = DirectoryAPIError("HTTP 400", 400)
        with self.assertRaises(FatalRunError):
            self.adapter.acquire_token()

        self.request.side_effect = None
        self.request.return_value = response({})
        with self.assertRaises(FatalRunError):
            self.adapter.acquire_token()

    def test_find_by_key(self):
        self.request.return_value = response({'Resources': [{'id': 'u1', 'userName': 'ann@example.com'}]})

        handle = self.adapter.find_by_key(self.ctx, 'ann@example.com')

        self.assertEqual(handle.id, 'u1')
        self.request.assert_called_once_with('GET', '/admin/v1/Users',
                                             params={'filter': 'userName eq "ann@example.com"'}, token='tok')

    def test_find_by_key_no_match(self):
        self.request.return_value = response({'Resources': []})
        self.assertIsNone(self.adapter.find_by_key(self.ctx, 'nobody@example.com'))

    def test_find_by_key_query_failure(self):
        self.request.side_effect = DirectoryAPIError("HTTP 400", 400)
        with self.assertRaises(RecordLookupError):
            self.adapter.find_by_key(self.ctx, 'ann@example.com')

    def test_create_escapes_template_values(self):
        self.request.return_value = response({'id': 'u1'}, 201)

        handle = self.adapter.create(self.ctx, self.contributor)

        self.assertTrue(handle.created)
        self.assertEqual(handle.id, 'u1')
        payload = json.loads(self.request.call_args.kwargs['body'])
        self.assertEqual(payload['familyName'], "O'Neil \"Jr\"")

    def test_second_create_conflict_is_success(self):
        self.request.side_effect = [
            DirectoryAPIError("HTTP 409 Conflict", 409),
            response({'Resources': [{'id': 'u1'}]}),
        ]

        handle = self.adapter.create(self.ctx, self.contributor)

        self.assertEqual(handle.id, 'u1')
        self.assertFalse(handle.created)

    def test_create_conflict_without_lookup_gives_empty_handle(self):
        self.request.side_effect = [
            DirectoryAPIError("HTTP 409 Conflict", 409),
            DirectoryAPIError("HTTP 400", 400),
        ]

        handle = self.adapter.create(self.ctx, self.contributor)

        self.assertTrue(handle.is_empty)

    def test_create_failure_raises(self):
        self.request.side_effect = DirectoryAPIError("HTTP 400", 400)
        with self.assertRaises(DirectoryAPIError):
            self.adapter.create(self.ctx, self.contributor)

    def test_delete_is_idempotent(self):
        handle = RecordHandle(key='ann@example.com', id='u1')

        self.request.return_value = response(status=204)
        self.adapter.delete(self.ctx, handle)
        self.request.assert_called_with('DELETE', '/admin/v1/Users/u1', params={'forceDelete': 'true'}, token='tok')

        self.request.side_effect = DirectoryAPIError("HTTP 404", 404)
        self.adapter.delete(self.ctx, handle)

        self.request.reset_mock()
        self.adapter.delete(self.ctx, RecordHandle.empty('ann@example.com'))
        self.request.assert_not_called()

    def test_assign_role_groups_caches_group_ids(self):
        self.request.side_effect = [
            response({'Resources': [{'id': 'g-users'}]}),
            response({}),
            response({'Resources': [{'id': 'g-portal'}]}),
            response({}),
            response({}),
        ]
        handle = RecordHandle(key='ann@example.com', id='u1')

        self.assertEqual(self.adapter.assign_role_groups(self.ctx, handle, self.contributor), ['Users', 'Portal'])
        self.adapter.add_to_group(self.ctx, handle, 'Users')

        patched = [c for c in self.request.call_args_list if c.args[0] == 'PATCH']
        self.assertEqual([c.args[1] for c in patched],
                         ['/admin/v1/Groups/g-users', '/admin/v1/Groups/g-portal', '/admin/v1/Groups/g-users'])
        self.assertEqual(self.request.call_count, 5)

    def test_update_adds_role_groups(self):
        self.adapter._group_ids['Managers'] = 'g-managers'
        self.request.return_value = response({})

        self.adapter.update(self.ctx, RecordHandle(key='max@example.com', id='u9'), self.manager)

        self.request.assert_called_once()
        args, kwargs = self.request.call_args
        self.assertEqual(args, ('PATCH', '/admin/v1/Groups/g-managers'))
        self.assertEqual(json.loads(kwargs['body']), {'value': 'u9'})

    def test_unknown_group(self):
        self.request.return_value = response({'Resources': []})
        with self.assertRaises(GroupNotFoundError):
            self.adapter.resolve_group(self.ctx, 'Ghosts')

    def test_group_membership_conflict_is_success(self):
        self.adapter._group_ids['Users'] = 'g-users'
        self.request.side_effect = DirectoryAPIError("HTTP 409", 409)

        self.adapter.add_to_group(self.ctx, RecordHandle(key='ann@example.com', id='u1'), 'Users')

    def test_remove_from_group(self):
        self.adapter._group_ids['Users'] = 'g-users'
        self.request.return_value = response({})

        self.adapter.remove_from_group(self.ctx, RecordHandle(key='ann@example.com', id='u1'), 'Users')

        self.assertEqual(json.loads(self.request.call_args.kwargs['body']), {'remove': 'u1'})

    @patch('identity_sync.retry.time.sleep')
    def test_lookup_retries_transient_errors(self, mock_sleep):
        self.request.side_effect = [DirectoryAPIError("HTTP 503", 503), response({'Resources': [{'id': 'u1'}]})]

        self.assertEqual(self.adapter.find_by_key(self.ctx, 'ann@example.com').id, 'u1')
        self.assertEqual(self.request.call_count, 2)


if __name__ == '__main__':
    unittest.main()
