#!/usr/bin/env python3
"""
Unit tests for the business app adapter.
"""

import os
import sys
import json
import unittest
from unittest.mock import Mock

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from identity_sync.adapters.base import RestResponse, RecordHandle, DirectoryAPIError, RecordLookupError
from identity_sync.adapters.business_app import BusinessAppAdapter
from identity_sync.context import RunContext
from identity_sync.roster import Person


def response(body=None, status=200):
    return RestResponse(status, 'OK', json.dumps(body) if body is not None else '')


class TestBusinessAppAdapter(unittest.TestCase):

    def setUp(self):
        self.config = {
            'name': 'deal_desk',
            'endpoint': 'https://apps.example.com/deal_desk/Users',
            'auth': {'method': 'basic', 'username': 'app-user', 'password': 'app-pass'},
            'create_user_payload': '{"userEmail": "%USERNAME%", "role": "%ROLE%", "manager": "%MANAGER%"}',
            'update_user_payload': '{"role": "%ROLE%", "manager": "%MANAGER%", "lob": "%LOB%"}',
            'user_role_code': 'IC',
            'manager_role_code': 'MGR',
            'page_size': 2,
        }
        self.adapter = BusinessAppAdapter(self.config, {'max_retries': 0, 'retry_wait_seconds': 0})
        self.adapter.client.request = Mock()
        self.request = self.adapter.client.request
        self.ctx = RunContext.create({})
        self.person = Person(id='ann@example.com', manager_ref='max@example.com', line_of_business='Cloud')
        self.manager = Person(id='max@example.com', direct_report_count=1)

    def test_basic_auth_header(self):
        self.assertTrue(self.adapter.client.auth_headers['Authorization'].startswith('Basic '))

    def test_role_code(self):
        self.assertEqual(self.adapter.role_code_for(self.person), 'IC')
        self.assertEqual(self.adapter.role_code_for(self.manager), 'MGR')

    def test_find_by_key(self):
        self.request.return_value = response({'items': [{'id': 300, 'manager': 'old@example.com'}]})

        handle = self.adapter.find_by_key(self.ctx, 'ann@example.com')

        self.assertEqual(handle.id, '300')
        self.assertEqual(handle.attributes['manager'], 'old@example.com')
        self.request.assert_called_once_with('GET', params={'q': "userEmail='ann@example.com'"})

    def test_find_by_key_escapes_quotes(self):
        self.request.return_value = response({'items': []})

        self.adapter.find_by_key(self.ctx, "o'brien@example.com")

        self.request.assert_called_once_with('GET', params={'q': "userEmail='o\\'brien@example.com'"})

    def test_find_by_key_no_match_and_failure(self):
        self.request.return_value = response({'items': []})
        self.assertIsNone(self.adapter.find_by_key(self.ctx, 'ann@example.com'))

        self.request.side_effect = DirectoryAPIError("HTTP 500", 500)
        with self.assertRaises(RecordLookupError):
            self.adapter.find_by_key(self.ctx, 'ann@example.com')

    def test_create_with_role(self):
        self.request.return_value = response({'id': 301}, 201)

        handle = self.adapter.create(self.ctx, self.manager)

        self.assertTrue(handle.created)
        self.assertEqual(handle.id, '301')
        payload = json.loads(self.request.call_args.kwargs['body'])
        self.assertEqual(payload, {'userEmail': 'max@example.com', 'role': 'MGR', 'manager': ''})

    def test_create_conflict_is_success(self):
        self.request.side_effect = [DirectoryAPIError("HTTP 409", 409), response({'items': [{'id': 7}]})]

        handle = self.adapter.create(self.ctx, self.person)

        self.assertEqual(handle.id, '7')
        self.assertFalse(handle.created)

    def test_update_always_patches(self):
        self.request.return_value = response({})
        handle = RecordHandle(key='ann@example.com', id='300', attributes={'manager': 'max@example.com'})

        self.adapter.update(self.ctx, handle, self.person)

        args, kwargs = self.request.call_args
        self.assertEqual(args, ('PATCH', '300'))
        self.assertEqual(json.loads(kwargs['body']), {'role': 'IC', 'manager': 'max@example.com', 'lob': 'Cloud'})

    def test_update_requires_record_id(self):
        with self.assertRaises(DirectoryAPIError):
            self.adapter.update(self.ctx, RecordHandle.empty('ann@example.com'), self.person)

    def test_delete_is_idempotent(self):
        handle = RecordHandle(key='ann@example.com', id='300')

        self.request.return_value = response(status=204)
        self.adapter.delete(self.ctx, handle)
        self.request.assert_called_with('DELETE', '300')

        self.request.side_effect = DirectoryAPIError("HTTP 404", 404)
        self.adapter.delete(self.ctx, handle)

    def test_delete_failure_raises(self):
        self.request.side_effect = DirectoryAPIError("HTTP 403", 403)
        with self.assertRaises(DirectoryAPIError):
            self.adapter.delete(self.ctx, RecordHandle(key='ann@example.com', id='300'))

    def test_list_keys_follows_pagination(self):
        self.request.side_effect = [
            response({'items': [{'userEmail': 'a@example.com'}, {'userEmail': ' b@example.com '}], 'hasMore': True}),
            response({'items': [{'userEmail': ''}, {'userEmail': 'stray@example.com'}], 'hasMore': False}),
        ]

        keys = self.adapter.list_keys(self.ctx)

        self.assertEqual(keys, ['a@example.com', 'b@example.com', 'stray@example.com'])
        offsets = [c.kwargs['params']['offset'] for c in self.request.call_args_list]
        self.assertEqual(offsets, [0, 2])


if __name__ == '__main__':
    unittest.main()
