#!/usr/bin/env python3
"""
Tests for logging setup, sensitive data scrubbing and the audit logger.
"""

import os
import sys
import time
import logging
import logging.handlers
import tempfile

import pytest

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from identity_sync.logging_setup import SensitiveDataFilter, LoggingManager, AuditLogger


def scrub(message):
    record = logging.LogRecord('test', logging.INFO, __file__, 1, message, None, None)
    SensitiveDataFilter().filter(record)
    return record.msg


@pytest.mark.parametrize('message, expected', [
    ('password=secret123', 'password=****'),
    ('client_secret=abc&scope=urn', 'client_secret=****&scope=urn'),
    ('{"password": "test123"}', '{"password": "****"}'),
    ('{"access_token": "eyJhbGci", "expires_in": 3600}', '{"access_token": "****", "expires_in": 3600}'),
    ('Authorization: Bearer abc123token', 'Authorization: Bearer ****'),
    ('Authorization: Basic dXNlcjpwYXNz', 'Authorization: Basic ****'),
    ('Processing user [1/3] -> Jane Doe', 'Processing user [1/3] -> Jane Doe'),
])
def test_sensitive_data_filtering(message, expected):
    assert scrub(message) == expected


@pytest.fixture
def isolated_root_logger():
    root_logger = logging.getLogger()
    saved_handlers = root_logger.handlers[:]
    saved_level = root_logger.level
    yield root_logger
    for handler in root_logger.handlers:
        handler.close()
    root_logger.handlers[:] = saved_handlers
    root_logger.setLevel(saved_level)


def test_log_file_is_scrubbed(isolated_root_logger):
    with tempfile.TemporaryDirectory() as log_dir:
        manager = LoggingManager()
        manager.setup_logging({'level': 'DEBUG', 'log_dir': log_dir, 'console_output': False})

        logging.getLogger('identity_sync.test').info('Connecting with password=hunter2')
        for handler in isolated_root_logger.handlers:
            handler.flush()

        with open(os.path.join(log_dir, 'app.log'), encoding='utf-8') as f:
            content = f.read()

        assert 'password=****' in content
        assert 'hunter2' not in content
        assert manager.configured

        for handler in isolated_root_logger.handlers:
            handler.close()
        isolated_root_logger.handlers.clear()


def test_old_logs_removed(isolated_root_logger):
    with tempfile.TemporaryDirectory() as log_dir:
        old_log = os.path.join(log_dir, 'app.log.2020-01-01')
        with open(old_log, 'w') as f:
            f.write('old')
        ten_days_ago = time.time() - 10 * 86400
        os.utime(old_log, (ten_days_ago, ten_days_ago))

        LoggingManager().setup_logging({'log_dir': log_dir, 'retention_days': 7, 'console_output': False})

        assert not os.path.exists(old_log)

        for handler in isolated_root_logger.handlers:
            handler.close()
        isolated_root_logger.handlers.clear()


def test_audit_logger(caplog):
    with caplog.at_level(logging.INFO, logger='audit'):
        AuditLogger().log_user_operation('create', 'ann@example.com', 'deal_desk', True)
        AuditLogger().log_authentication_attempt('idp', 'sync-client', False)

    assert 'User operation SUCCESS: create user=ann@example.com system=deal_desk' in caplog.text
    assert 'Authentication FAILURE: idp client=sync-client' in caplog.text


def test_unwritable_log_dir_falls_back_to_cwd(mocker):
    mocker.patch('identity_sync.logging_setup.os.path.exists', return_value=False)
    makedirs = mocker.patch('identity_sync.logging_setup.os.makedirs', side_effect=OSError('read-only'))

    manager = LoggingManager()
    manager.log_dir = '/var/log/identity-sync'
    manager._ensure_log_directory()

    makedirs.assert_called_once_with('/var/log/identity-sync', exist_ok=True)
    assert manager.log_dir == '.'


def test_setup_logging_configures_once(mocker, isolated_root_logger):
    with tempfile.TemporaryDirectory() as log_dir:
        manager = LoggingManager()
        cleanup = mocker.patch.object(manager, '_cleanup_old_logs')

        manager.setup_logging({'log_dir': log_dir, 'console_output': False})
        manager.setup_logging({'log_dir': log_dir, 'console_output': True})

        cleanup.assert_called_once_with()
        rotating = [h for h in isolated_root_logger.handlers
                    if isinstance(h, logging.handlers.TimedRotatingFileHandler)]
        assert len(rotating) == 1

        for handler in isolated_root_logger.handlers:
            handler.close()
        isolated_root_logger.handlers.clear()
