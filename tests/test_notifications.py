#!/usr/bin/env python3
"""
Unit tests for email notifications.
"""

import os
import sys
import smtplib
import unittest
from unittest.mock import patch, MagicMock

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from identity_sync.notifications import send_email, send_failure_notification, send_run_summary
from identity_sync.engine import PhaseResult, StepFailure


class TestNotifications(unittest.TestCase):

    def setUp(self):
        self.config = {
            'enable_email': True,
            'email_on_failure': True,
            'email_on_success': False,
            'smtp_server': 'smtp.example.com',
            'smtp_port': 587,
            'smtp_tls': True,
            'smtp_username': 'alerts@example.com',
            'smtp_password': 'smtppass',
            'email_from': 'alerts@example.com',
            'email_to': 'ops@example.com',
        }

    @patch('identity_sync.notifications.smtplib.SMTP')
    def test_send_email(self, mock_smtp):
        server = MagicMock()
        mock_smtp.return_value = server

        self.assertTrue(send_email("Subject", "Body", self.config))

        mock_smtp.assert_called_once_with('smtp.example.com', 587)
        server.starttls.assert_called_once()
        server.login.assert_called_once_with('alerts@example.com', 'smtppass')
        from_addr, to_addrs, message = server.sendmail.call_args.args
        self.assertEqual(to_addrs, ['ops@example.com'])
        self.assertIn('Subject: Subject', message)

    @patch('identity_sync.notifications.smtplib.SMTP_SSL')
    def test_send_email_ssl_port(self, mock_smtp_ssl):
        self.config['smtp_port'] = 465
        self.assertTrue(send_email("Subject", "Body", self.config))
        mock_smtp_ssl.assert_called_once_with('smtp.example.com', 465)

    @patch('identity_sync.notifications.smtplib.SMTP')
    def test_send_email_disabled_or_incomplete(self, mock_smtp):
        self.assertFalse(send_email("Subject", "Body", dict(self.config, enable_email=False)))
        self.assertFalse(send_email("Subject", "Body", dict(self.config, smtp_server=None)))
        self.assertFalse(send_email("Subject", "Body", dict(self.config, email_to=[])))
        mock_smtp.assert_not_called()

    @patch('identity_sync.notifications.smtplib.SMTP')
    def test_send_email_smtp_error(self, mock_smtp):
        mock_smtp.return_value.login.side_effect = smtplib.SMTPAuthenticationError(535, b'denied')
        self.assertFalse(send_email("Subject", "Body", self.config))

    @patch('identity_sync.notifications.send_email', return_value=True)
    def test_failure_notification(self, mock_send):
        self.assertTrue(send_failure_notification("Sync Aborted", "roster down", self.config, {'Mode': 'add'}))

        subject, body, _ = mock_send.call_args.args
        self.assertEqual(subject, "Identity Sync Alert: Sync Aborted")
        self.assertIn("Error Message: roster down", body)
        self.assertIn("Mode: add", body)

        self.assertFalse(send_failure_notification("x", "y", dict(self.config, email_on_failure=False)))

    @patch('identity_sync.notifications.send_email', return_value=True)
    def test_run_summary(self, mock_send):
        clean_results = [PhaseResult('idp/deal_desk', 3, 3)]
        self.assertFalse(send_run_summary('add', clean_results, 12.5, self.config))
        mock_send.assert_not_called()

        failure = StepFailure('b@example.com', 'deal_desk', 'create', 'HTTP 500')
        results = [PhaseResult('idp/deal_desk', 2, 3, [failure]),
                   PhaseResult('content_share', 0, 3, aborted='sync failed')]
        self.assertTrue(send_run_summary('add', results, 125.0, self.config))

        subject, body, _ = mock_send.call_args.args
        self.assertEqual(subject, "Identity Sync: add run completed with failures")
        self.assertIn("idp/deal_desk: 2/3 succeeded", body)
        self.assertIn("(aborted: sync failed)", body)
        self.assertIn("b@example.com - create in deal_desk: HTTP 500", body)
        self.assertIn("2m 5.0s", body)


if __name__ == '__main__':
    unittest.main()
