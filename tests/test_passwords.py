#!/usr/bin/env python3
"""
Unit tests for the bulk password update pipeline.
"""

import os
import sys
import unittest
from unittest.mock import Mock

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from dhis2_user_sync.logging_setup import EventLog
from dhis2_user_sync.models import PasswordUpdate
from dhis2_user_sync.pipelines import PasswordUpdatePipeline
from dhis2_user_sync.transport import ApiResponse, HttpError


class TestPasswordUpdatePipeline(unittest.TestCase):

    def setUp(self):
        self.users_api = Mock()
        self.users_api.find_user_id.return_value = 'uid1'
        self.users_api.get_user.return_value = {'id': 'uid1', 'username': 'jdoe',
                                                'userCredentials': {'username': 'jdoe'}}
        self.users_api.update_user.return_value = ApiResponse(status=200, body={})
        self.event_log = EventLog()
        self.pipeline = PasswordUpdatePipeline(self.users_api, self.event_log, Mock(connected=True))

    def test_password_written_to_credentials(self):
        self.assertTrue(self.pipeline.update_password(PasswordUpdate('jdoe', 'N3w!pass')))

        user_id, payload = self.users_api.update_user.call_args[0]
        self.assertEqual(user_id, 'uid1')
        self.assertEqual(payload['userCredentials'], {'username': 'jdoe', 'password': 'N3w!pass'})

    def test_credentials_created_when_missing(self):
        self.users_api.get_user.return_value = {'id': 'uid1'}

        self.pipeline.update_password(PasswordUpdate('jdoe', 'x'))
        self.assertEqual(self.users_api.update_user.call_args[0][1]['userCredentials'], {'password': 'x'})

    def test_no_content_is_success(self):
        self.users_api.update_user.return_value = ApiResponse(status=204)
        self.assertTrue(self.pipeline.update_password(PasswordUpdate('jdoe', 'x')))

    def test_other_success_status_is_failure(self):
        self.users_api.update_user.return_value = ApiResponse(status=201)

        self.assertFalse(self.pipeline.update_password(PasswordUpdate('jdoe', 'x')))
        self.assertEqual(self.event_log.messages('error'), ["Failed to update user 'jdoe'. HTTP 201"])

    def test_unknown_user(self):
        self.users_api.find_user_id.return_value = None

        self.assertFalse(self.pipeline.update_password(PasswordUpdate('ghost', 'x')))
        self.users_api.update_user.assert_not_called()
        self.assertEqual(self.event_log.messages('warning'), ["User 'ghost' not found"])

    def test_server_error(self):
        self.users_api.update_user.side_effect = HttpError(400, {'message': 'Password too weak'})

        self.assertFalse(self.pipeline.update_password(PasswordUpdate('jdoe', 'x')))
        self.assertEqual(self.event_log.messages('error'), ["Error updating 'jdoe': Password too weak"])

    def test_run(self):
        self.users_api.find_user_id.side_effect = lambda username: None if username == 'b' else 'id'

        result = self.pipeline.run([
            {'username': 'a', 'newPassword': 'x'},
            {'username': 'b', 'newPassword': 'y'},
        ])

        self.assertEqual(result.success_count, 1)
        self.assertEqual(result.failure_count, 1)
        self.assertEqual(result.succeeded, ['a'])
        self.assertEqual(self.event_log.messages()[-1],
                         'Password update completed. Success: 1, Errors: 1')


if __name__ == '__main__':
    unittest.main()
