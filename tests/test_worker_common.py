"""Tests for the shared helpers."""

import json
from unittest import TestCase
from unittest.mock import patch

from botocore import stub

import worker_common
from worker_common import (
    ConfigurationError,
    ReachabilityTimeoutError,
    RegistrationError,
    error_response,
    require_settings,
    success_response,
)


class TestRequireSettings(TestCase):
    def test_all_present(self):
        require_settings(DB_HOST='coordinator', WORKER_SECURITY_GROUP_IDS=['sg-1'])

    def test_names_every_missing_setting(self):
        with self.assertRaises(ConfigurationError) as raised:
            require_settings(DB_HOST=None, WORKER_SECURITY_GROUP_IDS=[], WORKER_IMAGE_ID='ami-1')

        self.assertEqual(
            str(raised.exception),
            "Missing required configuration: DB_HOST, WORKER_SECURITY_GROUP_IDS",
        )


class TestResponses(TestCase):
    def test_success_body_is_json_string(self):
        response = success_response(instance_id='i-1')

        self.assertEqual(response['statusCode'], 200)
        self.assertEqual(json.loads(response['body']), {'status': 'success', 'instance_id': 'i-1'})

    def test_error_carries_kind_and_message(self):
        response = error_response(RegistrationError('coordinator refused'), address='10.0.1.5')

        self.assertEqual(response['statusCode'], 500)
        self.assertEqual(json.loads(response['body']), {
            'status': 'failure',
            'error_kind': 'RegistrationError',
            'message': 'coordinator refused',
            'address': '10.0.1.5',
        })

    def test_timeout_kind(self):
        body = worker_common.parse_body(error_response(ReachabilityTimeoutError('too slow')))

        self.assertEqual(body['error_kind'], 'TimeoutError')

    def test_parse_plain_text_body(self):
        self.assertEqual(worker_common.parse_body({'body': 'oops'}), {'message': 'oops'})


class TestNotify(TestCase):
    def test_disabled(self):
        with stub.Stubber(worker_common.sns) as stubber:
            worker_common.notify("subject", "message")
            stubber.assert_no_pending_responses()

    def test_publish(self):
        topic = 'arn:aws:sns:us-east-2:123456789012:citus-autoscaler'
        with patch.object(worker_common, 'ENABLE_SNS', True), patch.object(worker_common, 'SNS_TOPIC_ARN', topic):
            with stub.Stubber(worker_common.sns) as stubber:
                stubber.add_response(
                    'publish',
                    {'MessageId': 'message-1'},
                    {'TopicArn': topic, 'Subject': 'Citus Worker Added', 'Message': 'joined'},
                )
                worker_common.notify('Citus Worker Added', 'joined')
                stubber.assert_no_pending_responses()

    def test_publish_failure_is_not_raised(self):
        with patch.object(worker_common, 'ENABLE_SNS', True), patch.object(worker_common, 'SNS_TOPIC_ARN', 'topic'):
            with stub.Stubber(worker_common.sns) as stubber:
                stubber.add_client_error('publish', service_error_code='AuthorizationError')
                with self.assertLogs(level='ERROR'):
                    worker_common.notify('subject', 'message')
