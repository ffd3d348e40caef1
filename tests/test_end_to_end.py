"""Provisioner -> registrar scenario with both functions wired together."""

import io
import json
from unittest import TestCase
from unittest.mock import patch

from botocore import stub
from botocore.response import StreamingBody

import add_worker
import provision_worker
from coordinator_double import FakeCoordinator

INSTANCE_ID = 'i-0e2e0e2e0e2e0e2e0'
ADDRESS = '10.0.1.5'


class TestScaleUp(TestCase):
    def setUp(self):
        super().setUp()
        self.coordinator = FakeCoordinator(nodes=[('10.0.1.2', 5432)])
        for patcher in (
            patch('add_worker.psycopg2.connect', side_effect=self.coordinator.connect),
            patch.object(provision_worker, 'port_open', return_value=True),
        ):
            patcher.start()
            self.addCleanup(patcher.stop)

    def registrar_invoke_response(self):
        """Run the registrar on the hand-off payload, as Lambda would."""
        payload = add_worker.lambda_handler({'ip': ADDRESS}, None)
        raw = json.dumps(payload).encode()
        return {'StatusCode': 200, 'Payload': StreamingBody(io.BytesIO(raw), len(raw))}

    def run_scale_up(self):
        with stub.Stubber(provision_worker.ec2_client) as ec2, stub.Stubber(provision_worker.lambda_client) as lambda_:
            ec2.add_response(
                'run_instances',
                {'Instances': [{'InstanceId': INSTANCE_ID, 'PrivateIpAddress': ADDRESS}]},
            )
            ec2.add_response('create_tags', {})
            ec2.add_response(
                'describe_instances',
                {'Reservations': [{'Instances': [
                    {'InstanceId': INSTANCE_ID, 'PrivateIpAddress': ADDRESS, 'State': {'Name': 'running'}},
                ]}]},
                {'InstanceIds': [INSTANCE_ID]},
            )
            lambda_.add_response(
                'invoke',
                self.registrar_invoke_response(),
                {
                    'FunctionName': 'citus-add-worker',
                    'InvocationType': 'RequestResponse',
                    'Payload': json.dumps({'ip': ADDRESS}),
                },
            )
            ec2.add_response(
                'create_tags',
                {},
                {'Resources': [INSTANCE_ID], 'Tags': [{'Key': 'RegistrationState', 'Value': 'registered'}]},
            )

            response = provision_worker.lambda_handler({}, None)

            ec2.assert_no_pending_responses()
            lambda_.assert_no_pending_responses()
        return response, json.loads(response['body'])

    def test_new_worker_joins_and_rebalances_once(self):
        response, body = self.run_scale_up()

        self.assertEqual(response['statusCode'], 200)
        self.assertEqual(body['private_address'], ADDRESS)
        self.assertTrue(body['registrar']['node_registered'])
        self.assertEqual(body['registrar']['active_workers'], 2)
        self.assertIn(ADDRESS, self.coordinator.active_addresses())
        self.assertEqual(len(self.coordinator.calls('citus_add_node')), 1)
        self.assertEqual(len(self.coordinator.calls('citus_rebalance_start')), 1)
        self.assertTrue(all(conn.closed for conn in self.coordinator.connections))

    def test_retry_for_registered_worker_has_no_duplicate(self):
        self.coordinator._insert(ADDRESS, 5432)

        response, body = self.run_scale_up()

        self.assertEqual(response['statusCode'], 200)
        self.assertTrue(body['registrar']['already_member'])
        self.assertEqual(self.coordinator.active_addresses().count(ADDRESS), 1)
        self.assertEqual(self.coordinator.calls('citus_add_node'), [])
        self.assertEqual(len(self.coordinator.calls('citus_rebalance_start')), 1)
