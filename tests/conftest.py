"""
Test configuration.

The Lambda modules read their settings and create boto3 clients at import
time, so the environment is prepared here before any test module imports
them.
"""

import os

os.environ.update({
    'AWS_ACCESS_KEY_ID': 'testing',
    'AWS_SECRET_ACCESS_KEY': 'testing',
    'AWS_SESSION_TOKEN': 'testing',
    'AWS_DEFAULT_REGION': 'us-east-2',
    'REGION': 'us-east-2',
    'WORKER_IMAGE_ID': 'ami-0123456789abcdef0',
    'WORKER_INSTANCE_TYPE': 't3.medium',
    'WORKER_SUBNET_ID': 'subnet-0b971922ee90ce857',
    'WORKER_SECURITY_GROUP_IDS': 'sg-03f09d1bb5e16a3fb',
    'WORKER_KEY_NAME': 'citus',
    'REGISTRAR_FUNCTION_NAME': 'citus-add-worker',
    'DB_HOST': 'coordinator.internal',
    'DB_PASSWORD': 'secret',
    'ENABLE_SNS': 'false',
})
os.environ.pop('DB_SECRET_ARN', None)
os.environ.pop('SNS_TOPIC_ARN', None)
os.environ.pop('REBALANCE_WAIT', None)
