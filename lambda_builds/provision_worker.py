# -------------------------------------------------------------------
# Citus Worker Autoscaler - Provisioner Lambda Function
# -------------------------------------------------------------------
# This Lambda function is triggered by an autoscaling signal (EventBridge
# rule, alarm action or a manual invoke). It launches one EC2 instance
# that will serve as a Citus worker node, waits until the worker's
# PostgreSQL port answers on its private address, and then invokes the
# registrar function (add_worker.py) with that address.
#
# Every instance is launched with RegistrationState=pending-registration.
# The tag only moves to "registered" once the registrar confirms the node
# joined the cluster, so a failed run leaves a discoverable instance that
# a later {"reconcile": true} invocation can finish without launching a
# new one.
#
# Trigger payloads:
#   {}                                 -> launch and register a new worker
#   {"idempotency_key": "..."}         -> same, deduplicated by EC2 ClientToken
#   {"instance_id": "i-..."}           -> resume registration of an instance
#   {"reconcile": true}                -> resume every pending instance
# -------------------------------------------------------------------

# ========================
# 📦 IMPORTS AND LOGGING SETUP
# ========================
import json
import os
import socket
import time
import uuid
from dataclasses import dataclass, field

import boto3
import botocore.exceptions
from botocore.config import Config

from worker_common import (
    ProvisionError,
    ReachabilityTimeoutError,
    RebalanceError,
    RegistrationError,
    WorkerControllerError,
    env_list,
    error_response,
    logger,
    notify,
    parse_body,
    region,
    require_settings,
    success_response,
)

# ========================
# 🔧 AWS CLIENT SETUP
# ========================
# EC2 client - used to launch, tag and describe worker instances
ec2_client = boto3.client("ec2", region_name=region)

# Lambda client - used to hand the worker address to the registrar function.
# A RequestResponse invoke runs the registrar for as long as it needs, so the
# read timeout must outlast it and botocore must never re-send the invoke.
REGISTRAR_TIMEOUT = float(os.getenv('REGISTRAR_TIMEOUT_SECONDS', '900'))

lambda_client = boto3.client(
    "lambda",
    region_name=region,
    config=Config(
        read_timeout=REGISTRAR_TIMEOUT + 10,
        connect_timeout=10,
        retries={'total_max_attempts': 1},
    ),
)

# ========================
# ⚙️ ENVIRONMENT VARIABLES CONFIGURATION
# ========================
# REQUIRED for launches: AMI with PostgreSQL + Citus preinstalled
IMAGE_ID = os.getenv('WORKER_IMAGE_ID')
INSTANCE_TYPE = os.getenv('WORKER_INSTANCE_TYPE', 't3.medium')

# REQUIRED for launches: network placement of the worker
SUBNET_ID = os.getenv('WORKER_SUBNET_ID')
SECURITY_GROUP_IDS = env_list('WORKER_SECURITY_GROUP_IDS')

# OPTIONAL: EC2 key pair for SSH access to the worker
KEY_NAME = os.getenv('WORKER_KEY_NAME')

WORKER_NAME_TAG = os.getenv('WORKER_NAME_TAG', 'citus-worker')

# REQUIRED: name or ARN of the registrar Lambda (add_worker.py)
REGISTRAR_FUNCTION_NAME = os.getenv('REGISTRAR_FUNCTION_NAME')

# Port checked on the private address; the registrar registers the same port
WORKER_PORT = int(os.getenv('WORKER_PORT', '5432'))

# Bounded polling instead of a fixed sleep
REACHABILITY_TIMEOUT = float(os.getenv('REACHABILITY_TIMEOUT_SECONDS', '300'))
POLL_INTERVAL = float(os.getenv('REACHABILITY_POLL_SECONDS', '5'))

# Lambda execution time kept back for the hand-off after the wait
HANDOFF_RESERVE = float(os.getenv('HANDOFF_RESERVE_SECONDS', '30'))

PORT_CHECK_TIMEOUT = 3

# ========================
# 🏷️ TAGGING CONFIGURATION
# ========================
MANAGED_TAGS = {
    'ManagedBy': 'citus-worker-autoscaler',
    'CreatedBy': 'citus-provision-worker-lambda',
    'Purpose': 'citus-worker-node',
}

REGISTRATION_STATE_TAG = 'RegistrationState'
REGISTRATION_ERROR_TAG = 'RegistrationError'

STATE_PENDING = 'pending-registration'
STATE_PENDING_REBALANCE = 'pending-rebalance'
STATE_REGISTERED = 'registered'

# Instance states from which a worker never becomes reachable
TERMINAL_STATES = ('shutting-down', 'terminated', 'stopping', 'stopped')


# ========================
# 🧱 DATA MODEL
# ========================
@dataclass
class NetworkConfig:
    subnet_id: str
    security_group_ids: list
    key_name: str = None

    def validate(self):
        if not self.subnet_id:
            raise ProvisionError("Network configuration does not reference a subnet")
        if not self.security_group_ids:
            raise ProvisionError("Network configuration does not reference a security group")


@dataclass
class WorkerInstance:
    instance_id: str
    private_address: str = ''
    tags: dict = field(default_factory=dict)
    # Set by provision(): EC2 may not list the instance for a few seconds
    launched_now: bool = False


@dataclass
class RegistrarResult:
    """The registrar's answer to a hand-off, as seen from this side."""

    status_code: int
    body: dict
    error_kind: str = None
    function_error: str = None

    @property
    def ok(self):
        return self.status_code == 200 and not self.function_error

    def as_error(self):
        """Turn a failed result into the matching controller error."""
        message = self.body.get('message') or f"Registrar returned status {self.status_code}"
        if self.error_kind == RebalanceError.kind:
            return RebalanceError(message)
        return RegistrationError(message, reason=self.body.get('reason', 'rejected'))


def _tag_list(tags):
    return [{'Key': key, 'Value': value} for key, value in tags.items()]


# ========================
# 🚀 INSTANCE LAUNCH
# ========================
def provision(image_id, instance_type, network_config, client_token=None):
    """
    Launch exactly one worker instance.

    Args:
        image_id (str): AMI to boot
        instance_type (str): EC2 instance type
        network_config (NetworkConfig): Subnet, security groups and key pair
        client_token (str): EC2 idempotency token; a retried call with the
            same token returns the already-launched instance

    Returns:
        WorkerInstance: The new instance. ``private_address`` is whatever EC2
        reported at launch and is confirmed later by await_reachable().

    Raises:
        ProvisionError: If the network config is incomplete or EC2 rejects
            the request (quota, invalid AMI, unknown subnet, ...)
    """
    network_config.validate()

    tags = dict(MANAGED_TAGS)
    tags[REGISTRATION_STATE_TAG] = STATE_PENDING

    params = {
        'ImageId': image_id,
        'InstanceType': instance_type,
        'MinCount': 1,
        'MaxCount': 1,
        'SubnetId': network_config.subnet_id,
        'SecurityGroupIds': list(network_config.security_group_ids),
        'ClientToken': client_token or uuid.uuid4().hex,
        # Tagged at launch so a crash before hand-off still leaves a pending instance
        'TagSpecifications': [{'ResourceType': 'instance', 'Tags': _tag_list(tags)}],
    }
    if network_config.key_name:
        params['KeyName'] = network_config.key_name

    logger.info(f"Launching {instance_type} worker from {image_id} in subnet {network_config.subnet_id}")
    try:
        response = ec2_client.run_instances(**params)
    except (botocore.exceptions.ClientError, botocore.exceptions.BotoCoreError) as e:
        raise ProvisionError(f"EC2 rejected the worker launch: {e}") from e

    instances = response.get('Instances') or []
    if len(instances) != 1 or not instances[0].get('InstanceId'):
        raise ProvisionError(f"Expected exactly one launched instance, EC2 returned {len(instances)}")

    launched = instances[0]
    instance = WorkerInstance(
        instance_id=launched['InstanceId'],
        private_address=launched.get('PrivateIpAddress', ''),
        tags=tags,
        launched_now=True,
    )
    logger.info(f"Created instance {instance.instance_id} (private address at launch: {instance.private_address or 'n/a'})")
    return instance


# ========================
# 🏷️ TAGGING (BEST EFFORT)
# ========================
def tag(instance_id, tags):
    """
    Apply tags to an instance without ever failing the invocation.

    Returns:
        bool: True if EC2 accepted the tags. A False result is logged as a
        warning here and should be surfaced in the response by the caller.
    """
    try:
        ec2_client.create_tags(Resources=[instance_id], Tags=_tag_list(tags))
        logger.info(f"Instance {instance_id} tagged: {tags}")
        return True
    except (botocore.exceptions.ClientError, botocore.exceptions.BotoCoreError) as e:
        logger.warning(f"Failed to tag instance {instance_id} with {sorted(tags)}: {e}")
        return False


def mark_registration_state(instance_id, state, reason=None):
    """Record where the instance is in the registration pipeline."""
    tags = {REGISTRATION_STATE_TAG: state}
    if reason:
        # EC2 tag values are limited to 256 characters
        tags[REGISTRATION_ERROR_TAG] = reason[:255]
    return tag(instance_id, tags)


# ========================
# ⏳ REACHABILITY POLLING
# ========================
def port_open(address, port, timeout):
    """Return True if a TCP connection to address:port succeeds."""
    try:
        with socket.create_connection((address, port), timeout=timeout):
            return True
    except OSError:
        return False


def _instance_status(instance_id, missing_ok=False):
    """
    Return (state name, private address) for an instance.

    With ``missing_ok`` (an instance launched by this invocation) an unknown
    id is reported as state "pending", since DescribeInstances lags behind
    RunInstances. Otherwise it raises ProvisionError straight away.
    """
    try:
        response = ec2_client.describe_instances(InstanceIds=[instance_id])
    except botocore.exceptions.ClientError as e:
        if e.response['Error']['Code'] == 'InvalidInstanceID.NotFound':
            if missing_ok:
                return 'pending', ''
            raise ProvisionError(f"Instance {instance_id} does not exist") from e
        raise ProvisionError(f"Could not describe instance {instance_id}: {e}") from e
    except botocore.exceptions.BotoCoreError as e:
        raise ProvisionError(f"Could not describe instance {instance_id}: {e}") from e

    for reservation in response.get('Reservations', []):
        for inst in reservation.get('Instances', []):
            return inst.get('State', {}).get('Name', 'pending'), inst.get('PrivateIpAddress', '')
    return 'pending', ''


def await_reachable(instance, timeout, poll_interval=None, port=None):
    """
    Poll until the instance is running and its worker port accepts connections.

    Args:
        instance (WorkerInstance): Instance returned by provision(); its
            ``private_address`` is filled in as soon as EC2 reports one
        timeout (float): Seconds to keep polling
        poll_interval (float): Seconds between checks (default from config)
        port (int): Port to check (default WORKER_PORT)

    Returns:
        str: The reachable private address

    Raises:
        ReachabilityTimeoutError: The deadline passed first
        ProvisionError: The instance is terminating, stopped, or unknown to
            EC2 although this invocation did not just launch it
    """
    poll_interval = POLL_INTERVAL if poll_interval is None else poll_interval
    port = WORKER_PORT if port is None else port

    deadline = time.monotonic() + timeout
    checks = 0
    while True:
        checks += 1
        state, address = _instance_status(instance.instance_id, missing_ok=instance.launched_now)

        if state in TERMINAL_STATES:
            raise ProvisionError(f"Instance {instance.instance_id} entered state '{state}' before becoming reachable")

        if state == 'running' and address:
            instance.private_address = address
            if port_open(address, port, PORT_CHECK_TIMEOUT):
                logger.info(f"Instance {instance.instance_id} reachable at {address}:{port} after {checks} check(s)")
                return address
            logger.info(f"Instance {instance.instance_id} running at {address}, port {port} not accepting connections yet")
        else:
            logger.info(f"Instance {instance.instance_id} state: {state}")

        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise ReachabilityTimeoutError(
                f"Instance {instance.instance_id} was not reachable on port {port} "
                f"within {timeout:.0f}s ({checks} checks)"
            )
        time.sleep(min(poll_interval, remaining))


def remaining_seconds(context):
    """Lambda execution time left, or None outside the Lambda runtime."""
    if context is None or not hasattr(context, 'get_remaining_time_in_millis'):
        return None
    return context.get_remaining_time_in_millis() / 1000.0


def reachability_timeout(context):
    """Cap the configured wait by the Lambda time left, minus the hand-off reserve."""
    timeout = REACHABILITY_TIMEOUT
    remaining = remaining_seconds(context)
    if remaining is not None:
        timeout = max(0.0, min(timeout, remaining - HANDOFF_RESERVE))
    return timeout


# ========================
# 🤝 HAND-OFF TO THE REGISTRAR
# ========================
def hand_off(address, function_name=None):
    """
    Synchronously invoke the registrar with the worker address.

    Args:
        address (str): Reachable private address of the worker
        function_name (str): Registrar function (default REGISTRAR_FUNCTION_NAME)

    Returns:
        RegistrarResult: The registrar's verdict. Unhandled registrar
        exceptions come back as a failed result; their stack trace is only
        logged.

    Raises:
        RegistrationError: If the registrar could not be invoked at all
    """
    function_name = function_name or REGISTRAR_FUNCTION_NAME
    payload = json.dumps({'ip': address})

    logger.info(f"Invoking registrar {function_name} with {payload}")
    try:
        response = lambda_client.invoke(
            FunctionName=function_name,
            InvocationType='RequestResponse',
            Payload=payload,
        )
    except (botocore.exceptions.ClientError, botocore.exceptions.BotoCoreError) as e:
        raise RegistrationError(f"Could not invoke registrar {function_name}: {e}", reason='unreachable') from e

    raw = response['Payload'].read() if response.get('Payload') is not None else b''
    try:
        result = json.loads(raw or b'null')
    except ValueError:
        result = {'body': raw.decode('utf-8', errors='replace')}
    if not isinstance(result, dict):
        result = {}

    function_error = response.get('FunctionError')
    if function_error:
        logger.error(f"Registrar raised an unhandled error: {result}")
        message = f"Registrar raised {result.get('errorType', function_error)}: {result.get('errorMessage', 'no message')}"
        return RegistrarResult(
            status_code=500,
            body={'message': message},
            error_kind=RegistrationError.kind,
            function_error=function_error,
        )

    body = parse_body(result)
    registrar_result = RegistrarResult(
        status_code=result.get('statusCode', 500),
        body=body,
        error_kind=body.get('error_kind'),
    )
    logger.info(f"Registrar responded: {registrar_result.status_code} {body}")
    return registrar_result


def register_instance(instance, timeout, warnings):
    """
    Wait for the instance, hand it off, and record the outcome in its tags.

    Args:
        instance (WorkerInstance): Instance to register
        timeout (float): Reachability timeout in seconds
        warnings (list): Collects non-fatal problems for the response

    Returns:
        RegistrarResult: The successful registrar result

    Raises:
        WorkerControllerError: Any classified failure; the instance is left
            tagged pending-registration (or pending-rebalance) for a retry
    """
    try:
        address = await_reachable(instance, timeout)
        result = hand_off(address)
        if not result.ok:
            raise result.as_error()
    except Exception as e:
        state = STATE_PENDING_REBALANCE if isinstance(e, RebalanceError) else STATE_PENDING
        kind = getattr(e, 'kind', type(e).__name__)
        if not mark_registration_state(instance.instance_id, state, reason=f"{kind}: {e}"):
            warnings.append(f"Could not mark {instance.instance_id} as {state}")
        raise

    if not mark_registration_state(instance.instance_id, STATE_REGISTERED):
        warnings.append(f"Could not mark {instance.instance_id} as {STATE_REGISTERED}")
    return result


# ========================
# 🔁 RECONCILIATION OF PENDING INSTANCES
# ========================
def find_pending_instances():
    """
    List managed instances whose registration or rebalance never completed.

    Returns:
        list: WorkerInstance objects in pending/running state tagged
        RegistrationState=pending-registration or pending-rebalance. A
        re-run for a pending-rebalance worker finds it already a member and
        only starts the rebalance again.
    """
    filters = [
        {'Name': f'tag:{REGISTRATION_STATE_TAG}', 'Values': [STATE_PENDING, STATE_PENDING_REBALANCE]},
        {'Name': 'tag:ManagedBy', 'Values': [MANAGED_TAGS['ManagedBy']]},
        {'Name': 'instance-state-name', 'Values': ['pending', 'running']},
    ]
    instances = []
    try:
        paginator = ec2_client.get_paginator('describe_instances')
        for page in paginator.paginate(Filters=filters):
            for reservation in page.get('Reservations', []):
                for inst in reservation.get('Instances', []):
                    tags = {t['Key']: t['Value'] for t in inst.get('Tags', [])}
                    instances.append(WorkerInstance(inst['InstanceId'], inst.get('PrivateIpAddress', ''), tags))
    except (botocore.exceptions.ClientError, botocore.exceptions.BotoCoreError) as e:
        raise ProvisionError(f"Could not list pending worker instances: {e}") from e

    logger.info(f"Found {len(instances)} instance(s) pending registration: {[i.instance_id for i in instances]}")
    return instances


def reconcile_pending(context, start_time):
    """
    Resume registration for every pending instance and report each outcome.

    Each hand-off needs HANDOFF_RESERVE seconds; once less Lambda time than
    that is left, the remaining instances are reported as skipped and stay
    tagged for the next run.
    """
    outcomes = []
    pending = find_pending_instances()
    for index, instance in enumerate(pending):
        remaining = remaining_seconds(context)
        if remaining is not None and remaining <= HANDOFF_RESERVE:
            skipped = pending[index:]
            logger.warning(
                f"Only {remaining:.1f}s left, skipping {len(skipped)} instance(s): "
                f"{[i.instance_id for i in skipped]}"
            )
            outcomes.extend(
                {
                    'instance_id': i.instance_id,
                    'status': 'skipped',
                    'message': 'Not enough Lambda execution time left for a hand-off',
                }
                for i in skipped
            )
            break

        warnings = []
        try:
            register_instance(instance, reachability_timeout(context), warnings)
            outcomes.append({
                'instance_id': instance.instance_id,
                'status': STATE_REGISTERED,
                'private_address': instance.private_address,
                'warnings': warnings,
            })
        except WorkerControllerError as e:
            logger.error(f"Reconciliation of {instance.instance_id} failed: {e.kind}: {e}")
            outcomes.append({
                'instance_id': instance.instance_id,
                'status': 'failure',
                'error_kind': e.kind,
                'message': str(e),
                'warnings': warnings,
            })

    execution_time = (time.time() - start_time) * 1000
    failed = [o for o in outcomes if o['status'] != STATE_REGISTERED]
    if failed:
        err = RegistrationError(f"{len(failed)} of {len(outcomes)} pending instance(s) were not registered")
        notify("Citus Worker Reconciliation Incomplete", f"{err}\n{json.dumps(failed, indent=2)}")
        return error_response(err, reconciled=outcomes, execution_time_ms=execution_time)

    logger.info(f"=== Reconciliation completed: {len(outcomes)} instance(s) registered ===")
    return success_response(reconciled=outcomes, execution_time_ms=execution_time)


# ========================
# 🧠 MAIN LAMBDA HANDLER FUNCTION
# ========================
def lambda_handler(event, context):
    """
    Main Lambda function handler - provisions and registers one worker.

    Args:
        event (dict): Trigger payload (see the module header for the modes)
        context (object): Lambda runtime context, used to bound the wait

    Returns:
        dict: ``{'statusCode': 200|500, 'body': <json string>}``

    Flow:
        1. Launch one tagged instance (skipped when resuming)
        2. Apply the Name tag (best effort, reported as a warning)
        3. Poll until the worker port answers on the private address
        4. Invoke the registrar and treat its answer as authoritative
        5. Record the registration state on the instance
    """
    logger.info("=== Citus Worker Provisioner Started ===")
    logger.info(f"Event: {event}")

    event = event or {}
    start_time = time.time()
    warnings = []
    instance = None

    try:
        require_settings(REGISTRAR_FUNCTION_NAME=REGISTRAR_FUNCTION_NAME)

        if event.get('reconcile'):
            logger.info("Reconcile mode: resuming every instance pending registration")
            return reconcile_pending(context, start_time)

        if event.get('instance_id'):
            instance = WorkerInstance(instance_id=event['instance_id'])
            logger.info(f"Step 1: Resuming registration of existing instance {instance.instance_id}")
        else:
            require_settings(
                WORKER_IMAGE_ID=IMAGE_ID,
                WORKER_SUBNET_ID=SUBNET_ID,
                WORKER_SECURITY_GROUP_IDS=SECURITY_GROUP_IDS,
            )
            logger.info("Step 1: Launching worker instance")
            instance = provision(
                IMAGE_ID,
                INSTANCE_TYPE,
                NetworkConfig(SUBNET_ID, SECURITY_GROUP_IDS, KEY_NAME),
                client_token=event.get('idempotency_key'),
            )

            logger.info("Step 2: Tagging worker instance")
            if not tag(instance.instance_id, {'Name': WORKER_NAME_TAG}):
                warnings.append(f"Could not apply Name tag to {instance.instance_id}")

        logger.info("Step 3: Waiting for the worker to become reachable, then handing off")
        result = register_instance(instance, reachability_timeout(context), warnings)

    except WorkerControllerError as e:
        execution_time = (time.time() - start_time) * 1000
        instance_id = instance.instance_id if instance else None
        logger.error("=== Citus Worker Provisioner Failed ===")
        logger.error(f"{e.kind}: {e}", exc_info=e.__cause__ is not None)
        notify(
            "Citus Worker Provisioning Failed",
            f"{e.kind}: {e}\nInstance: {instance_id or 'not created'}\nExecution time: {execution_time:.2f}ms",
        )
        return error_response(
            e,
            instance_id=instance_id,
            private_address=instance.private_address if instance else None,
            warnings=warnings,
            execution_time_ms=execution_time,
        )
    except Exception as e:
        logger.error(f"Unexpected error in provisioner: {e}", exc_info=True)
        notify("Citus Worker Provisioner Critical Error", f"Unexpected error: {e}")
        raise

    execution_time = (time.time() - start_time) * 1000
    logger.info("=== Citus Worker Provisioner Completed Successfully ===")
    logger.info(f"Total execution time: {execution_time:.2f}ms")
    notify(
        "Citus Worker Added",
        f"Instance {instance.instance_id} ({instance.private_address}) joined the cluster.",
    )
    return success_response(
        instance_id=instance.instance_id,
        private_address=instance.private_address,
        registrar=result.body,
        warnings=warnings,
        execution_time_ms=execution_time,
    )
