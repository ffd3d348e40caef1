# -------------------------------------------------------------------
# Citus Worker Autoscaler - Registrar Lambda Function
# -------------------------------------------------------------------
# Invoked synchronously by provision_worker.py with {"ip": "<address>"}.
# Adds the address as a worker node on the Citus coordinator, confirms
# the node shows up among the active workers, and starts a shard
# rebalance so existing data spreads onto the new node.
#
# Registration is idempotent: an address that is already an active
# worker is reported as success, so the provisioner (or a reconciler)
# can safely retry. A failed rebalance is reported but the node stays
# registered; retrying the invocation starts the rebalance again.
# -------------------------------------------------------------------

# ========================
# 📦 IMPORTS AND LOGGING SETUP
# ========================
import ipaddress
import json
import os
import time
from contextlib import contextmanager
from dataclasses import dataclass

import boto3
import botocore.exceptions
import psycopg2
import psycopg2.errors

from worker_common import (
    ConfigurationError,
    RebalanceError,
    RegistrationError,
    WorkerControllerError,
    env_flag,
    error_response,
    logger,
    notify,
    region,
    require_settings,
    success_response,
)

# ========================
# 🔧 AWS CLIENT SETUP
# ========================
# Secrets Manager client - optional source of the coordinator credentials
secrets_client = boto3.client("secretsmanager", region_name=region)

# ========================
# ⚙️ ENVIRONMENT VARIABLES CONFIGURATION
# ========================
# Coordinator connection; DB_SECRET_ARN, when set, overrides these values
DB_HOST = os.getenv('DB_HOST')
DB_PORT = int(os.getenv('DB_PORT', '5432'))
DB_NAME = os.getenv('DB_NAME', 'postgres')
DB_USER = os.getenv('DB_USER', 'postgres')
DB_PASSWORD = os.getenv('DB_PASSWORD')
DB_SECRET_ARN = os.getenv('DB_SECRET_ARN')

# TLS verification policy (libpq sslmode) and optional CA bundle
DB_SSLMODE = os.getenv('DB_SSLMODE', 'require')
DB_SSLROOTCERT = os.getenv('DB_SSLROOTCERT')
DB_CONNECT_TIMEOUT = int(os.getenv('DB_CONNECT_TIMEOUT', '10'))

# Port the new worker's PostgreSQL listens on
WORKER_PORT = int(os.getenv('WORKER_PORT', '5432'))

# citus_rebalance_start() shard_transfer_mode: auto, force_logical or block_writes
REBALANCE_TRANSFER_MODE = os.getenv('REBALANCE_TRANSFER_MODE', 'auto')

# Block the response until the rebalance job finishes
REBALANCE_WAIT = env_flag('REBALANCE_WAIT')


# ========================
# 🧱 DATA MODEL
# ========================
@dataclass(frozen=True)
class ClusterNode:
    address: str
    port: int
    active: bool = True


@dataclass
class RebalanceHandle:
    """Background rebalance job started on the coordinator."""

    job_id: int = None
    waited: bool = False
    already_running: bool = False


# ========================
# 🔐 COORDINATOR CONNECTION
# ========================
def load_connection_settings():
    """
    Resolve coordinator connection settings.

    Returns:
        dict: psycopg2 keyword arguments (host, port, dbname, user, password)

    Raises:
        ConfigurationError: If the secret cannot be read or host/password are
            still missing after merging environment and secret values
    """
    settings = {
        'host': DB_HOST,
        'port': DB_PORT,
        'dbname': DB_NAME,
        'user': DB_USER,
        'password': DB_PASSWORD,
    }

    if DB_SECRET_ARN:
        logger.info(f"Loading coordinator credentials from secret {DB_SECRET_ARN}")
        try:
            response = secrets_client.get_secret_value(SecretId=DB_SECRET_ARN)
            secret = json.loads(response['SecretString'])
        except (botocore.exceptions.ClientError, botocore.exceptions.BotoCoreError) as e:
            raise ConfigurationError(f"Could not read coordinator secret: {e}") from e
        except (KeyError, ValueError) as e:
            raise ConfigurationError("Coordinator secret is not a JSON SecretString") from e

        # RDS-style secrets name the user "username"
        for setting, key in (('host', 'host'), ('port', 'port'), ('dbname', 'dbname'),
                             ('user', 'username'), ('password', 'password')):
            if secret.get(key):
                settings[setting] = secret[key]

    require_settings(DB_HOST=settings['host'], DB_PASSWORD=settings['password'])
    return settings


@contextmanager
def coordinator_connection(settings):
    """
    Open one autocommit connection to the coordinator for this invocation.

    The connection is closed on every exit path, including errors raised by
    the body of the ``with`` block.

    Raises:
        RegistrationError: The coordinator is unreachable or rejected the login
    """
    params = dict(settings)
    params.update(
        sslmode=DB_SSLMODE,
        connect_timeout=DB_CONNECT_TIMEOUT,
        application_name='citus-worker-autoscaler',
    )
    if DB_SSLROOTCERT:
        params['sslrootcert'] = DB_SSLROOTCERT

    try:
        conn = psycopg2.connect(**params)
    except psycopg2.OperationalError as e:
        raise RegistrationError(
            f"Coordinator {settings['host']} is unreachable or rejected authentication: {str(e).strip()}",
            reason='unreachable',
        ) from e

    # citus_rebalance_start() schedules a background job; it must not sit in an open transaction
    conn.autocommit = True
    try:
        yield conn
    finally:
        conn.close()
        logger.info("Coordinator connection closed")


# ========================
# ➕ NODE REGISTRATION
# ========================
def add_node(conn, address, port):
    """
    Make address:port an active worker node, idempotently.

    Args:
        conn: Open coordinator connection
        address (str): Worker address
        port (int): Worker PostgreSQL port

    Returns:
        tuple: (ClusterNode, already_member). ``already_member`` is True when
        the node was already active, including when a concurrent invocation
        registered it first.

    Raises:
        RegistrationError: The coordinator is unreachable (reason
            ``unreachable``) or refused the node (reason ``rejected``)
    """
    node = ClusterNode(address, port, True)
    try:
        with conn.cursor() as cur:
            cur.execute(
                "SELECT nodeid, isactive FROM pg_dist_node WHERE nodename = %s AND nodeport = %s",
                (address, port),
            )
            row = cur.fetchone()

            if row and row[1]:
                logger.info(f"Node {address}:{port} is already an active worker (nodeid {row[0]})")
                return node, True

            if row:
                logger.info(f"Node {address}:{port} is registered but inactive, activating it")
                cur.execute("SELECT citus_activate_node(%s, %s)", (address, port))
                return node, False

            cur.execute("SELECT citus_add_node(%s, %s)", (address, port))
            node_id = cur.fetchone()[0]
            logger.info(f"Successfully added worker {address}:{port} to the cluster (nodeid {node_id})")
            return node, False

    except psycopg2.errors.UniqueViolation:
        logger.info(f"Node {address}:{port} was registered concurrently, treating as already a member")
        return node, True
    except psycopg2.OperationalError as e:
        raise RegistrationError(
            f"Lost connection to the coordinator while adding {address}:{port}: {str(e).strip()}",
            reason='unreachable',
        ) from e
    except psycopg2.Error as e:
        raise RegistrationError(
            f"Coordinator refused to add {address}:{port}: {(e.pgerror or str(e)).strip()}",
            reason='rejected',
        ) from e


def list_active_nodes(conn):
    """Return the set of active worker nodes known to the coordinator."""
    try:
        with conn.cursor() as cur:
            cur.execute("SELECT node_name, node_port FROM citus_get_active_worker_nodes()")
            rows = cur.fetchall()
    except psycopg2.Error as e:
        raise RegistrationError(f"Could not list active worker nodes: {str(e).strip()}", reason='unreachable') from e

    return {ClusterNode(name, int(port), True) for name, port in rows}


# ========================
# ⚖️ SHARD REBALANCE
# ========================
def trigger_rebalance(conn, wait=False):
    """
    Start a background shard rebalance on the coordinator.

    Args:
        conn: Open coordinator connection
        wait (bool): Block on citus_rebalance_wait() until the job finishes

    Returns:
        RebalanceHandle: ``job_id`` is None when Citus found nothing to move
        or another rebalance job is already running (``already_running``)

    Raises:
        RebalanceError: Citus refused to start (or finish) the rebalance
    """
    try:
        with conn.cursor() as cur:
            cur.execute(
                "SELECT citus_rebalance_start(shard_transfer_mode := %s)",
                (REBALANCE_TRANSFER_MODE,),
            )
            row = cur.fetchone()
            handle = RebalanceHandle(job_id=row[0] if row else None)

            if handle.job_id is None:
                logger.info("Citus reported no shard moves for this rebalance")
            else:
                logger.info(f"Rebalance started as background job {handle.job_id}")

            if wait and handle.job_id is not None:
                logger.info(f"Waiting for rebalance job {handle.job_id} to finish")
                cur.execute("SELECT citus_rebalance_wait()")
                handle.waited = True
            return handle

    except psycopg2.errors.ObjectInUse as e:
        # Concurrent scale-up already has a rebalance job running
        logger.warning(f"Rebalance not started, another job is running: {(e.pgerror or str(e)).strip()}")
        return RebalanceHandle(already_running=True)
    except psycopg2.Error as e:
        raise RebalanceError(f"Rebalance failed: {(e.pgerror or str(e)).strip()}") from e


def parse_worker_address(event):
    """
    Validate the hand-off payload.

    Returns:
        tuple: (address, port)

    Raises:
        RegistrationError: reason ``invalid-request`` for a missing or
            malformed ip/port
    """
    raw_ip = event.get('ip')
    try:
        address = str(ipaddress.ip_address(str(raw_ip).strip()))
    except ValueError as e:
        raise RegistrationError(f"Invalid worker address: {raw_ip!r}", reason='invalid-request') from e

    try:
        port = int(event.get('port', WORKER_PORT))
    except (TypeError, ValueError) as e:
        raise RegistrationError(f"Invalid worker port: {event.get('port')!r}", reason='invalid-request') from e
    if not 0 < port < 65536:
        raise RegistrationError(f"Invalid worker port: {port}", reason='invalid-request')
    return address, port


# ========================
# 🧠 MAIN LAMBDA HANDLER FUNCTION
# ========================
def lambda_handler(event, context):
    """
    Main Lambda function handler - registers one worker and rebalances.

    Args:
        event (dict): ``{"ip": "<address>"}``, optionally ``"port"``
        context (object): Lambda runtime context (unused)

    Returns:
        dict: ``{'statusCode': 200|500, 'body': <json string>}``

    Flow:
        1. Validate the address and resolve coordinator credentials
        2. Add the node (no-op when already an active member)
        3. Confirm the node is listed among the active workers
        4. Start the rebalance, exactly once per invocation
    """
    logger.info("=== Citus Worker Registrar Started ===")
    logger.info(f"Event: {event}")

    event = event or {}
    start_time = time.time()
    address, port = event.get('ip'), None
    node_registered = False
    details = {}

    try:
        address, port = parse_worker_address(event)
        settings = load_connection_settings()

        with coordinator_connection(settings) as conn:
            logger.info(f"Step 1: Adding worker {address}:{port} to the cluster")
            node, already_member = add_node(conn, address, port)
            details['already_member'] = already_member

            logger.info("Step 2: Confirming the node is an active worker")
            active_nodes = list_active_nodes(conn)
            details['active_workers'] = len(active_nodes)
            if node not in active_nodes:
                raise RegistrationError(
                    f"Node {address}:{port} is not among the {len(active_nodes)} active workers after registration",
                    reason='not-visible',
                )
            node_registered = True
            logger.info(f"Node {address}:{port} confirmed; cluster has {len(active_nodes)} active worker(s)")

            logger.info("Step 3: Starting shard rebalance")
            handle = trigger_rebalance(conn, wait=REBALANCE_WAIT)
            details.update(
                rebalance_job_id=handle.job_id,
                rebalance_waited=handle.waited,
                rebalance_already_running=handle.already_running,
            )

    except WorkerControllerError as e:
        execution_time = (time.time() - start_time) * 1000
        logger.error("=== Citus Worker Registrar Failed ===")
        logger.error(f"{e.kind}: {e}", exc_info=e.__cause__ is not None)
        notify(
            "Citus Worker Registration Failed",
            f"{e.kind}: {e}\nWorker: {address}:{port}\nNode registered: {node_registered}",
        )
        extra = {'reason': e.reason} if isinstance(e, RegistrationError) else {}
        return error_response(
            e,
            address=address,
            port=port,
            node_registered=node_registered,
            execution_time_ms=execution_time,
            **extra,
            **details,
        )
    except Exception as e:
        logger.error(f"Unexpected error in registrar: {e}", exc_info=True)
        notify("Citus Worker Registrar Critical Error", f"Unexpected error for {address}: {e}")
        raise

    execution_time = (time.time() - start_time) * 1000
    logger.info("=== Citus Worker Registrar Completed Successfully ===")
    logger.info(f"Total execution time: {execution_time:.2f}ms")
    notify(
        "Citus Worker Registered",
        f"Worker {address}:{port} is active; the cluster now has {details['active_workers']} worker(s).",
    )
    return success_response(
        address=address,
        port=port,
        node_registered=True,
        execution_time_ms=execution_time,
        **details,
    )
