# -------------------------------------------------------------------
# Citus Worker Autoscaler - Shared Helpers
# -------------------------------------------------------------------
# Configuration, logging, error kinds, response building and SNS
# notifications shared by the two Lambda functions:
#
#   provision_worker.py  -> launches an EC2 worker and hands off its IP
#   add_worker.py        -> registers the IP with the Citus coordinator
#
# Both functions are packaged together with this module.
# -------------------------------------------------------------------

# ========================
# 📦 IMPORTS AND LOGGING SETUP
# ========================
import json
import logging
import os

import boto3

logger = logging.getLogger()


def configure_logging():
    """Set the root logger level from LOG_LEVEL (CloudWatch picks up the rest)."""
    level = os.getenv('LOG_LEVEL', 'INFO').upper()
    logger.setLevel(getattr(logging, level, logging.INFO))


configure_logging()

# ========================
# ⚙️ ENVIRONMENT VARIABLES CONFIGURATION
# ========================
region = os.getenv('REGION', 'us-east-2')

# OPTIONAL: SNS topic ARN for notifications (can be empty to disable notifications)
SNS_TOPIC_ARN = os.getenv('SNS_TOPIC_ARN')

# Converts string environment variable to boolean
ENABLE_SNS = os.getenv('ENABLE_SNS', 'false').lower() == 'true'

sns = boto3.client("sns", region_name=region)


def env_flag(name, default='false'):
    return os.getenv(name, default).lower() in ('1', 'true', 'yes')


def env_list(name, default=''):
    """Split a comma-separated environment variable, dropping empty items."""
    return [item.strip() for item in os.getenv(name, default).split(',') if item.strip()]


# ========================
# 🚨 ERROR KINDS
# ========================
class WorkerControllerError(Exception):
    """Base class for failures the controller knows how to classify."""

    kind = 'WorkerControllerError'


class ConfigurationError(WorkerControllerError):
    kind = 'ConfigurationError'


class ProvisionError(WorkerControllerError):
    """The compute provider rejected or lost the worker instance."""

    kind = 'ProvisionError'


class ReachabilityTimeoutError(WorkerControllerError, TimeoutError):
    """The instance did not become reachable before the deadline."""

    kind = 'TimeoutError'


class RegistrationError(WorkerControllerError):
    """
    Adding the worker to the coordinator failed for a real reason.

    "Already a member" is never reported through this error; ``reason`` tells
    an unreachable coordinator (``unreachable``) apart from a rejected request
    (``rejected``) or a bad hand-off payload (``invalid-request``).
    """

    kind = 'RegistrationError'

    def __init__(self, message, reason='rejected'):
        super().__init__(message)
        self.reason = reason


class RebalanceError(WorkerControllerError):
    kind = 'RebalanceError'


def require_settings(**settings):
    """
    Raise ConfigurationError naming every setting that has no value.

    Args:
        **settings: Mapping of environment variable name to its loaded value

    Raises:
        ConfigurationError: If at least one value is empty or None
    """
    missing = sorted(name for name, value in settings.items() if not value)
    if missing:
        raise ConfigurationError(f"Missing required configuration: {', '.join(missing)}")


# ========================
# 📤 RESPONSE BUILDERS
# ========================
def success_response(**details):
    """Build a 200 response; the body is a JSON string like the hand-off payload."""
    body = {'status': 'success'}
    body.update(details)
    return {'statusCode': 200, 'body': json.dumps(body, default=str)}


def error_response(err, **details):
    """
    Build a 500 response for a classified controller error.

    Args:
        err (WorkerControllerError): The failure to report
        **details: Extra context for the caller (instance id, timings, ...)

    Returns:
        dict: ``{'statusCode': 500, 'body': <json string>}`` carrying
              ``error_kind`` and a human-readable ``message``. Stack traces
              stay in the logs.
    """
    body = {
        'status': 'failure',
        'error_kind': err.kind,
        'message': str(err),
    }
    body.update(details)
    return {'statusCode': 500, 'body': json.dumps(body, default=str)}


def parse_body(response):
    """Decode the JSON body of a response built by this module."""
    body = response.get('body')
    if isinstance(body, str):
        try:
            return json.loads(body)
        except ValueError:
            return {'message': body}
    return body or {}


# ========================
# 📧 SNS NOTIFICATION HELPER FUNCTION
# ========================
def notify(subject, message):
    """
    Send SNS notification if enabled and configured.

    Args:
        subject (str): Email subject line
        message (str): Email message body

    Note:
        - Only sends if ENABLE_SNS is True and SNS_TOPIC_ARN is configured
        - Failures are logged but don't crash the function
    """
    if not ENABLE_SNS or not SNS_TOPIC_ARN:
        logger.debug("SNS notifications disabled or topic ARN not configured")
        return

    try:
        response = sns.publish(
            TopicArn=SNS_TOPIC_ARN,
            Subject=subject[:100],  # SNS subject limit
            Message=message
        )
        logger.info(f"SNS notification sent successfully. MessageId: {response.get('MessageId', 'Unknown')}")
    except Exception as e:
        # Notifications are not critical
        logger.error(f"Failed to send SNS notification: {e}")
