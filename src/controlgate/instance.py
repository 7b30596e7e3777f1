"""Runner identity detection and validation.

The runner id is stamped on dispatch and notification claims and owns the
leader lease, so two live processes must never share one.
"""

import logging
import os
import socket
from uuid import uuid4

logger = logging.getLogger(__name__)

DEFAULT_INSTANCE_ID = "controlgate-1"


def detect_instance_id() -> str:
    """
    Auto-detect a unique runner identifier from the environment.

    Checks in priority order:
    1. Fly.io: FLY_ALLOC_ID
    2. Kubernetes: HOSTNAME (pod name)
    3. Cloud Run: K_REVISION plus a random suffix
    4. Fallback: hostname, pid and a random suffix
    """
    fly_alloc_id = os.environ.get("FLY_ALLOC_ID")
    if fly_alloc_id:
        logger.info(f"Detected Fly.io instance: {fly_alloc_id}")
        return fly_alloc_id

    k8s_hostname = os.environ.get("HOSTNAME")
    if k8s_hostname and "-" in k8s_hostname:
        logger.info(f"Detected Kubernetes instance: {k8s_hostname}")
        return k8s_hostname

    cloud_run_revision = os.environ.get("K_REVISION")
    if cloud_run_revision:
        instance_id = f"{cloud_run_revision}-{uuid4().hex[:8]}"
        logger.info(f"Detected Cloud Run instance: {instance_id}")
        return instance_id

    instance_id = f"{socket.gethostname()}-{os.getpid()}-{uuid4().hex[:6]}"
    logger.warning(f"No deployment environment detected, using fallback: {instance_id}")
    return instance_id


def validate_instance_uniqueness(instance_id: str, env: str) -> None:
    """
    Reject generic runner ids outside development.

    Raises:
        RuntimeError: If instance_id could collide with another process
    """
    if env in ("staging", "production"):
        for pattern in (DEFAULT_INSTANCE_ID, "localhost", "127.0.0.1"):
            if instance_id == pattern or instance_id.startswith(pattern):
                raise RuntimeError(
                    f"INSTANCE ID CONFLICT RISK: instance_id='{instance_id}' is not safe for "
                    f"{env}. Two runners with the same id would share claims and the "
                    f"leader lease. Set CONTROLGATE_INSTANCE_ID to a unique value per process."
                )
        if len(instance_id) < 8:
            logger.warning(
                f"Instance ID '{instance_id}' is very short for {env} environment. "
                f"Consider using a more unique identifier."
            )

    logger.info(f"Instance ID validated: {instance_id} (env: {env})")


def resolve_instance_id(configured: str, env: str) -> str:
    """Configured id, or a detected one when left at the default; validated either way."""
    instance_id = detect_instance_id() if configured == DEFAULT_INSTANCE_ID else configured
    validate_instance_uniqueness(instance_id, env)
    return instance_id
