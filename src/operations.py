"""
Waiting on Compute Engine zone operations.
"""

import logging
from typing import Dict

import polling
from clients import ComputeRestClient
from errors import OperationError

logger = logging.getLogger(__name__)


def wait_for_zone_operation(
    compute: ComputeRestClient,
    zone: str,
    op: Dict,
    timeout: float = polling.OPERATION_TIMEOUT,
    interval: float = polling.OPERATION_POLL_INTERVAL,
) -> Dict:
    """
    Wait for a zone operation to reach DONE.

    Args:
        compute: Compute client
        zone: Zone of the operation
        op: Operation resource returned by the mutating call

    Returns:
        The finished operation

    Raises:
        OperationError: If the operation finished with errors
        WaitTimeoutError: If it is not DONE before the timeout
    """
    op_name = op["name"]
    logger.info(f"Waiting for {op_name} to complete")

    def poll():
        current = compute.get_zone_operation(zone, op_name)
        if current.get("status") != "DONE":
            return None
        errors = current.get("error", {}).get("errors", [])
        if errors:
            for err in errors:
                logger.error(
                    f"Operation error. Code: {err.get('code')}, "
                    f"Location: {err.get('location')}, Message: {err.get('message')}"
                )
            raise OperationError(op_name, errors)
        return current

    return polling.wait_for(
        poll, timeout=timeout, interval=interval, description=f"operation {op_name}"
    )
