"""
Delivery disposition policy.

Maps a handler outcome onto exactly one terminal action for its delivery.
"""

from src.constants import Disposition, FailurePolicy
from src.types.task import TaskResult


def decide_disposition(
    result: TaskResult | None,
    delivery_count: int,
    policy: FailurePolicy,
    max_deliveries: int,
) -> Disposition:
    """
    Choose how to finalize a delivery.

    Args:
        result: Handler result, or None when the body could not be decoded.
        delivery_count: How many times the message has been delivered,
            including this delivery.
        policy: Failure policy of the consumer.
        max_deliveries: Deliveries allowed before a failing task is given up.

    Returns:
        The disposition to apply.
    """
    if result is None:
        # Malformed bodies never succeed on redelivery
        if policy == FailurePolicy.DEAD_LETTER:
            return Disposition.DEAD_LETTER
        return Disposition.DISCARD

    if result.success:
        return Disposition.ACK

    can_retry = delivery_count < max_deliveries

    if result.requeue and can_retry:
        return Disposition.REQUEUE

    if policy == FailurePolicy.RETRY:
        return Disposition.REQUEUE if can_retry else Disposition.DISCARD

    if policy == FailurePolicy.DEAD_LETTER:
        return Disposition.REQUEUE if can_retry else Disposition.DEAD_LETTER

    return Disposition.DISCARD
