"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class MessageStatus(StrEnum):
    """
    Broker-side message states.

    State transitions:
    - READY -> UNACKED (delivered to a consumer)
    - UNACKED -> (deleted) (ack, or reject without requeue)
    - UNACKED -> READY (reject with requeue, consumer released, lease expired)
    - UNACKED -> READY on the dead-letter queue (dead-lettered)
    """

    READY = "ready"
    UNACKED = "unacked"


class FailurePolicy(StrEnum):
    """What the delivery loop does with a task whose handler failed."""

    DISCARD = "discard"
    RETRY = "retry"
    DEAD_LETTER = "dead_letter"


class Disposition(StrEnum):
    """Terminal outcome chosen for one delivery."""

    ACK = "ack"
    REQUEUE = "requeue"
    DISCARD = "discard"
    DEAD_LETTER = "dead_letter"


# Default values
DEFAULT_QUEUE_NAME = "post_tasks"
DEAD_LETTER_SUFFIX = ".dlq"
MAX_QUEUE_NAME_LENGTH = 255
CONTENT_TYPE_JSON = "application/json"

# Metrics names
METRIC_QUEUE_DEPTH = "task_queue_depth"
METRIC_TASKS_PUBLISHED = "tasks_published_total"
METRIC_PUBLISH_FAILURES = "publish_failures_total"
METRIC_DELIVERIES_FINALIZED = "deliveries_finalized_total"
METRIC_DELIVERIES_IN_FLIGHT = "deliveries_in_flight"
METRIC_HANDLER_DURATION = "handler_duration_seconds"
METRIC_LEASE_EXPIRED = "leases_expired_total"
METRIC_DELIVERIES_ACQUIRED = "deliveries_acquired_total"

# Trace span names
SPAN_PUBLISH_TASK = "publish_task"
SPAN_HANDLE_DELIVERY = "handle_delivery"
