"""
Request dependencies backed by the application state set up in the lifespan.
"""

from fastapi import Request

from src.broker.connection import Link
from src.broker.publisher import Publisher
from src.broker.topology import QueueHandle


def get_link(request: Request) -> Link:
    """
    Dependency for the broker link.

    Raises:
        RuntimeError: If the application has not connected to the broker.
    """
    link = getattr(request.app.state, "link", None)
    if link is None:
        raise RuntimeError("Broker not connected. Start the app through its lifespan.")
    return link


def get_queue(request: Request) -> QueueHandle:
    """Dependency for the declared task queue."""
    return request.app.state.queue


def get_publisher(request: Request) -> Publisher:
    """Dependency for the task publisher."""
    return request.app.state.publisher
