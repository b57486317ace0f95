"""
Worker module.
Contains the consumer delivery loop and task handlers.
"""

from src.worker.handlers import execute_task, get_handler, register_handler
from src.worker.main import Consumer, run

__all__ = ["Consumer", "run", "execute_task", "get_handler", "register_handler"]
