"""
Reliable Task Dispatch

Durable task queue with at-least-once delivery: persistent publishing,
prefetch-bounded consumers, acknowledgment-driven finalization, lease-based
crash recovery, and observability.
"""

__version__ = "1.0.0"
