"""
taskq - distributed background task scheduler.

Producers enqueue typed tasks onto weighted queues; a pool of workers leases
them, runs the registered handler under a timeout, and applies one retry,
backoff and dead-letter policy to every failure.
"""

__version__ = "1.0.0"
