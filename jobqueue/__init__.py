"""Priority job queue with retries, dead-lettering and stall recovery."""

__version__ = "0.1.0"
