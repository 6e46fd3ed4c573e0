"""HTTP routes for the queue admin surface."""
