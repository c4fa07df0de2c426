"""Calendar aggregation, throttling and synchronization."""
