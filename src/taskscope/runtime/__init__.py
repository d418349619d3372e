"""Runtime layer: the concurrency engine and its observability."""
