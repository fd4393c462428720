"""Core infrastructure: logging, errors, circuit breaking, lifecycle."""
