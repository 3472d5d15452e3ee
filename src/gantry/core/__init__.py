"""Core infrastructure: configuration, logging, events, hashing, secrets."""
