"""Core infrastructure: configuration, logging, database, scheduling."""
