"""Core infrastructure: configuration, exceptions and decorators."""
