"""Core protocol, configuration and error types."""
