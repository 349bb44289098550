"""Integration tests for the runtime adapter."""
