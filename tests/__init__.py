"""Tests for the runtime adapter.

Unit tests cover each pipeline component in isolation; API and integration
tests drive the full service against the in-process mock backend.
"""
