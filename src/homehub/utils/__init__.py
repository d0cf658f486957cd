"""Shared utilities: errors, retry/backoff and device health."""
