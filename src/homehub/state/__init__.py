"""Persistence: remote KV client, local cache and debounced writer."""
