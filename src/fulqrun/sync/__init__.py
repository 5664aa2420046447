"""Offline sync module -- outbox, cache and connectivity for the mobile client."""
