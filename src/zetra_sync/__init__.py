"""Offline sync and conflict-resolution service."""
