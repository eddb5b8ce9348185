"""Persistence helpers for the autopilot store."""
