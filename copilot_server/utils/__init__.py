"""Shared helpers (logging, PCM audio)."""
