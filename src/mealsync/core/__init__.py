"""Ambient infrastructure: errors, logging, settings and timestamps."""
