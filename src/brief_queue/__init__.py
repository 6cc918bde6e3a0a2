"""Durable job queue and worker scheduler for multi-stage briefs."""

__version__ = "0.3.0"
