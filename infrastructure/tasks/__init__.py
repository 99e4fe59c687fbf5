"""Celery task infrastructure package.

Importing this module wires the configured Celery app; task modules live in
``infrastructure.tasks.tasks`` and register themselves on import.
"""
from .config.celery import celery_app

__all__ = ["celery_app"]
