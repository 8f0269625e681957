"""Celery worker: app configuration and import tasks."""
