"""
Core Django project package.
Loads Celery app for background cleanup work.
"""

from .celery import app as celery_app

__all__ = ('celery_app',)
