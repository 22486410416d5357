"""
API Routers package.
"""

from . import webhooks, runs, escalations, scheduler

__all__ = ["webhooks", "runs", "escalations", "scheduler"]
