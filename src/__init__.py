"""
Automation Hub.

Scheduled and webhook-triggered workflows with durable watermarks,
idempotent item processing and escalation to a task tracker.
"""

__version__ = "1.0.0"
