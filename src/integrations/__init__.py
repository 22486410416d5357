"""
Integrations module - concrete capabilities for external systems.

- todoist: task tracker escalator and publisher
- http_publisher: JSON POST publisher (Discord-aware)
- collectors: RSS/Atom feeds, GitHub notifications and releases
- defaults: bootstrap used when HUB_BOOTSTRAP is not set
"""
