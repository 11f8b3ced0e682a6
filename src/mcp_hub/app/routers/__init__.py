"""API routers."""

from . import configs, connections, debug, events, logs, oauth, processes, servers

__all__ = ["configs", "connections", "debug", "events", "logs", "oauth", "processes", "servers"]
