"""API routers."""

from entry_engine.api import admin, entries, membership, waitlist, webhooks

__all__ = ["admin", "entries", "membership", "waitlist", "webhooks"]
