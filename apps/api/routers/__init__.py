"""Routers package."""

from . import (
    health,
    audit_units,
    queue_admin,
)
