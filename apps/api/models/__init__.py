"""Models package."""

from .user import User
from .audit_unit import AuditProject, AuditSession
