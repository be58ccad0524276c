"""
Policy Machine Security Package

Policy element handles, associations, privilege derivation, the policy
machine engine and audit logging.
"""

from .associations import Association
from .audit import AuditAction, AuditEntry, AuditLog, AuditLogger, AuditSeverity
from .elements import (
    Object,
    ObjectAttribute,
    Operation,
    OperationSet,
    PolicyClass,
    PolicyElement,
    Prohibition,
    User,
    UserAttribute,
)
from .machine import PolicyMachine
from .privileges import Privilege

__all__ = [
    "PolicyMachine",
    "PolicyElement",
    "User",
    "UserAttribute",
    "Object",
    "ObjectAttribute",
    "Operation",
    "OperationSet",
    "PolicyClass",
    "Prohibition",
    "Association",
    "Privilege",
    "AuditLogger",
    "AuditLog",
    "AuditEntry",
    "AuditAction",
    "AuditSeverity",
]
