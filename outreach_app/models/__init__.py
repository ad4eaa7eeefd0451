# outreach_app/models/__init__.py
"""
Database models package
"""

from .base import BaseModel, db
from .reconciliation import (
    IdentityLease,
    ReconciliationRun,
    ReconciliationRunStatus,
    ReviewFlag,
    ReviewFlagReason,
    ReviewFlagStatus,
)

__all__ = [
    "db",
    "BaseModel",
    "IdentityLease",
    "ReconciliationRun",
    "ReconciliationRunStatus",
    "ReviewFlag",
    "ReviewFlagReason",
    "ReviewFlagStatus",
]
