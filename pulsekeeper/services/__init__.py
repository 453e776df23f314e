"""
Services package.

Storage is re-exported here; chain adapters live in
`pulsekeeper.services.chain` and are imported from there.
"""

from pulsekeeper.services.storage import (
    AuditStorageInterface,
    CapExceededError,
    GrantStorageInterface,
    NotFoundError,
    RedemptionStorageInterface,
    StorageConnectionError,
    StorageError,
)

__all__ = [
    "AuditStorageInterface",
    "CapExceededError",
    "GrantStorageInterface",
    "NotFoundError",
    "RedemptionStorageInterface",
    "StorageConnectionError",
    "StorageError",
]
