"""
Storage Services Package

Provides abstract interfaces and concrete implementations for data storage.
Google Sheets is the production backend; the in-memory backend serves
tests and local runs.
"""

from pulsekeeper.services.storage.interface import (
    AuditStorageInterface,
    CapExceededError,
    GrantStorageInterface,
    NotFoundError,
    RedemptionStorageInterface,
    StorageConnectionError,
    StorageError,
    ensure_within_cap,
)
from pulsekeeper.services.storage.memory import (
    InMemoryAuditStorage,
    InMemoryGrantStorage,
    InMemoryRedemptionStorage,
)
from pulsekeeper.services.storage.google_sheets import (
    GoogleSheetsAuditStorage,
    GoogleSheetsClient,
    GoogleSheetsGrantStorage,
    GoogleSheetsRedemptionStorage,
)

__all__ = [
    # Interfaces
    "AuditStorageInterface",
    "GrantStorageInterface",
    "RedemptionStorageInterface",
    "ensure_within_cap",
    # Exceptions
    "CapExceededError",
    "NotFoundError",
    "StorageConnectionError",
    "StorageError",
    # In-memory implementation
    "InMemoryAuditStorage",
    "InMemoryGrantStorage",
    "InMemoryRedemptionStorage",
    # Google Sheets implementation
    "GoogleSheetsAuditStorage",
    "GoogleSheetsClient",
    "GoogleSheetsGrantStorage",
    "GoogleSheetsRedemptionStorage",
]
