"""
Identity Service Services Package.

This package contains the consolidation logic and data access services.

Example:
    from api.services import get_identity_resolver

    summary = get_identity_resolver().identify(email="a@x.com", phone_number="123")

Key service modules:
- contact_store: Contact model and SQLite store
- identity_resolver: consolidation of observations into clusters
- identity_lock: per-identity serialization of consolidation
- resilience: store error types and retry logic
"""

from api.services.contact_store import (
    Contact,
    ContactInsertData,
    ContactStore,
    LinkPrecedence,
    get_contact_store,
)

from api.services.identity_resolver import (
    ContactSummary,
    IdentityResolver,
    IdentityValidationError,
    get_identity_resolver,
)

from api.services.identity_lock import (
    IdentityLockManager,
    IdentityLockTimeout,
)

from api.services.resilience import (
    StoreError,
    StoreTimeoutError,
)


__all__ = [
    # Store
    "Contact",
    "ContactInsertData",
    "ContactStore",
    "LinkPrecedence",
    "get_contact_store",
    # Consolidation
    "ContactSummary",
    "IdentityResolver",
    "IdentityValidationError",
    "get_identity_resolver",
    # Locking
    "IdentityLockManager",
    "IdentityLockTimeout",
    # Errors
    "StoreError",
    "StoreTimeoutError",
]
