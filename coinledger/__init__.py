"""
Coin Ledger for chapter purchases and view rewards

This package provides:
- Versioned account balances with compare-and-set updates
- Atomic buyer-to-creator transfers with a configurable payout rate
- Idempotent purchases and cooldown-limited view rewards
- Immutable, append-only ledger entries
- HMAC-signed URLs for the file proxy
"""

__version__ = "0.1.0"

from .errors import (
    AccountNotFoundError,
    AuthFailureError,
    ContentionError,
    IdempotencyConflictError,
    InsufficientFundsError,
    InvalidRequestError,
    LedgerError,
    UpstreamFailureError,
)
from .models import (
    Account,
    EntryType,
    LedgerEntry,
    PurchaseRequest,
    PurchaseResult,
    ViewEvent,
    ViewResult,
)
from .service import LedgerService
from .signing import UrlSigner
from .store import AccountStore, InMemoryAccountStore

__all__ = [
    "Account",
    "AccountNotFoundError",
    "AccountStore",
    "AuthFailureError",
    "ContentionError",
    "EntryType",
    "IdempotencyConflictError",
    "InMemoryAccountStore",
    "InsufficientFundsError",
    "InvalidRequestError",
    "LedgerEntry",
    "LedgerError",
    "LedgerService",
    "PurchaseRequest",
    "PurchaseResult",
    "UpstreamFailureError",
    "UrlSigner",
    "ViewEvent",
    "ViewResult",
]
