import hashlib
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import NAMESPACE_URL, UUID, uuid5

from pydantic import AliasChoices, BaseModel, ConfigDict, Field


class EntryType(str, Enum):
    PURCHASE = "PURCHASE"
    VIEW_REWARD = "VIEW_REWARD"
    DEPOSIT = "DEPOSIT"


def derive_key(kind: str, *parts: str) -> str:
    """Stable idempotency key for a tuple of ids, immune to separator collisions."""
    return f"{kind}:{uuid5(NAMESPACE_URL, chr(31).join(parts))}"


class Account(BaseModel):
    id: str
    balance: int = Field(..., ge=0, description="Balance in minor units, never negative")
    version: int = Field(..., ge=1)

    model_config = ConfigDict(frozen=True)


class BalanceWrite(BaseModel):
    account_id: str
    expected_version: int = Field(..., ge=0, description="0 opens a new account")
    new_balance: int

    model_config = ConfigDict(frozen=True)


class PurchaseRequest(BaseModel):
    buyer_id: str = Field(..., min_length=1)
    chapter_id: str = Field(..., min_length=1)
    price: int = Field(..., strict=True, validation_alias=AliasChoices("price", "price_cents"))
    creator_id: str = Field(..., min_length=1)
    request_id: Optional[str] = Field(default=None, description="Caller supplied idempotency key")

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "buyer_id": "reader-42",
            "chapter_id": "one-piece-1101",
            "price": 40,
            "creator_id": "studio-7",
        }
    })

    def idempotency_key(self) -> str:
        if self.request_id:
            return f"purchase:{self.request_id}"
        return derive_key("purchase", self.buyer_id, self.chapter_id)

    def fingerprint(self) -> str:
        raw = chr(31).join([self.buyer_id, self.chapter_id, str(self.price), self.creator_id])
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class ViewRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    item_type: str = Field(..., min_length=1)
    item_id: str = Field(..., min_length=1)


class ViewEvent(BaseModel):
    user_id: str
    item_type: str
    item_id: str
    timestamp: datetime

    def cooldown_bucket(self, window_seconds: int) -> int:
        return int(self.timestamp.timestamp()) // window_seconds

    def idempotency_key(self, window_seconds: int) -> str:
        return derive_key("view", self.user_id, self.item_id, str(self.cooldown_bucket(window_seconds)))


class DepositRequest(BaseModel):
    amount: int = Field(..., gt=0, strict=True)
    request_id: Optional[str] = None
    description: Optional[str] = None

    def fingerprint(self, account_id: str) -> str:
        raw = chr(31).join([account_id, str(self.amount)])
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class LedgerEntry(BaseModel):
    id: UUID
    entry_type: EntryType
    from_account: Optional[str] = None
    to_account: str
    amount: int
    credited_amount: int
    platform_amount: int = 0
    request_id: str
    reference: Optional[str] = None
    committed_at: datetime
    metadata: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True, from_attributes=True)

    def touches(self, account_id: str) -> bool:
        return account_id in (self.from_account, self.to_account)


class IdempotencyRecord(BaseModel):
    key: str
    fingerprint: str = ""
    result: dict[str, Any]
    created_at: datetime

    model_config = ConfigDict(frozen=True)


class PurchaseResult(BaseModel):
    success: bool
    request_id: str
    new_buyer_balance: int
    ledger_entry_id: UUID
    creator_amount: int
    platform_amount: int


class ViewResult(BaseModel):
    view_recorded: bool = True
    coins_awarded: int = 0


class DepositResult(BaseModel):
    account: Account
    ledger_entry_id: UUID


class LedgerHistoryResponse(BaseModel):
    account_id: str
    entries: list[LedgerEntry]
    total_count: int
    current_balance: int


class HealthResponse(BaseModel):
    ok: bool
    service: str


class SignedUrlResponse(BaseModel):
    url: str
    sig: str
    path: str
