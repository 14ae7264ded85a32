from datetime import datetime, timezone
from decimal import ROUND_FLOOR, Decimal
from typing import Callable, Optional
from uuid import uuid4

import structlog

from .config import Settings
from .errors import (
    ContentionError,
    DuplicateRequestError,
    IdempotencyConflictError,
    InsufficientFundsError,
    InvalidRequestError,
    VersionConflictError,
)
from .idempotency import AlreadyProcessed, IdempotencyGuard
from .models import (
    Account,
    BalanceWrite,
    DepositRequest,
    DepositResult,
    EntryType,
    IdempotencyRecord,
    LedgerEntry,
    LedgerHistoryResponse,
    PurchaseRequest,
    PurchaseResult,
    ViewEvent,
    ViewResult,
)
from .store import AccountStore

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def split_price(price: int, payout_rate: Decimal) -> tuple[int, int]:
    """Return (creator_amount, platform_amount); the creator share is floored."""
    creator_amount = int((Decimal(price) * payout_rate).to_integral_value(rounding=ROUND_FLOOR))
    return creator_amount, price - creator_amount


class LedgerService:
    """Sole writer of balances and ledger entries."""

    def __init__(
        self,
        store: AccountStore,
        payout_rate: Decimal = Decimal("0.75"),
        view_reward_coins: int = 1,
        view_cooldown_seconds: int = 86400,
        max_commit_attempts: int = 5,
        guard: Optional[IdempotencyGuard] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.payout_rate = Decimal(payout_rate)
        self.view_reward_coins = view_reward_coins
        self.view_cooldown_seconds = view_cooldown_seconds
        self.max_commit_attempts = max_commit_attempts
        self.guard = guard or IdempotencyGuard(store)
        self.clock = clock

    @classmethod
    def from_settings(cls, store: AccountStore, settings: Settings) -> "LedgerService":
        return cls(
            store,
            payout_rate=settings.payout_rate,
            view_reward_coins=settings.view_reward_coins,
            view_cooldown_seconds=settings.view_cooldown_seconds,
            max_commit_attempts=settings.max_commit_attempts,
            guard=IdempotencyGuard(store, wait_timeout=settings.idempotency_wait_seconds),
        )

    def purchase(self, request: PurchaseRequest) -> tuple[PurchaseResult, bool]:
        """Buy a chapter. Returns the result and whether it was a replay."""
        self._validate_purchase(request)
        key = request.idempotency_key()
        fingerprint = request.fingerprint()

        outcome = self.guard.reserve(key)
        if isinstance(outcome, AlreadyProcessed):
            return self._replay_purchase(request, outcome.record), True

        with outcome:
            for attempt in range(1, self.max_commit_attempts + 1):
                buyer = self.store.get(request.buyer_id)
                if buyer.balance < request.price:
                    raise InsufficientFundsError(
                        f"Balance {buyer.balance} is below price {request.price}"
                    )
                creator = self.store.find(request.creator_id)
                creator_amount, platform_amount = split_price(request.price, self.payout_rate)

                entry = LedgerEntry(
                    id=uuid4(),
                    entry_type=EntryType.PURCHASE,
                    from_account=buyer.id,
                    to_account=request.creator_id,
                    amount=request.price,
                    credited_amount=creator_amount,
                    platform_amount=platform_amount,
                    request_id=key,
                    reference=request.chapter_id,
                    committed_at=self.clock(),
                    metadata={"payout_rate": str(self.payout_rate)},
                )
                result = PurchaseResult(
                    success=True,
                    request_id=key,
                    new_buyer_balance=buyer.balance - request.price,
                    ledger_entry_id=entry.id,
                    creator_amount=creator_amount,
                    platform_amount=platform_amount,
                )
                writes = [
                    BalanceWrite(
                        account_id=buyer.id,
                        expected_version=buyer.version,
                        new_balance=buyer.balance - request.price,
                    ),
                    self._credit_write(request.creator_id, creator, creator_amount),
                ]
                try:
                    self.store.commit(writes, entry, self._record(key, fingerprint, result.model_dump(mode="json")))
                except VersionConflictError as e:
                    logger.info("commit_version_conflict", key=key, attempt=attempt, account_id=e.account_id)
                    continue
                except DuplicateRequestError:
                    return self._replay_purchase(request, self.store.get_record(key)), True

                logger.info(
                    "purchase_committed",
                    key=key,
                    buyer_id=buyer.id,
                    creator_id=request.creator_id,
                    chapter_id=request.chapter_id,
                    price=request.price,
                    creator_amount=creator_amount,
                    attempts=attempt,
                )
                return result, False

        logger.warning("purchase_contention", key=key, attempts=self.max_commit_attempts)
        raise ContentionError(f"Purchase {key} kept conflicting, retry later")

    def record_view(self, event: ViewEvent) -> ViewResult:
        for name in ("user_id", "item_type", "item_id"):
            if not getattr(event, name).strip():
                raise InvalidRequestError(f"{name} is required")

        if self.view_reward_coins <= 0:
            return ViewResult(coins_awarded=0)

        key = event.idempotency_key(self.view_cooldown_seconds)
        outcome = self.guard.reserve(key)
        if isinstance(outcome, AlreadyProcessed):
            return ViewResult(coins_awarded=0)

        with outcome:
            entry = self._issue(
                event.user_id,
                self.view_reward_coins,
                EntryType.VIEW_REWARD,
                key,
                reference=f"{event.item_type}:{event.item_id}",
            )
        if entry is None:
            return ViewResult(coins_awarded=0)

        logger.info("view_rewarded", user_id=event.user_id, item_id=event.item_id, coins=self.view_reward_coins)
        return ViewResult(coins_awarded=self.view_reward_coins)

    def deposit(self, account_id: str, request: DepositRequest) -> DepositResult:
        if not account_id.strip():
            raise InvalidRequestError("account_id is required")
        key = f"deposit:{request.request_id or uuid4()}"
        fingerprint = request.fingerprint(account_id)

        outcome = self.guard.reserve(key)
        if isinstance(outcome, AlreadyProcessed):
            return self._replay_deposit(request, fingerprint, outcome.record)

        with outcome:
            entry = self._issue(
                account_id,
                request.amount,
                EntryType.DEPOSIT,
                key,
                reference=request.description,
                result=lambda account, e: DepositResult(account=account, ledger_entry_id=e.id),
                fingerprint=fingerprint,
            )
        record = self.store.get_record(key)
        if entry is None:
            return self._replay_deposit(request, fingerprint, record)
        logger.info("deposit_committed", account_id=account_id, amount=request.amount)
        return DepositResult(**record.result)

    def get_account(self, account_id: str) -> Account:
        return self.store.get(account_id)

    def get_ledger_history(self, account_id: str, limit: int = 50, offset: int = 0) -> LedgerHistoryResponse:
        account = self.store.get(account_id)
        return LedgerHistoryResponse(
            account_id=account_id,
            entries=self.store.list_entries(account_id, limit, offset),
            total_count=self.store.count_entries(account_id),
            current_balance=account.balance,
        )

    def _issue(
        self,
        account_id: str,
        amount: int,
        entry_type: EntryType,
        key: str,
        reference: Optional[str] = None,
        result: Optional[Callable[[Account, LedgerEntry], object]] = None,
        fingerprint: str = "",
    ) -> Optional[LedgerEntry]:
        """Credit platform-issued coins. Returns None if the key was already committed."""
        for attempt in range(1, self.max_commit_attempts + 1):
            current = self.store.find(account_id)
            write = self._credit_write(account_id, current, amount)
            entry = LedgerEntry(
                id=uuid4(),
                entry_type=entry_type,
                to_account=account_id,
                amount=amount,
                credited_amount=amount,
                request_id=key,
                reference=reference,
                committed_at=self.clock(),
            )
            payload = {}
            if result is not None:
                opened = Account(id=account_id, balance=write.new_balance, version=write.expected_version + 1)
                payload = result(opened, entry).model_dump(mode="json")
            try:
                self.store.commit([write], entry, self._record(key, fingerprint, payload))
            except VersionConflictError as e:
                logger.info("commit_version_conflict", key=key, attempt=attempt, account_id=e.account_id)
                continue
            except DuplicateRequestError:
                return None
            return entry

        raise ContentionError(f"Credit {key} kept conflicting, retry later")

    def _credit_write(self, account_id: str, current: Optional[Account], amount: int) -> BalanceWrite:
        if current is None:
            return BalanceWrite(account_id=account_id, expected_version=0, new_balance=amount)
        return BalanceWrite(account_id=account_id, expected_version=current.version, new_balance=current.balance + amount)

    def _record(self, key: str, fingerprint: str, result: dict) -> IdempotencyRecord:
        return IdempotencyRecord(key=key, fingerprint=fingerprint, result=result, created_at=self.clock())

    def _replay_purchase(self, request: PurchaseRequest, record: IdempotencyRecord) -> PurchaseResult:
        if request.request_id and record.fingerprint != request.fingerprint():
            raise IdempotencyConflictError(
                f"request_id {request.request_id} was already used for a different purchase"
            )
        logger.info("purchase_replayed", key=record.key)
        return PurchaseResult(**record.result)

    def _replay_deposit(self, request: DepositRequest, fingerprint: str, record: IdempotencyRecord) -> DepositResult:
        if record.fingerprint != fingerprint:
            raise IdempotencyConflictError(
                f"request_id {request.request_id} was already used for a different deposit"
            )
        logger.info("deposit_replayed", key=record.key)
        return DepositResult(**record.result)

    def _validate_purchase(self, request: PurchaseRequest) -> None:
        for name in ("buyer_id", "chapter_id", "creator_id"):
            if not getattr(request, name).strip():
                raise InvalidRequestError(f"{name} is required")
        if request.price <= 0:
            raise InvalidRequestError("price must be positive")
        if request.buyer_id == request.creator_id:
            raise InvalidRequestError("buyer and creator must be different accounts")
