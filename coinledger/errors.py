from typing import Optional


class LedgerError(Exception):
    pass


class InvalidRequestError(LedgerError):
    pass


class AuthFailureError(LedgerError):
    pass


class AccountNotFoundError(LedgerError):
    def __init__(self, account_id: str):
        super().__init__(f"Account {account_id} not found")
        self.account_id = account_id


class InsufficientFundsError(LedgerError):
    pass


class ContentionError(LedgerError):
    """Optimistic retries ran out. Safe for the caller to retry."""


class IdempotencyConflictError(LedgerError):
    pass


class UpstreamFailureError(LedgerError):
    pass


class VersionConflictError(LedgerError):
    def __init__(self, account_id: str, expected_version: int, actual_version: Optional[int] = None):
        super().__init__(
            f"Account {account_id} moved past version {expected_version}"
            if actual_version is None
            else f"Account {account_id} is at version {actual_version}, expected {expected_version}"
        )
        self.account_id = account_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class DuplicateRequestError(LedgerError):
    def __init__(self, key: str):
        super().__init__(f"Request {key} already processed")
        self.key = key
