"""Exception hierarchy for the settlement engine."""

from __future__ import annotations


class CandyClashError(Exception):
    """Base class for all settlement engine errors."""


class ConfigValidationError(CandyClashError):
    """A distribution configuration failed validation.

    Carries every violation found, not just the first.
    """

    def __init__(self, errors: list[str] | str) -> None:
        self.errors = [errors] if isinstance(errors, str) else list(errors)
        super().__init__("; ".join(self.errors))


class InvalidRuleError(ConfigValidationError):
    """A distribution rule does not target exactly one of position, range or top_percent."""


class SettlementError(CandyClashError):
    """Settlement of a period could not proceed."""


class PeriodNotFoundError(SettlementError):
    def __init__(self, period_id: str) -> None:
        self.period_id = period_id
        super().__init__(f"Period not found: {period_id}")


class PeriodStateError(SettlementError):
    """The period is not in a state that allows the requested transition."""


class RecipientNotFoundError(SettlementError):
    def __init__(self, user_id: str) -> None:
        self.user_id = user_id
        super().__init__(f"User not found: {user_id}")


class DuplicateTransactionError(SettlementError):
    """A transaction with the same idempotency key was already recorded."""

    def __init__(self, idempotency_key: str) -> None:
        self.idempotency_key = idempotency_key
        super().__init__(f"Transaction already recorded: {idempotency_key}")


class InsufficientBalanceError(CandyClashError):
    def __init__(self, user_id: str, balance: int, required: int) -> None:
        self.user_id = user_id
        self.balance = balance
        self.required = required
        super().__init__(f"User {user_id} has {balance} gold bars, needs {required}")
