"""Ledger error types.

Every class derives from ValueError so callers that only know about
ValueError (the HTTP layer, older services) keep working.
"""

from typing import Optional


class LedgerError(ValueError):
    """Base class for ledger errors."""


class MissingFieldError(LedgerError):
    """Required input is absent."""


class InvalidFormatError(LedgerError):
    """Input could not be parsed (decimal, cron expression, date, file)."""


class BusinessRuleViolation(LedgerError):
    """Transaction shape or account combination rejected by validation."""


class NotFoundError(LedgerError):
    """Referenced account, currency, transaction or rule does not exist."""


class ConflictError(LedgerError):
    """Uniqueness conflict, e.g. an account number claimed by two accounts."""


class InvariantViolation(LedgerError):
    """Ledger invariant broken; indicates a bug rather than bad input."""


class RuleScriptError(LedgerError):
    """A rule script failed to run."""

    def __init__(self, message: str, rule_id: Optional[int] = None) -> None:
        super().__init__(message)
        self.rule_id = rule_id


def account_not_found(account_id: int) -> str:
    return f"account with id {account_id} not found"


def currency_not_found(currency_id: str) -> str:
    return f"currency {currency_id} not found"


def transaction_not_found(transaction_id: int) -> str:
    return f"transaction with id {transaction_id} not found"
