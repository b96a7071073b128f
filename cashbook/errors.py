from __future__ import annotations

from datetime import date


class CashbookError(Exception):
    """Base class for errors raised by the cashbook core."""


class InvalidAmount(CashbookError, ValueError):
    """Raised when a transaction, budget or rule amount is not positive."""


class InvalidRate(CashbookError, ValueError):
    """Raised when an FX rate is zero or negative."""


class NotFound(CashbookError):
    """Raised when a record does not exist within the owner's scope."""


class DuplicateBudget(CashbookError):
    def __init__(self, owner_id: int, category_id: int, month: date) -> None:
        self.owner_id = owner_id
        self.category_id = category_id
        self.month = month
        super().__init__(
            f"A budget already exists for category {category_id} in {month:%Y-%m}."
        )


class NotDue(CashbookError):
    """Recurring rule applied before its next run date.

    Recoverable: callers may simply skip the rule.
    """

    def __init__(self, rule_id: int | None, next_run_date: date, reference_date: date) -> None:
        self.rule_id = rule_id
        self.next_run_date = next_run_date
        self.reference_date = reference_date
        super().__init__(
            f"Rule {rule_id} is not due until {next_run_date.isoformat()} "
            f"(reference {reference_date.isoformat()})."
        )


class ApplyConflict(CashbookError):
    """Another writer advanced the rule first; nothing was posted."""

    def __init__(self, rule_id: int, next_run_date: date) -> None:
        self.rule_id = rule_id
        self.next_run_date = next_run_date
        super().__init__(
            f"Rule {rule_id} was advanced concurrently; next run is {next_run_date.isoformat()}."
        )


class PartialApply(CashbookError):
    """The posted transaction and the rule advance could not be stored together."""

    def __init__(self, rule_id: int, transaction, reason: str) -> None:
        self.rule_id = rule_id
        self.transaction = transaction
        self.reason = reason
        super().__init__(f"Recurring rule {rule_id} was not applied cleanly: {reason}")


class NoConversionPath(CashbookError):
    """No FX path exists between two currencies.

    Never raised by the converter; it is attached to approximate conversion
    results so callers can report it as a warning.
    """

    def __init__(self, source_currency: str, target_currency: str) -> None:
        self.source_currency = source_currency
        self.target_currency = target_currency
        super().__init__(
            f"No FX rate path from {source_currency} to {target_currency}; amount left unconverted."
        )
