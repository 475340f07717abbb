"""
src/services/claim_errors.py — Typed failures of the gift-claim workflow.

Every step converts its own failure into one of these. Each carries a single
user-facing message plus operator diagnostics (provider responses, attempt
counts) in `details`, and the HTTP status the router should answer with.
"""

from typing import Any


class ClaimError(Exception):
    """Base class for every reported reason a claim can abort."""

    kind: str = "claim_error"
    status_code: int = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = details or {}

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "error": self.message, "details": self.details}

    def __repr__(self) -> str:
        return f"<{type(self).__name__} kind={self.kind} message={self.message!r}>"


# ── Validation (rejected before any external call) ──────────────────────────

class ClaimValidationError(ClaimError):
    kind = "validation"
    status_code = 400


class GiftNotFoundError(ClaimError):
    kind = "gift_not_found"
    status_code = 404


class GiftAlreadyClaimedError(ClaimError):
    kind = "already_claimed"
    status_code = 409


class ClaimInProgressError(ClaimError):
    """Another request holds the claim lock on this gift."""

    kind = "claim_in_progress"
    status_code = 409


# ── Broker authentication ───────────────────────────────────────────────────

class BrokerConfigurationError(ClaimError):
    kind = "configuration"
    status_code = 500


class BrokerAuthError(ClaimError):
    kind = "authentication"
    status_code = 502


# ── Account resolution / activation ─────────────────────────────────────────

class AccountConflictError(ClaimError):
    """The broker knows this email but we cannot find the account: log in instead."""

    kind = "account_conflict"
    status_code = 409


class AccountCreationError(ClaimError):
    kind = "account_creation"
    status_code = 502


class AccountStatusError(ClaimError):
    kind = "account_status"
    status_code = 502


class AccountInactiveError(ClaimError):
    kind = "account_inactive"
    status_code = 400


class ActivationTimeoutError(ClaimError):
    kind = "activation_timeout"
    status_code = 504


# ── Funding / settlement ────────────────────────────────────────────────────

class FundingError(ClaimError):
    kind = "funding"
    status_code = 502


class SettlementTimeoutError(ClaimError):
    kind = "settlement_timeout"
    status_code = 504


# ── Order ───────────────────────────────────────────────────────────────────

class OrderSubmissionError(ClaimError):
    """Funds have already moved when this is raised; operators must reconcile."""

    kind = "order_submission"
    status_code = 502

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, details)
        self.details.setdefault("requires_reconciliation", True)


# ── Persistence ─────────────────────────────────────────────────────────────

class ClaimPersistenceError(ClaimError):
    """The order went through but the gift could not be marked COMPLETED."""

    kind = "persistence"
    status_code = 500

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message, details)
        self.details.setdefault("requires_reconciliation", True)
