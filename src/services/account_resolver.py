"""
src/services/account_resolver.py — Decide which brokerage account a claim uses.

Resolution order:
    1. The claimant's user record already carries an account id → reuse it.
    2. Otherwise open a new account from the onboarding profile.
    3. Broker says the email is taken → search the broker by email.
    4. Search fails or finds nothing → look for an id in the local user store.
    5. Still nothing → AccountConflictError (claimant should log in instead).

The outcome is one of the ResolvedAccount variants below; later steps branch
on the variant instead of re-checking flags.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Union

from src.integrations.broker_client import AlpacaBrokerClient, BrokerAPIError
from src.services.claim_errors import AccountConflictError, AccountCreationError

logger = logging.getLogger(__name__)

DEFAULT_PHONE = "+12025551234"
AGREEMENTS = ("customer_agreement", "account_agreement", "margin_agreement")
_ALREADY_EXISTS_MARKERS = ("already exists", "email address")


# ─────────────────────────────────────────────
# Onboarding profile
# ─────────────────────────────────────────────

@dataclass
class OnboardingProfile:
    """Identity, address, and agreement data needed to open an account."""

    first_name: str
    last_name: str
    date_of_birth: str  # YYYY-MM-DD
    tax_id: str
    street_address: str
    city: str
    state: str
    postal_code: str
    phone_number: str = DEFAULT_PHONE
    ip_address: str = "127.0.0.1"
    signed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_account_payload(self, email: str) -> dict:
        """Build the Broker API account-creation body."""
        signed_at = self.signed_at.isoformat()
        return {
            "contact": {
                "email_address": email,
                "phone_number": self.phone_number,
                "street_address": [self.street_address],
                "city": self.city,
                "state": self.state,
                "postal_code": self.postal_code,
                "country": "USA",
            },
            "identity": {
                "given_name": self.first_name,
                "family_name": self.last_name,
                "date_of_birth": self.date_of_birth,
                "tax_id": self.tax_id,
                "tax_id_type": "USA_SSN",
                "country_of_citizenship": "USA",
                "country_of_birth": "USA",
                "country_of_tax_residence": "USA",
                "funding_source": ["employment_income"],
            },
            "disclosures": {
                "is_control_person": False,
                "is_affiliated_exchange_or_finra": False,
                "is_politically_exposed": False,
                "immediate_family_exposed": False,
            },
            "agreements": [
                {
                    "agreement": name,
                    "signed_at": signed_at,
                    "ip_address": self.ip_address,
                }
                for name in AGREEMENTS
            ],
            "documents": [],
            "trusted_contact": {
                "given_name": self.first_name,
                "family_name": self.last_name,
                "email_address": email,
            },
        }


# ─────────────────────────────────────────────
# Resolution outcomes
# ─────────────────────────────────────────────

@dataclass(frozen=True)
class NewAccount:
    """Opened during this claim; must be polled until ACTIVE."""

    account_id: str
    initial_status: str | None = None
    was_preexisting = False


@dataclass(frozen=True)
class ReturningClaimant:
    """The claimant's user record already pointed at this account."""

    account_id: str
    was_preexisting = True


@dataclass(frozen=True)
class RecoveredViaBrokerSearch:
    """Creation was refused as a duplicate; the broker search found the account."""

    account_id: str
    was_preexisting = True


@dataclass(frozen=True)
class RecoveredFromLocalRecord:
    """Broker search came up empty; a local user record had the account id."""

    account_id: str
    was_preexisting = True


ResolvedAccount = Union[
    NewAccount, ReturningClaimant, RecoveredViaBrokerSearch, RecoveredFromLocalRecord
]


def _is_duplicate_email(exc: BrokerAPIError) -> bool:
    message = (exc.message or "").lower()
    return exc.status_code == 409 or any(m in message for m in _ALREADY_EXISTS_MARKERS)


# ─────────────────────────────────────────────
# Resolver
# ─────────────────────────────────────────────

class AccountResolver:
    """Find or open the brokerage account for one claimant."""

    def __init__(self, broker: AlpacaBrokerClient, user_store):
        self._broker = broker
        self._users = user_store

    async def resolve(
        self,
        claimant_email: str,
        existing_account_id: str | None,
        profile: OnboardingProfile | None,
    ) -> ResolvedAccount:
        if existing_account_id:
            logger.info("Reusing account %s for returning claimant", existing_account_id)
            return ReturningClaimant(existing_account_id)

        if profile is None:
            raise AccountCreationError(
                "Onboarding details are required to open an account",
                details={"email": claimant_email},
            )

        try:
            created = await self._broker.create_account(profile.to_account_payload(claimant_email))
        except BrokerAPIError as exc:
            if not _is_duplicate_email(exc):
                logger.error("Account creation failed: %s (%s)", exc.message, exc.payload)
                raise AccountCreationError(
                    f"Failed to create Alpaca account: {exc.message}",
                    details={"status": exc.status_code, "response": exc.payload},
                ) from exc
            logger.info("Broker reports %s already registered, searching", claimant_email)
            return await self._recover(claimant_email)

        account_id = created.get("id")
        if not account_id:
            raise AccountCreationError(
                "Failed to create Alpaca account: no account id returned",
                details={"response": created},
            )
        logger.info("Created new account %s (status=%s)", account_id, created.get("status"))
        return NewAccount(account_id, initial_status=created.get("status"))

    async def _recover(self, email: str) -> ResolvedAccount:
        try:
            accounts = await self._broker.search_accounts(email)
        except BrokerAPIError as exc:
            logger.warning("Account search failed for %s: %s", email, exc.message)
        else:
            for account in accounts:
                contact = account.get("contact") or {}
                if contact.get("email_address") == email and account.get("id"):
                    logger.info("Found existing account %s via broker search", account["id"])
                    return RecoveredViaBrokerSearch(account["id"])

        user = await self._users.find_by_email(email)
        if user is not None and user.alpaca_account_id:
            logger.info("Found existing account %s in local records", user.alpaca_account_id)
            return RecoveredFromLocalRecord(user.alpaca_account_id)

        raise AccountConflictError(
            "An account with this email already exists. Please log in to access your portfolio.",
            details={
                "email": email,
                "hint": "If you already claimed a gift, please use the login page to access your account.",
            },
        )
