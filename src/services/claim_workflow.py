"""
src/services/claim_workflow.py — Turn a pending gift into a funded stock purchase.

State machine:

    RECEIVED → VALIDATED → AUTHENTICATED → ACCOUNT_RESOLVED → ACCOUNT_ACTIVE
             → FUNDED → SETTLED → ORDER_PLACED → PERSISTED

Any failure moves to ABORTED with a typed ClaimError. Before the first broker
call the gift's claim lock is taken, so a concurrent claim of the same gift is
rejected instead of racing. The lock is renewed before the journal and before
the order; a claim whose lock was taken over stops there. Gift and user rows
are only written at PERSISTED.

Committed broker steps that can be undone register a compensation; on abort
they run in reverse order (currently: the cash journal is sent back to the
firm account). Once the order is placed there is nothing left to undo.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from config import settings
from security import (
    generate_secure_token,
    hash_password,
    issue_session_token,
    verify_password,
)
from src.integrations.broker_client import AlpacaBrokerClient
from src.services import account_activation, broker_auth, funding
from src.services.account_resolver import (
    AccountResolver,
    NewAccount,
    OnboardingProfile,
    ResolvedAccount,
)
from src.services.claim_errors import (
    ClaimError,
    ClaimInProgressError,
    ClaimPersistenceError,
    ClaimValidationError,
    GiftAlreadyClaimedError,
    GiftNotFoundError,
)
from src.services.order_placement import OrderReceipt, place_market_buy
from src.services.polling import (
    PollBudget,
    Sleep,
    activation_budget,
    real_sleep,
    settlement_budget,
)

logger = logging.getLogger(__name__)

PENDING = "PENDING"

_ONBOARDING_FIELDS = (
    "first_name",
    "last_name",
    "date_of_birth",
    "tax_id",
    "street_address",
    "city",
    "state",
    "zip_code",
    "password",
)


class ClaimState(str, Enum):
    RECEIVED = "RECEIVED"
    VALIDATED = "VALIDATED"
    AUTHENTICATED = "AUTHENTICATED"
    ACCOUNT_RESOLVED = "ACCOUNT_RESOLVED"
    ACCOUNT_ACTIVE = "ACCOUNT_ACTIVE"
    FUNDED = "FUNDED"
    SETTLED = "SETTLED"
    ORDER_PLACED = "ORDER_PLACED"
    PERSISTED = "PERSISTED"
    ABORTED = "ABORTED"


@dataclass
class ClaimRequest:
    """What the claimant submitted on the claim form."""

    gift_id: str
    email: str | None = None
    password: str | None = None
    first_name: str | None = None
    last_name: str | None = None
    date_of_birth: str | None = None
    tax_id: str | None = None
    street_address: str | None = None
    city: str | None = None
    state: str | None = None
    zip_code: str | None = None
    ip_address: str = "127.0.0.1"

    def missing_onboarding_fields(self) -> list[str]:
        return [name for name in _ONBOARDING_FIELDS if not getattr(self, name)]

    def to_profile(self) -> OnboardingProfile:
        return OnboardingProfile(
            first_name=self.first_name or "",
            last_name=self.last_name or "",
            date_of_birth=self.date_of_birth or "",
            tax_id=self.tax_id or "",
            street_address=self.street_address or "",
            city=self.city or "",
            state=self.state or "",
            postal_code=self.zip_code or "",
            ip_address=self.ip_address,
        )


@dataclass
class ClaimOutcome:
    gift_id: str
    account_id: str
    user_id: str
    email: str
    is_existing_user: bool
    resolution: ResolvedAccount
    order: OrderReceipt
    session_token: str | None = None
    states: list[ClaimState] = field(default_factory=list)


@dataclass
class _Compensation:
    step: str
    undo: Callable[[], Awaitable[Any]]


def _default_broker_factory(access_token: str, base_url: str) -> AlpacaBrokerClient:
    return AlpacaBrokerClient(access_token, base_url=base_url)


class ClaimWorkflow:
    """Runs one claim end to end. Create one instance per request."""

    def __init__(
        self,
        gift_store,
        user_store,
        *,
        credentials: broker_auth.BrokerCredentials | None = None,
        broker_factory: Callable[[str, str], AlpacaBrokerClient] = _default_broker_factory,
        authenticate: Callable[..., Awaitable[str]] = broker_auth.authenticate,
        activation: PollBudget | None = None,
        settlement: PollBudget | None = None,
        sleep: Sleep = real_sleep,
        compensate_on_abort: bool | None = None,
    ):
        self._gifts = gift_store
        self._users = user_store
        self._credentials = credentials or broker_auth.BrokerCredentials.from_settings()
        self._broker_factory = broker_factory
        self._authenticate = authenticate
        self._activation = activation or activation_budget()
        self._settlement = settlement or settlement_budget()
        self._sleep = sleep
        self._compensate_on_abort = (
            settings.claim_compensate_on_abort
            if compensate_on_abort is None
            else compensate_on_abort
        )

        self.states: list[ClaimState] = [ClaimState.RECEIVED]
        self._compensations: list[_Compensation] = []
        self._lock_token: str | None = None

    @property
    def state(self) -> ClaimState:
        return self.states[-1]

    def _advance(self, state: ClaimState, gift_id: str) -> None:
        self.states.append(state)
        logger.info("Claim %s → %s", gift_id, state.value)

    # ─────────────────────────────────────────
    # Entry point
    # ─────────────────────────────────────────

    async def run(self, request: ClaimRequest) -> ClaimOutcome:
        """Execute the claim. Raises a ClaimError subclass on any failure."""
        broker: AlpacaBrokerClient | None = None
        try:
            gift, existing_user, email, password_ok = await self._validate(request)
            self._advance(ClaimState.VALIDATED, request.gift_id)

            self._credentials.require()
            await self._lock(gift.id)

            access_token = await self._authenticate(
                self._credentials.api_key,
                self._credentials.api_secret,
                self._credentials.base_url,
            )
            self._advance(ClaimState.AUTHENTICATED, gift.id)
            broker = self._broker_factory(access_token, self._credentials.base_url)

            existing_account_id = existing_user.alpaca_account_id if existing_user else None
            profile = None if existing_account_id else request.to_profile()
            resolution = await AccountResolver(broker, self._users).resolve(
                email, existing_account_id, profile
            )
            account_id = resolution.account_id
            self._advance(ClaimState.ACCOUNT_RESOLVED, gift.id)

            if isinstance(resolution, NewAccount):
                await account_activation.await_active(
                    broker,
                    account_id,
                    self._activation,
                    initial_status=resolution.initial_status,
                    sleep=self._sleep,
                )
            else:
                await account_activation.check_active(broker, account_id)
            self._advance(ClaimState.ACCOUNT_ACTIVE, gift.id)

            await self._renew_lock(gift.id, "journal")
            receipt = await funding.fund(
                broker, self._credentials.firm_account_id, account_id, gift.amount
            )
            self._compensations.append(
                _Compensation("journal", lambda: funding.reverse(broker, receipt))
            )
            self._advance(ClaimState.FUNDED, gift.id)

            await funding.await_settlement(
                broker, account_id, gift.amount, self._settlement, sleep=self._sleep
            )
            self._advance(ClaimState.SETTLED, gift.id)

            await self._renew_lock(gift.id, "order")
            order = await place_market_buy(broker, account_id, gift.stock_symbol, gift.amount)
            # The purchase consumed the journaled cash; nothing can be unwound now.
            self._compensations.clear()
            self._advance(ClaimState.ORDER_PLACED, gift.id)

            outcome = await self._persist(
                request, gift, existing_user, email, password_ok, resolution, order
            )
            self._advance(ClaimState.PERSISTED, gift.id)
            outcome.states = list(self.states)
            return outcome

        except ClaimError as exc:
            await self._abort(request.gift_id, exc)
            raise
        except Exception as exc:
            logger.exception("Unexpected error while claiming gift %s", request.gift_id)
            error = ClaimError("Failed to claim gift", details={"reason": str(exc)})
            await self._abort(request.gift_id, error)
            raise error from exc
        finally:
            if broker is not None:
                await broker.aclose()

    # ─────────────────────────────────────────
    # Steps
    # ─────────────────────────────────────────

    async def _validate(self, request: ClaimRequest):
        if not request.gift_id:
            raise ClaimValidationError("Missing required fields", details={"missing": ["gift_id"]})

        gift = await self._gifts.get(request.gift_id)
        if gift is None:
            raise GiftNotFoundError("Gift not found", details={"gift_id": request.gift_id})
        if gift.status != PENDING:
            raise GiftAlreadyClaimedError(
                "Gift has already been claimed",
                details={"gift_id": gift.id, "status": gift.status},
            )

        email = request.email or gift.receiver_email
        if not email:
            raise ClaimValidationError("Email is required. Please provide your email address.")

        existing_user = await self._users.find_by_email(email)
        fully_onboarded = existing_user is not None and bool(existing_user.alpaca_account_id)

        if not fully_onboarded:
            missing = request.missing_onboarding_fields()
            if missing:
                raise ClaimValidationError("Missing required fields", details={"missing": missing})

        if request.password and len(request.password) < settings.min_password_length:
            raise ClaimValidationError(
                f"Password must be at least {settings.min_password_length} characters"
            )

        password_ok = False
        if request.password:
            if existing_user is not None and existing_user.password_hash:
                if not verify_password(request.password, existing_user.password_hash):
                    raise ClaimValidationError(
                        "Incorrect password for this account",
                        details={"email": email},
                    )
            password_ok = True

        return gift, existing_user, email, password_ok

    async def _lock(self, gift_id: str) -> None:
        token = generate_secure_token(16)
        acquired = await self._gifts.acquire_claim(gift_id, token, settings.claim_lock_ttl_seconds)
        if not acquired:
            current = await self._gifts.get(gift_id)
            if current is not None and current.status != PENDING:
                raise GiftAlreadyClaimedError(
                    "Gift has already been claimed", details={"gift_id": gift_id}
                )
            raise ClaimInProgressError(
                "This gift is already being claimed. Please wait a moment and check again.",
                details={"gift_id": gift_id},
            )
        self._lock_token = token

    async def _renew_lock(self, gift_id: str, next_step: str) -> None:
        """Refresh the lock before a step that moves money; abort if it was taken over."""
        if await self._gifts.renew_claim(gift_id, self._lock_token):
            return
        logger.error("Claim lock on gift %s lost before %s", gift_id, next_step)
        self._lock_token = None
        raise ClaimInProgressError(
            "This gift is already being claimed. Please wait a moment and check again.",
            details={"gift_id": gift_id, "lock_lost_before": next_step},
        )

    async def _persist(
        self,
        request: ClaimRequest,
        gift,
        existing_user,
        email: str,
        password_ok: bool,
        resolution: ResolvedAccount,
        order: OrderReceipt,
    ) -> ClaimOutcome:
        account_id = resolution.account_id
        is_existing_user = existing_user is not None and bool(existing_user.alpaca_account_id)

        user = existing_user or await self._users.find_by_email(email)
        if user is None:
            user = await self._users.create(email, hash_password(request.password), account_id)
        else:
            user = await self._users.update_account_id(user, account_id)

        completed = await self._gifts.mark_completed(
            gift.id, account_id, user.id, token=self._lock_token
        )
        failure = None
        if completed is not None:
            try:
                await self._gifts.commit()
            except Exception as exc:
                failure = exc
        if completed is None or failure is not None:
            logger.critical(
                "Order %s placed for gift %s but the gift could not be marked COMPLETED: %s",
                order.order_id, gift.id, failure,
            )
            raise ClaimPersistenceError(
                "Your purchase was placed but we could not finish recording it. Support has been notified.",
                details={"gift_id": gift.id, "account_id": account_id, "order_id": order.order_id},
            ) from failure
        self._lock_token = None

        session_token = None
        if not is_existing_user or password_ok:
            session_token = issue_session_token(user.id, email)

        logger.info(
            "Gift %s claimed: account=%s user=%s resolution=%s order=%s",
            gift.id, account_id, user.id, type(resolution).__name__, order.order_id,
        )
        return ClaimOutcome(
            gift_id=gift.id,
            account_id=account_id,
            user_id=user.id,
            email=email,
            is_existing_user=is_existing_user,
            resolution=resolution,
            order=order,
            session_token=session_token,
        )

    # ─────────────────────────────────────────
    # Abort path
    # ─────────────────────────────────────────

    async def _abort(self, gift_id: str, error: ClaimError) -> None:
        failed_at = self.state
        self.states.append(ClaimState.ABORTED)
        error.details.setdefault("failed_after", failed_at.value)
        error.details["states"] = [s.value for s in self.states]
        logger.error(
            "Claim %s aborted after %s: %s (%s)",
            gift_id, failed_at.value, error.message, error.kind,
        )

        if self._compensations:
            error.details["compensation"] = await self._run_compensations()

        try:
            await self._gifts.rollback()
            if self._lock_token is not None:
                await self._gifts.release_claim(gift_id, self._lock_token)
                self._lock_token = None
        except Exception as exc:
            logger.error("Failed to release claim lock on gift %s: %s", gift_id, exc)

    async def _run_compensations(self) -> list[dict]:
        results = []
        pending, self._compensations = self._compensations, []
        for comp in reversed(pending):
            if not self._compensate_on_abort:
                logger.warning("Compensation disabled; %s left in place", comp.step)
                results.append({"step": comp.step, "status": "skipped"})
                continue
            try:
                await comp.undo()
                results.append({"step": comp.step, "status": "reversed"})
            except Exception as exc:
                logger.error("Compensation for %s failed: %s", comp.step, exc)
                results.append({"step": comp.step, "status": "failed", "error": str(exc)})
        return results
