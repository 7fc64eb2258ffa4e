"""
Redemption workflow: claim -> deliver -> log -> referral credit.

One `redeem()` call handles one purchase. The only step that is ever undone
is the claim, and only when delivery fails: codes that never reached the
customer go back to the unused pool. Once delivered, codes stay claimed even
if writing the ledger entry fails.
"""

from __future__ import annotations
import asyncio
import enum
import logging
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional

from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from .errors import (
    DeliveryFailure, InsufficientInventory, InvalidRequest,
    PersistenceFailure,
)
from .helpers import is_valid_email, normalize_code, normalize_email
from .infra.timings import timeit
from .model.ledger import Ledger
from .model.referral import ReferralAccount, ReferralLedger
from .notifier import Notifier

logger = logging.getLogger(__name__)

STORAGE_ERRORS = (SQLAlchemyError, RedisError, PersistenceFailure)

DEFAULT_MAX_QUANTITY = 20
DEFAULT_REWARD_EVERY = 5
DEFAULT_NOTIFY_TIMEOUT = 30.0


class Outcome(str, enum.Enum):
    COMPLETE = "Complete"
    REJECTED_INSUFFICIENT_INVENTORY = "RejectedInsufficientInventory"
    INVALID_REQUEST = "InvalidRequest"
    IN_PROGRESS = "InProgress"
    FAILED_DELIVERY = "FailedDelivery"
    FAILED_PERSISTENCE = "FailedPersistence"


@dataclass
class RedemptionRequest:
    email: str
    quantity: int
    reference: str
    referral_code: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "RedemptionRequest":
        """
        Lenient parse of the JSON body; validation happens in redeem().

        Older clients post only `amount`, the price paid for a single code,
        so such a payload asks for one code.
        """
        if "quantity" in payload:
            qty = payload["quantity"]
            if isinstance(qty, str) and qty.strip().isdigit():
                qty = int(qty.strip())
        elif payload.get("amount") not in (None, ""):
            qty = 1
        else:
            qty = None

        email = payload.get("email")
        referral_code = (
            payload.get("referralCode") or payload.get("referral_code")
        )
        return cls(
            email=email if isinstance(email, str) else "",
            quantity=qty,
            reference=str(payload.get("reference") or ""),
            referral_code=(
                referral_code if isinstance(referral_code, str) else None
            ),
        )


@dataclass
class RedemptionResult:
    outcome: Outcome
    referral_code: Optional[str] = None
    delivered: int = 0
    detail: Optional[str] = None
    idempotent: bool = False

    @property
    def delivered_ok(self) -> bool:
        # FailedPersistence still means the customer has their codes
        return self.outcome in (Outcome.COMPLETE, Outcome.FAILED_PERSISTENCE)

    def as_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["outcome"] = self.outcome.value
        return d


class RedemptionWorkflow:
    def __init__(
        self,
        *,
        inventory,
        ledger: Ledger,
        referrals: ReferralLedger,
        notifier: Notifier,
        notify_timeout: float = DEFAULT_NOTIFY_TIMEOUT,
        max_quantity: int = DEFAULT_MAX_QUANTITY,
        reward_every: int = DEFAULT_REWARD_EVERY,
    ) -> None:
        self.inventory = inventory
        self.ledger = ledger
        self.referrals = referrals
        self.notifier = notifier
        self.notify_timeout = notify_timeout
        self.max_quantity = max_quantity
        self.reward_every = reward_every

    # ----------------------------
    # Validation
    # ----------------------------
    def validate(self, req: RedemptionRequest) -> None:
        if not is_valid_email(req.email):
            raise InvalidRequest("email is required and must be valid")
        qty = req.quantity
        if not isinstance(qty, int) or isinstance(qty, bool) or qty <= 0:
            raise InvalidRequest("quantity must be a positive integer")
        if qty > self.max_quantity:
            raise InvalidRequest(
                f"quantity must not exceed {self.max_quantity}"
            )
        if not isinstance(req.reference, str) or not req.reference.strip():
            raise InvalidRequest("reference is required")

    # ----------------------------
    # Entry point
    # ----------------------------
    async def redeem(self, req: RedemptionRequest) -> RedemptionResult:
        try:
            self.validate(req)
        except InvalidRequest as e:
            logger.info("redemption rejected: %s", e)
            return RedemptionResult(Outcome.INVALID_REQUEST, detail=str(e))

        email = normalize_email(req.email)
        reference = req.reference.strip()
        qty = req.quantity

        try:
            async with timeit("ledger.acquire_reference"):
                fresh = await self.ledger.acquire_reference(reference)
        except STORAGE_ERRORS as e:
            logger.error("reference gate failed for %s: %s", reference, e)
            return RedemptionResult(Outcome.FAILED_PERSISTENCE, detail=str(e))
        if not fresh:
            return await self._replay(email, reference)

        try:
            async with timeit("referral.find_or_create"):
                account = await self.referrals.find_or_create(email)
        except STORAGE_ERRORS as e:
            logger.error("referral account for %s failed: %s", email, e)
            await self._release_reference(reference)
            return RedemptionResult(Outcome.FAILED_PERSISTENCE, detail=str(e))

        try:
            async with timeit("inventory.claim"):
                codes = await self.inventory.claim(qty, email)
        except InsufficientInventory as e:
            logger.warning("redemption %s for %s: %s", reference, email, e)
            await self._release_reference(reference)
            return RedemptionResult(
                Outcome.REJECTED_INSUFFICIENT_INVENTORY,
                referral_code=account.referral_code,
                detail=str(e),
            )
        except STORAGE_ERRORS as e:
            logger.error("claim failed for %s: %s", reference, e)
            await self._release_reference(reference)
            return RedemptionResult(Outcome.FAILED_PERSISTENCE, detail=str(e))

        try:
            async with timeit("notifier.deliver"):
                await self._deliver(email, codes)
        except DeliveryFailure as e:
            logger.error("delivery to %s failed, releasing %d code(s): %s",
                         email, len(codes), e)
            await self._compensate(codes)
            await self._release_reference(reference)
            return RedemptionResult(
                Outcome.FAILED_DELIVERY,
                referral_code=account.referral_code,
                detail=str(e),
            )

        try:
            async with timeit("ledger.append"):
                await self.ledger.append(email, qty, reference, codes)
        except STORAGE_ERRORS as e:
            # codes are already in the customer's inbox: no rollback
            logger.error("ledger append failed for %s (%s, %d code(s)): %s",
                         reference, email, len(codes), e)
            return RedemptionResult(
                Outcome.FAILED_PERSISTENCE,
                referral_code=account.referral_code,
                delivered=len(codes),
                detail=f"codes delivered but not logged: {e}",
            )

        if req.referral_code:
            async with timeit("referral.credit"):
                await self._credit_referral(req.referral_code, account)

        logger.info("redemption %s complete: %d code(s) to %s",
                    reference, len(codes), email)
        return RedemptionResult(
            Outcome.COMPLETE,
            referral_code=account.referral_code,
            delivered=len(codes),
        )

    # ----------------------------
    # Steps
    # ----------------------------
    async def _deliver(self, email: str, codes: List[str]) -> None:
        try:
            ok = await asyncio.wait_for(
                self.notifier.deliver(email, codes),
                timeout=self.notify_timeout,
            )
        except asyncio.TimeoutError:
            raise DeliveryFailure(
                f"notifier timed out after {self.notify_timeout}s"
            )
        except Exception as e:
            raise DeliveryFailure(f"notifier error: {e}") from e
        if not ok:
            raise DeliveryFailure("notifier did not accept the message")

    async def _deliver_reward(self, email: str, code: str) -> None:
        try:
            ok = await asyncio.wait_for(
                self.notifier.deliver_reward(email, code),
                timeout=self.notify_timeout,
            )
        except asyncio.TimeoutError:
            raise DeliveryFailure(
                f"notifier timed out after {self.notify_timeout}s"
            )
        except Exception as e:
            raise DeliveryFailure(f"notifier error: {e}") from e
        if not ok:
            raise DeliveryFailure("notifier did not accept the message")

    async def _compensate(self, codes: List[str]) -> None:
        try:
            async with timeit("inventory.release"):
                released = await self.inventory.release(codes)
        except STORAGE_ERRORS as e:
            logger.critical("could not release codes %s: %s", codes, e)
            return
        if released != len(codes):
            logger.critical("released %d of %d codes: %s",
                            released, len(codes), codes)

    async def _release_reference(self, reference: str) -> None:
        try:
            await self.ledger.release_reference(reference)
        except STORAGE_ERRORS as e:
            logger.error("could not release reference %s: %s", reference, e)

    async def _replay(self, email: str, reference: str) -> RedemptionResult:
        try:
            entry = await self.ledger.find_by_reference(reference)
            account = await self.referrals.find(email)
        except STORAGE_ERRORS as e:
            return RedemptionResult(Outcome.FAILED_PERSISTENCE, detail=str(e))
        referral_code = account.referral_code if account else None
        if entry is None:
            # first request still running, or its ledger write failed
            logger.info("reference %s is being redeemed right now", reference)
            return RedemptionResult(
                Outcome.IN_PROGRESS,
                referral_code=referral_code,
                detail="redemption in progress",
                idempotent=True,
            )
        logger.info("reference %s already redeemed, not claiming again",
                    reference)
        return RedemptionResult(
            Outcome.COMPLETE,
            referral_code=referral_code,
            delivered=entry["quantity"],
            idempotent=True,
        )

    async def _credit_referral(
        self, referral_code: str, account: ReferralAccount
    ) -> None:
        """Never raises: a referral problem must not fail the purchase."""
        try:
            code = normalize_code(referral_code)
            if not code:
                return
            if code == account.referral_code:
                logger.info("ignoring self-referral by %s", account.email)
                return
            credit = await self.referrals.record_referral(code, account.email)
            if credit is None:
                return
            if credit.referred_count % self.reward_every != 0:
                return

            referrer = credit.referrer_email
            try:
                bonus = await self.inventory.claim(1, referrer)
            except InsufficientInventory:
                logger.warning("no code left for reward of %s (%d referrals)",
                               referrer, credit.referred_count)
                return

            try:
                await self._deliver_reward(referrer, bonus[0])
            except DeliveryFailure as e:
                logger.warning("reward delivery to %s failed: %s",
                               referrer, e)
                await self._compensate(bonus)
                return

            rewards = await self.referrals.increment_rewards(referrer)
            logger.info("reward #%d sent to %s", rewards, referrer)
        except STORAGE_ERRORS as e:
            logger.error("referral credit for code %r failed: %s",
                         referral_code, e)
        except Exception:
            # the customer already has their codes
            logger.exception("referral credit for code %r failed",
                             referral_code)
