"""Ledger operations — the only code path that mutates balance fields.

Every operation runs as one transaction that locks and re-reads the rows it
touches, so concurrent mutations of the same account serialize instead of
losing updates. Operations that change kyc state, session count or payout
address call the referral hook after their commit.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Literal, TypeVar

import structlog
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from phx.config import EconomyRules
from phx.database import run_in_transaction
from phx.db.models import KYC_STATES, Account, ReferralEdge, WithdrawalRequest
from phx.errors import (
    AlreadyExists,
    AlreadyPending,
    AlreadyProcessed,
    BelowMinimum,
    FailedPrecondition,
    InsufficientFunds,
    InvalidArgument,
    NotEligible,
    NotFound,
    RateLimited,
)
from phx.ledger.address import validate_payout_address
from phx.ledger.pools import credit_pool, ensure_utc, lock_account
from phx.ledger.referrals import ReferralPropagator, ReferralSignals

logger = structlog.get_logger()

T = TypeVar("T")

SettlementOutcome = Literal["approve", "reject"]

INSUFFICIENT_AT_SETTLEMENT = "insufficient funds at settlement"


@dataclass(frozen=True)
class SettlementResult:
    request_id: str
    status: str
    message: str


class LedgerService:
    """Atomic mutation recipes over accounts and withdrawal requests."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        rules: EconomyRules,
        referrals: ReferralPropagator | None = None,
        *,
        default_referrer_id: str | None = None,
        attempts: int = 3,
    ) -> None:
        self._session_factory = session_factory
        self._rules = rules
        self._referrals = referrals
        self._default_referrer_id = default_referrer_id
        self._attempts = attempts

    @property
    def rules(self) -> EconomyRules:
        return self._rules

    async def _transact(self, work: Callable[[AsyncSession], Awaitable[T]]) -> T:
        return await run_in_transaction(self._session_factory, work, attempts=self._attempts)

    async def _notify_referrals(
        self,
        account: Account,
        before: ReferralSignals,
        after: ReferralSignals,
    ) -> None:
        if self._referrals is None:
            return
        try:
            await self._referrals.on_account_changed(account.id, account.referred_by_account_id, before, after)
        except Exception:
            # The triggering commit stands; an admin resync repairs the edge.
            logger.exception("referral_hook_failed", account_id=account.id)

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    async def get_account(self, account_id: str) -> Account:
        async with self._session_factory() as db:
            account = await db.get(Account, account_id)
        if account is None:
            msg = f"Account {account_id} not found"
            raise NotFound(msg)
        return account

    async def open_account(
        self,
        account_id: str,
        email: str | None = None,
        referral_code: str | None = None,
    ) -> Account:
        """Create an account with the signup credit and register it with its referrer.

        An explicit referral code must name an existing account; without one the
        configured default referrer is used when it exists.
        """
        code = referral_code.strip() if referral_code else None
        if code == account_id:
            msg = "An account cannot refer itself"
            raise InvalidArgument(msg)

        async def _work(db: AsyncSession) -> Account:
            if await db.get(Account, account_id) is not None:
                msg = f"Account {account_id} already exists"
                raise AlreadyExists(msg)

            referrer_id = code or self._default_referrer_id
            referrer = await lock_account(db, referrer_id) if referrer_id else None
            if referrer is None and code:
                msg = "Invalid referral code"
                raise NotFound(msg)

            account = Account(
                id=account_id,
                email=email,
                mined_balance=Decimal("0"),
                referral_bonus_pending=Decimal("0"),
                referral_bonus_verified=Decimal("0"),
                governance_rewards=Decimal("0"),
                withdrawable_balance=Decimal("0"),
                session_count=0,
                kyc_state="not_submitted",
                has_pending_withdrawal=False,
                referred_by_account_id=referrer.id if referrer else None,
            )
            credit_pool(account, self._rules.signup_credit, "referral_verified")
            db.add(account)

            if referrer is not None:
                credit_pool(referrer, self._rules.referral_bonus, "referral_pending")
                db.add(ReferralEdge(
                    referrer_id=referrer.id,
                    referred_id=account_id,
                    email=email,
                    kyc_verified=False,
                    session_count=0,
                    wallet_added=False,
                    bonus_paid=False,
                ))
            await db.flush()
            return account

        try:
            account = await self._transact(_work)
        except IntegrityError as e:
            msg = f"Account {account_id} already exists"
            raise AlreadyExists(msg) from e
        logger.info("account_opened", account_id=account_id, referrer_id=account.referred_by_account_id)
        return account

    async def set_payout_address(self, account_id: str, address: str) -> Account:
        """Register the payout address. Write-once: a different address is refused."""
        try:
            address = validate_payout_address(address)
        except ValueError as e:
            raise InvalidArgument(str(e)) from e

        async def _work(db: AsyncSession) -> tuple[Account, ReferralSignals, ReferralSignals]:
            account = await lock_account(db, account_id)
            if account is None:
                msg = f"Account {account_id} not found"
                raise NotFound(msg)
            before = ReferralSignals.of(account)
            if account.payout_address == address:
                return account, before, before
            if account.payout_address:
                msg = "Payout address is already set and cannot be changed"
                raise FailedPrecondition(msg)

            taken = await db.execute(select(Account.id).where(Account.payout_address == address))
            if taken.first() is not None:
                msg = "This wallet address is already registered to another account"
                raise AlreadyExists(msg)

            account.payout_address = address
            return account, before, ReferralSignals.of(account)

        try:
            account, before, after = await self._transact(_work)
        except IntegrityError as e:
            msg = "This wallet address is already registered to another account"
            raise AlreadyExists(msg) from e
        logger.info("payout_address_set", account_id=account_id)
        await self._notify_referrals(account, before, after)
        return account

    async def set_kyc_state(self, account_id: str, state: str) -> Account:
        """Record the outcome of the external KYC review."""
        if state not in KYC_STATES:
            msg = f"Unknown KYC state: {state}"
            raise InvalidArgument(msg)

        async def _work(db: AsyncSession) -> tuple[Account, ReferralSignals, ReferralSignals]:
            account = await lock_account(db, account_id)
            if account is None:
                msg = f"Account {account_id} not found"
                raise NotFound(msg)
            before = ReferralSignals.of(account)
            account.kyc_state = state
            return account, before, ReferralSignals.of(account)

        account, before, after = await self._transact(_work)
        logger.info("kyc_state_changed", account_id=account_id, state=state)
        await self._notify_referrals(account, before, after)
        return account

    # ------------------------------------------------------------------
    # Mining and bonuses
    # ------------------------------------------------------------------

    async def credit_mining(self, account_id: str, now: datetime | None = None) -> Account:
        """Pay the per-session mining reward, at most once per cooldown window."""
        now = now or datetime.now(timezone.utc)
        cooldown = timedelta(hours=self._rules.mining_cooldown_hours)

        async def _work(db: AsyncSession) -> tuple[Account, ReferralSignals, ReferralSignals]:
            account = await lock_account(db, account_id)
            if account is None:
                msg = f"Account {account_id} not found"
                raise NotFound(msg)
            if account.last_mine_at is not None and now - ensure_utc(account.last_mine_at) < cooldown:
                msg = f"Can only mine once every {self._rules.mining_cooldown_hours} hours"
                raise RateLimited(msg)

            before = ReferralSignals.of(account)
            credit_pool(account, self._rules.mining_reward, "mining")
            account.session_count = (account.session_count or 0) + 1
            account.last_mine_at = now
            return account, before, ReferralSignals.of(account)

        account, before, after = await self._transact(_work)
        logger.info("mining_credited", account_id=account_id, sessions=account.session_count)
        await self._notify_referrals(account, before, after)
        return account

    async def credit_bonus(self, account_id: str, amount: Decimal, pool: str) -> Account:
        """Increment a named pool (and the spendable balance where the pool counts)."""

        async def _work(db: AsyncSession) -> Account:
            account = await lock_account(db, account_id)
            if account is None:
                msg = f"Account {account_id} not found"
                raise NotFound(msg)
            credit_pool(account, amount, pool)
            return account

        return await self._transact(_work)

    # ------------------------------------------------------------------
    # Withdrawals
    # ------------------------------------------------------------------

    async def reserve_withdrawal(self, account_id: str, amount: Decimal) -> WithdrawalRequest:
        """Lock the account and open a pending request. The balance is debited at settlement."""
        if not amount.is_finite() or amount <= 0:
            msg = "Invalid amount"
            raise InvalidArgument(msg)
        rules = self._rules

        async def _work(db: AsyncSession) -> WithdrawalRequest:
            account = await lock_account(db, account_id)
            if account is None:
                msg = f"Account {account_id} not found"
                raise NotFound(msg)
            if account.has_pending_withdrawal:
                msg = "A withdrawal is already pending"
                raise AlreadyPending(msg)
            if account.kyc_state != "verified":
                msg = "KYC not verified"
                raise NotEligible(msg)
            if (account.session_count or 0) < rules.sessions_required:
                msg = f"{rules.sessions_required} sessions required"
                raise NotEligible(msg)
            if not account.payout_address:
                msg = "Payout wallet address not saved"
                raise NotEligible(msg)
            if amount < rules.min_withdrawal_amount:
                msg = f"Minimum withdrawal is {rules.min_withdrawal_amount} PHX"
                raise BelowMinimum(msg)
            if amount + rules.withdrawal_fee > account.withdrawable_balance:
                msg = "Insufficient balance for amount and fee"
                raise InsufficientFunds(msg)

            account.has_pending_withdrawal = True
            request = WithdrawalRequest(
                account_id=account_id,
                amount=amount,
                fee=rules.withdrawal_fee,
                final_amount=amount - rules.withdrawal_fee,
                destination_address=account.payout_address,
                status="pending",
            )
            db.add(request)
            await db.flush()
            return request

        request = await self._transact(_work)
        logger.info("withdrawal_reserved", account_id=account_id, request_id=request.id, amount=str(amount))
        return request

    async def settle_withdrawal(
        self,
        request_id: str,
        outcome: SettlementOutcome,
        external_ref: str | None = None,
    ) -> SettlementResult:
        """Finalize a pending request exactly once.

        Approval re-checks the balance; a shortfall turns into a rejection
        rather than an error. A request that is no longer pending raises
        ``AlreadyProcessed`` carrying its recorded status and mutates nothing.
        """
        if outcome not in ("approve", "reject"):
            msg = f"Unknown settlement outcome: {outcome}"
            raise InvalidArgument(msg)

        async def _work(db: AsyncSession) -> SettlementResult:
            result = await db.execute(
                select(WithdrawalRequest)
                .where(WithdrawalRequest.id == request_id)
                .with_for_update()
            )
            request = result.scalar_one_or_none()
            if request is None:
                msg = f"Withdrawal request {request_id} not found"
                raise NotFound(msg)
            if request.status != "pending":
                msg = f"Request {request_id} is already {request.status}"
                raise AlreadyProcessed(msg, status=request.status)

            account = await lock_account(db, request.account_id)
            if account is None:
                msg = "The requesting account no longer exists"
                raise NotFound(msg)

            now = datetime.now(timezone.utc)
            account.has_pending_withdrawal = False
            request.processed_at = now

            if outcome == "reject":
                request.status = "rejected"
                return SettlementResult(request_id, "rejected", f"Rejected withdrawal {request_id}. Lock released.")

            if account.withdrawable_balance < request.amount:
                request.status = "rejected"
                request.rejection_reason = INSUFFICIENT_AT_SETTLEMENT
                return SettlementResult(
                    request_id, "rejected", f"Rejected withdrawal {request_id} due to insufficient funds."
                )

            account.withdrawable_balance -= request.amount
            request.status = "approved"
            request.external_ref = external_ref or "batch_approved"
            return SettlementResult(request_id, "approved", f"Approved withdrawal {request_id}. Balances updated.")

        settled = await self._transact(_work)
        logger.info("withdrawal_settled", request_id=request_id, status=settled.status)
        return settled

    async def list_withdrawals(self, account_id: str) -> list[WithdrawalRequest]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(WithdrawalRequest)
                .where(WithdrawalRequest.account_id == account_id)
                .order_by(WithdrawalRequest.requested_at.desc())
            )
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Supply
    # ------------------------------------------------------------------

    async def total_supply(self) -> Decimal:
        """Sum of every account's spendable balance."""
        async with self._session_factory() as db:
            total = await db.scalar(select(func.coalesce(func.sum(Account.withdrawable_balance), 0)))
        return Decimal(str(total or 0))

    async def circulating_supply(self) -> Decimal:
        """Sum of final amounts already paid out."""
        async with self._session_factory() as db:
            total = await db.scalar(
                select(func.coalesce(func.sum(WithdrawalRequest.final_amount), 0))
                .where(WithdrawalRequest.status.in_(("approved", "completed")))
            )
        return Decimal(str(total or 0))

    async def remaining_supply(self) -> Decimal:
        """Headroom left under the fixed maximum supply."""
        return self._rules.max_supply - await self.total_supply()
