"""Referral bonus propagation — post-commit hook on referred-account changes."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from phx.config import EconomyRules
from phx.database import run_in_transaction
from phx.db.models import Account, ReferralEdge
from phx.errors import NotFound
from phx.ledger.pools import credit_pool, lock_account

logger = structlog.get_logger()


@dataclass(frozen=True)
class ReferralSignals:
    """The three account facts that gate a referrer's bonus."""

    kyc_verified: bool
    session_count: int
    wallet_added: bool

    @classmethod
    def of(cls, account: Account) -> ReferralSignals:
        return cls(
            kyc_verified=account.kyc_state == "verified",
            session_count=account.session_count or 0,
            wallet_added=bool(account.payout_address),
        )

    def qualifies(self, sessions_required: int) -> bool:
        return self.kyc_verified and self.wallet_added and self.session_count >= sessions_required


class ReferralPropagator:
    """Keeps referral edges in sync and pays each referrer's bonus exactly once.

    The edge update and the bonus credit share one transaction over the edge
    and the referrer account, so a crash can neither pay twice nor flip
    ``bonus_paid`` without paying.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        rules: EconomyRules,
        *,
        attempts: int = 3,
    ) -> None:
        self._session_factory = session_factory
        self._rules = rules
        self._attempts = attempts

    async def on_account_changed(
        self,
        referred_id: str,
        referrer_id: str | None,
        before: ReferralSignals,
        after: ReferralSignals,
    ) -> bool:
        """Hook called after any commit touching kyc state, sessions or payout address.

        Returns True if this call paid the referral bonus.
        """
        if referrer_id is None or before == after:
            return False
        return await self.sync(referred_id, referrer_id)

    async def resync(self, referred_id: str) -> bool:
        """Re-evaluate an edge from the referred account's current state."""
        async with self._session_factory() as db:
            account = await db.get(Account, referred_id)
            if account is None:
                msg = f"Account {referred_id} not found"
                raise NotFound(msg)
            referrer_id = account.referred_by_account_id

        if referrer_id is None:
            return False
        return await self.sync(referred_id, referrer_id)

    async def sync(self, referred_id: str, referrer_id: str) -> bool:
        """Mirror the referred account onto the edge and pay the bonus if newly qualified.

        The referred account is re-read inside the transaction, so a hook that
        runs after a later one still mirrors the latest committed state.
        """

        async def _work(db: AsyncSession) -> bool:
            referrer = await lock_account(db, referrer_id)
            if referrer is None:
                logger.warning("referrer_missing", referrer_id=referrer_id, referred_id=referred_id)
                return False
            referred = await lock_account(db, referred_id)
            if referred is None:
                logger.warning("referred_account_missing", referrer_id=referrer_id, referred_id=referred_id)
                return False
            signals = ReferralSignals.of(referred)

            result = await db.execute(
                select(ReferralEdge)
                .where(
                    ReferralEdge.referrer_id == referrer_id,
                    ReferralEdge.referred_id == referred_id,
                )
                .with_for_update()
            )
            edge = result.scalar_one_or_none()
            if edge is None:
                edge = ReferralEdge(referrer_id=referrer_id, referred_id=referred_id, bonus_paid=False)
                db.add(edge)

            edge.email = referred.email
            edge.kyc_verified = signals.kyc_verified
            edge.session_count = signals.session_count
            edge.wallet_added = signals.wallet_added

            if edge.bonus_paid or not signals.qualifies(self._rules.sessions_required):
                return False

            edge.bonus_paid = True
            bonus = self._rules.referral_bonus
            # The bonus was parked in the pending pool at signup; move it across.
            referrer.referral_bonus_pending = max(referrer.referral_bonus_pending - bonus, Decimal("0"))
            credit_pool(referrer, bonus, "referral_verified")
            return True

        paid = await run_in_transaction(self._session_factory, _work, attempts=self._attempts)
        if paid:
            logger.info("referral_bonus_paid", referrer_id=referrer_id, referred_id=referred_id)
        return paid

    async def list_referrals(self, referrer_id: str) -> list[ReferralEdge]:
        """Edges under a referrer, newest first."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(ReferralEdge)
                .where(ReferralEdge.referrer_id == referrer_id)
                .order_by(ReferralEdge.joined_at.desc(), ReferralEdge.referred_id.asc())
            )
            return list(result.scalars().all())
