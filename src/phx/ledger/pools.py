"""Balance pools and row-locking helpers used inside ledger transactions."""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from phx.db.models import Account
from phx.errors import InvalidArgument

# pool name -> (account column, counts towards withdrawable_balance)
POOLS: dict[str, tuple[str, bool]] = {
    "mining": ("mined_balance", True),
    "referral_pending": ("referral_bonus_pending", False),
    "referral_verified": ("referral_bonus_verified", True),
    "governance": ("governance_rewards", True),
}


def ensure_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes read back from backends without tz support."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def credit_pool(account: Account, amount: Decimal, pool: str) -> None:
    """Increment a named pool on an already-locked account."""
    if pool not in POOLS:
        msg = f"Unknown balance pool: {pool}"
        raise InvalidArgument(msg)
    if amount <= 0:
        msg = "Credit amount must be positive"
        raise InvalidArgument(msg)

    column, spendable = POOLS[pool]
    setattr(account, column, (getattr(account, column) or Decimal("0")) + amount)
    if spendable:
        account.withdrawable_balance = (account.withdrawable_balance or Decimal("0")) + amount


async def lock_account(db: AsyncSession, account_id: str) -> Account | None:
    """Load an account with a row lock held until the transaction ends."""
    result = await db.execute(
        select(Account).where(Account.id == account_id).with_for_update()
    )
    return result.scalar_one_or_none()
