"""Service container shared by the API process and the arq workers."""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from phx.config import EconomyRules, Settings
from phx.governance.contributions import ContributionLedger
from phx.governance.engine import GovernanceEngine
from phx.governance.leaderboard import LeaderboardService
from phx.governance.oracle import BalanceOracle, HorizonClient, PaymentSource
from phx.ledger.referrals import ReferralPropagator
from phx.ledger.service import LedgerService
from phx.withdrawals.pipeline import JobQueue, WithdrawalPipeline


@dataclass
class Services:
    session_factory: async_sessionmaker[AsyncSession]
    rules: EconomyRules
    ledger: LedgerService
    referrals: ReferralPropagator
    pipeline: WithdrawalPipeline
    leaderboard: LeaderboardService
    contributions: ContributionLedger
    governance: GovernanceEngine
    horizon: HorizonClient | None = None


def build_horizon(settings: Settings) -> HorizonClient:
    return HorizonClient(
        settings.horizon_url,
        settings.asset_code,
        settings.asset_issuer,
        timeout=settings.oracle_timeout_seconds,
    )


def build_services(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    *,
    queue: JobQueue | None = None,
    oracle: BalanceOracle | None = None,
    payments: PaymentSource | None = None,
    horizon: HorizonClient | None = None,
) -> Services:
    """Wire every service against one session factory and one set of collaborators.

    ``horizon`` serves as both oracle and payment source unless those are given.
    """
    rules = settings.economy
    attempts = settings.transaction_retry_attempts
    oracle = oracle or horizon
    payments = payments or horizon

    referrals = ReferralPropagator(session_factory, rules, attempts=attempts)
    ledger = LedgerService(
        session_factory,
        rules,
        referrals,
        default_referrer_id=settings.default_referrer_id,
        attempts=attempts,
    )
    return Services(
        session_factory=session_factory,
        rules=rules,
        ledger=ledger,
        referrals=referrals,
        pipeline=WithdrawalPipeline(session_factory, ledger, queue, batch_size=rules.withdrawal_batch_size),
        leaderboard=LeaderboardService(session_factory, oracle, size=rules.leaderboard_size),
        contributions=ContributionLedger(
            session_factory,
            payments,
            settings.contribution_address,
            page_size=settings.contribution_page_size,
        ),
        governance=GovernanceEngine(session_factory, rules, oracle, attempts=attempts),
        horizon=horizon,
    )
