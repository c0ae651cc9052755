"""Governance engine — proposal lifecycle and two-round voting.

State progression: active_round1 -> active_round2 -> passed, with rejection
possible from either active round. Terminal states are never re-evaluated.

Voting power and the size of the eligible pool are read immediately before
the vote transaction and passed into it as values. A balance that moves
between that read and the commit is not reflected in the recorded vote.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Literal, TypeVar

import structlog
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from phx.config import EconomyRules
from phx.database import run_in_transaction
from phx.db.models import Account, LeaderboardSnapshot, Proposal
from phx.errors import (
    AlreadyVoted,
    FailedPrecondition,
    InvalidArgument,
    NotEligible,
    NotFound,
    WrongPhase,
)
from phx.governance.leaderboard import SNAPSHOT_ID, snapshot_addresses
from phx.governance.oracle import BalanceOracle, best_effort_balance, best_effort_total_supply
from phx.ledger.address import validate_payout_address
from phx.ledger.pools import credit_pool, ensure_utc, lock_account

logger = structlog.get_logger()

T = TypeVar("T")

Choice = Literal["for", "against"]

ZERO = Decimal("0")

VALID_TRANSITIONS: dict[str, list[str]] = {
    "active_round1": ["active_round2", "rejected"],
    "active_round2": ["passed", "rejected"],
    "passed": [],
    "rejected": [],
}

ROUND_STATUS: dict[int, str] = {1: "active_round1", 2: "active_round2"}


def validate_transition(current_status: str, target_status: str) -> None:
    """Validate a state transition. Raises ValueError if invalid."""
    valid = VALID_TRANSITIONS.get(current_status, [])
    if target_status not in valid:
        raise ValueError(
            f"Invalid transition: {current_status} -> {target_status}. "
            f"Valid transitions: {valid}"
        )


def round_for_status(status: str) -> int | None:
    for round_no, round_status in ROUND_STATUS.items():
        if round_status == status:
            return round_no
    return None


def tally(votes: dict[str, Any], weighted: bool) -> tuple[Decimal, Decimal]:
    """Aggregate a round's vote map into (for, against)."""
    tally_for = ZERO
    tally_against = ZERO
    for entry in votes.values():
        if weighted:
            choice = entry["choice"]
            weight = Decimal(str(entry["power"]))
        else:
            choice = entry
            weight = Decimal("1")
        if choice == "for":
            tally_for += weight
        else:
            tally_against += weight
    return tally_for, tally_against


def resolve_outcome(round_no: int, tally_for: Decimal, tally_against: Decimal, pool: Decimal) -> str | None:
    """Status a live tally settles to, or None while the round stays open.

    Passing needs a strict majority of the pool; rejection needs half.
    """
    if tally_for * 2 > pool:
        return "active_round2" if round_no == 1 else "passed"
    if tally_against * 2 >= pool:
        return "rejected"
    return None


def resolve_expired(tally_for: Decimal, tally_against: Decimal) -> str:
    """Closing rule for an expired treasury round 1: simple majority of votes cast."""
    return "active_round2" if tally_for > tally_against else "rejected"


@dataclass(frozen=True)
class Eligibility:
    eligible: bool
    reason: str | None = None


@dataclass(frozen=True)
class VoteResult:
    proposal_id: str
    round: int
    status: str
    tally_for: Decimal
    tally_against: Decimal


def _round1_eligibility(account: Account, top_addresses: set[str]) -> Eligibility:
    if account.kyc_state != "verified":
        return Eligibility(False, "KYC verification is required")
    if not account.payout_address:
        return Eligibility(False, "A payout wallet address is required")
    if account.payout_address not in top_addresses:
        return Eligibility(False, "Only top supporters can take part in round 1")
    return Eligibility(True)


def _round2_eligibility(account: Account) -> Eligibility:
    if account.kyc_state != "verified":
        return Eligibility(False, "KYC verification is required")
    if not account.payout_address:
        return Eligibility(False, "A payout wallet address is required")
    return Eligibility(True)


class GovernanceEngine:
    """Proposal creation, vote recording and the treasury expiry sweep."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        rules: EconomyRules,
        oracle: BalanceOracle | None = None,
        *,
        attempts: int = 3,
    ) -> None:
        self._session_factory = session_factory
        self._rules = rules
        self._oracle = oracle
        self._attempts = attempts

    async def _transact(self, work: Callable[[AsyncSession], Awaitable[T]]) -> T:
        return await run_in_transaction(self._session_factory, work, attempts=self._attempts)

    # ------------------------------------------------------------------
    # Eligibility
    # ------------------------------------------------------------------

    async def check_eligibility(self, account_id: str) -> Eligibility:
        """Whether the account may create proposals and vote in round 1."""
        async with self._session_factory() as db:
            account = await db.get(Account, account_id)
            if account is None:
                msg = f"Account {account_id} not found"
                raise NotFound(msg)
            snapshot = await db.get(LeaderboardSnapshot, SNAPSHOT_ID)
        return _round1_eligibility(account, snapshot_addresses(snapshot))

    async def _round2_pool_size(self) -> Decimal:
        async with self._session_factory() as db:
            count = await db.scalar(
                select(func.count(Account.id)).where(
                    Account.kyc_state == "verified",
                    Account.payout_address.is_not(None),
                )
            )
        return Decimal(count or 0)

    # ------------------------------------------------------------------
    # Proposals
    # ------------------------------------------------------------------

    def _validate_text(self, title: str, description: str) -> tuple[str, str]:
        title = (title or "").strip()
        description = (description or "").strip()
        if not title or not description:
            msg = "Title and description are required"
            raise InvalidArgument(msg)
        if len(title) > self._rules.title_max_length:
            msg = f"Title must be at most {self._rules.title_max_length} characters"
            raise InvalidArgument(msg)
        if len(description) > self._rules.description_max_length:
            msg = f"Description must be at most {self._rules.description_max_length} characters"
            raise InvalidArgument(msg)
        return title, description

    async def create_proposal(
        self,
        account_id: str,
        title: str,
        description: str,
        amount: Decimal | None = None,
        recipient: str | None = None,
        now: datetime | None = None,
    ) -> Proposal:
        """Open a proposal in round 1.

        Supplying an amount or a recipient makes it a treasury proposal; both
        are then required and the first round expires after a fixed window.
        """
        title, description = self._validate_text(title, description)
        kind = "general"
        if amount is not None or recipient is not None:
            kind = "treasury"
            if amount is None or not amount.is_finite() or amount <= 0:
                msg = "Treasury proposals need a positive amount"
                raise InvalidArgument(msg)
            try:
                recipient = validate_payout_address(recipient or "")
            except ValueError as e:
                raise InvalidArgument(str(e)) from e
        now = now or datetime.now(timezone.utc)

        async def _work(db: AsyncSession) -> Proposal:
            account = await db.get(Account, account_id)
            if account is None:
                msg = f"Account {account_id} not found"
                raise NotFound(msg)
            snapshot = await db.get(LeaderboardSnapshot, SNAPSHOT_ID)
            eligibility = _round1_eligibility(account, snapshot_addresses(snapshot))
            if not eligibility.eligible:
                raise NotEligible(eligibility.reason or "Not eligible to create proposals")

            proposal = Proposal(
                kind=kind,
                title=title,
                description=description,
                proposer_id=account_id,
                proposer_address=account.payout_address,
                status="active_round1",
                round1_for=ZERO,
                round1_against=ZERO,
                round2_for=ZERO,
                round2_against=ZERO,
                round1_votes={},
                round2_votes={},
                amount=amount if kind == "treasury" else None,
                recipient=recipient if kind == "treasury" else None,
                expires_at=now + timedelta(days=self._rules.treasury_round1_days) if kind == "treasury" else None,
                created_at=now,
            )
            db.add(proposal)
            await db.flush()
            return proposal

        proposal = await self._transact(_work)
        logger.info("proposal_created", proposal_id=proposal.id, kind=kind, proposer_id=account_id)
        return proposal

    async def get_proposal(self, proposal_id: str) -> Proposal:
        async with self._session_factory() as db:
            proposal = await db.get(Proposal, proposal_id)
        if proposal is None:
            msg = f"Proposal {proposal_id} not found"
            raise NotFound(msg)
        return proposal

    async def list_proposals(self, status: str | None = None, limit: int = 50) -> list[Proposal]:
        async with self._session_factory() as db:
            query = select(Proposal).order_by(Proposal.created_at.desc()).limit(limit)
            if status:
                query = query.where(Proposal.status == status)
            result = await db.execute(query)
            return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Voting
    # ------------------------------------------------------------------

    async def vote(
        self,
        account_id: str,
        proposal_id: str,
        choice: str,
        round_no: int | None = None,
        now: datetime | None = None,
    ) -> VoteResult:
        """Record one vote and resolve the round against the eligible pool."""
        if choice not in ("for", "against"):
            msg = "Choice must be 'for' or 'against'"
            raise InvalidArgument(msg)
        if round_no is not None and round_no not in ROUND_STATUS:
            msg = "Round must be 1 or 2"
            raise InvalidArgument(msg)
        now = now or datetime.now(timezone.utc)

        # Pool size and voter power are read up front, outside the transaction.
        async with self._session_factory() as db:
            proposal = await db.get(Proposal, proposal_id)
            if proposal is None:
                msg = f"Proposal {proposal_id} not found"
                raise NotFound(msg)
            voter = await db.get(Account, account_id)
            if voter is None:
                msg = f"Account {account_id} not found"
                raise NotFound(msg)
            snapshot = await db.get(LeaderboardSnapshot, SNAPSHOT_ID)

        current_round = round_for_status(proposal.status)
        if current_round is None:
            msg = f"Voting is closed; proposal is {proposal.status}"
            raise WrongPhase(msg)
        if round_no is not None and round_no != current_round:
            msg = f"Proposal is not in round {round_no}"
            raise WrongPhase(msg)
        round_no = current_round
        weighted = proposal.kind == "treasury"

        top_addresses = snapshot_addresses(snapshot)
        pool = await self._pool_for(round_no, weighted, snapshot)
        if pool <= 0:
            msg = f"There are no eligible voters defined for round {round_no}"
            raise FailedPrecondition(msg)

        power = ZERO
        if weighted and voter.payout_address and self._oracle is not None:
            power = await best_effort_balance(self._oracle, voter.payout_address)

        async def _work(db: AsyncSession) -> VoteResult:
            result = await db.execute(select(Proposal).where(Proposal.id == proposal_id).with_for_update())
            locked = result.scalar_one_or_none()
            if locked is None:
                msg = f"Proposal {proposal_id} not found"
                raise NotFound(msg)
            if locked.status != ROUND_STATUS[round_no]:
                msg = f"Proposal is no longer in round {round_no}"
                raise WrongPhase(msg)

            votes_attr = f"round{round_no}_votes"
            votes = dict(getattr(locked, votes_attr) or {})
            if account_id in votes:
                msg = f"You have already voted in round {round_no}"
                raise AlreadyVoted(msg)

            account = await lock_account(db, account_id)
            if account is None:
                msg = f"Account {account_id} not found"
                raise NotFound(msg)
            if round_no == 1:
                eligibility = _round1_eligibility(account, top_addresses)
            else:
                eligibility = _round2_eligibility(account)
            if not eligibility.eligible:
                raise NotEligible(eligibility.reason or "Not eligible to vote")

            credit_pool(account, self._rules.voting_reward, "governance")

            votes[account_id] = {"choice": choice, "power": str(power)} if weighted else choice
            setattr(locked, votes_attr, votes)
            tally_for, tally_against = tally(votes, weighted)
            setattr(locked, f"round{round_no}_for", tally_for)
            setattr(locked, f"round{round_no}_against", tally_against)

            outcome = resolve_outcome(round_no, tally_for, tally_against, pool)
            if outcome is not None:
                validate_transition(locked.status, outcome)
                locked.status = outcome
                if outcome in ("passed", "rejected"):
                    locked.decided_at = now
                if outcome == "passed":
                    proposer = await lock_account(db, locked.proposer_id)
                    if proposer is not None:
                        credit_pool(proposer, self._rules.proposal_reward, "governance")

            return VoteResult(proposal_id, round_no, locked.status, tally_for, tally_against)

        result = await self._transact(_work)
        logger.info(
            "vote_recorded",
            proposal_id=proposal_id,
            account_id=account_id,
            round=round_no,
            choice=choice,
            status=result.status,
        )
        return result

    async def _pool_for(self, round_no: int, weighted: bool, snapshot: LeaderboardSnapshot | None) -> Decimal:
        if round_no == 1:
            if snapshot is None:
                return ZERO
            if weighted:
                return Decimal(str(snapshot.total_power or 0))
            return Decimal(len(snapshot.entries or []))
        if weighted:
            if self._oracle is None:
                return ZERO
            return await best_effort_total_supply(self._oracle)
        return await self._round2_pool_size()

    # ------------------------------------------------------------------
    # Expiry sweep
    # ------------------------------------------------------------------

    async def close_expired_proposals(self, now: datetime | None = None) -> list[tuple[str, str]]:
        """Close treasury proposals whose round 1 has expired.

        Returns ``(proposal_id, new_status)`` for every proposal closed by this
        run. Safe to re-run: proposals already moved on are skipped.
        """
        now = now or datetime.now(timezone.utc)
        async with self._session_factory() as db:
            result = await db.execute(
                select(Proposal.id).where(
                    Proposal.kind == "treasury",
                    Proposal.status == "active_round1",
                    Proposal.expires_at.is_not(None),
                    Proposal.expires_at <= now,
                )
            )
            candidate_ids = [row[0] for row in result.all()]

        closed: list[tuple[str, str]] = []
        for proposal_id in candidate_ids:

            async def _work(db: AsyncSession, proposal_id: str = proposal_id) -> str | None:
                result = await db.execute(select(Proposal).where(Proposal.id == proposal_id).with_for_update())
                proposal = result.scalar_one_or_none()
                if proposal is None or proposal.status != "active_round1" or proposal.expires_at is None:
                    return None
                if ensure_utc(proposal.expires_at) > now:
                    return None
                status = resolve_expired(proposal.round1_for or ZERO, proposal.round1_against or ZERO)
                validate_transition(proposal.status, status)
                proposal.status = status
                if status == "rejected":
                    proposal.decided_at = now
                return status

            status = await self._transact(_work)
            if status is not None:
                closed.append((proposal_id, status))
                logger.info("proposal_expired", proposal_id=proposal_id, status=status)
        return closed
