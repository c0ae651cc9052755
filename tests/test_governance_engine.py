"""Governance engine tests — state machine, thresholds, voting and the expiry sweep."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from phx.db.models import Account, Proposal
from phx.errors import AlreadyVoted, FailedPrecondition, InvalidArgument, NotEligible, NotFound, WrongPhase
from phx.governance.engine import (
    VALID_TRANSITIONS,
    resolve_expired,
    resolve_outcome,
    tally,
    validate_transition,
)

NOW = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


async def _set_status(session_factory, proposal_id: str, status: str) -> None:
    async with session_factory() as db, db.begin():
        proposal = await db.get(Proposal, proposal_id)
        proposal.status = status


async def _account(session_factory, account_id: str) -> Account:
    async with session_factory() as db:
        return await db.get(Account, account_id)


class TestStateMachine:
    """Proposal status transitions."""

    def test_valid_transitions(self):
        validate_transition("active_round1", "active_round2")
        validate_transition("active_round1", "rejected")
        validate_transition("active_round2", "passed")
        validate_transition("active_round2", "rejected")

    def test_cannot_skip_round_two(self):
        with pytest.raises(ValueError, match="Invalid transition"):
            validate_transition("active_round1", "passed")

    def test_terminal_states_have_no_exits(self):
        assert VALID_TRANSITIONS["passed"] == []
        assert VALID_TRANSITIONS["rejected"] == []
        with pytest.raises(ValueError):
            validate_transition("rejected", "active_round1")


class TestThresholds:
    """Strict majority passes, half rejects."""

    def test_fifty_one_of_hundred_advances(self):
        assert resolve_outcome(1, Decimal("51"), Decimal("0"), Decimal("100")) == "active_round2"

    def test_fifty_for_stays_open(self):
        assert resolve_outcome(1, Decimal("50"), Decimal("0"), Decimal("100")) is None

    def test_fifty_against_rejects(self):
        assert resolve_outcome(1, Decimal("30"), Decimal("50"), Decimal("100")) == "rejected"
        assert resolve_outcome(2, Decimal("0"), Decimal("50"), Decimal("100")) == "rejected"

    def test_round_two_majority_passes(self):
        assert resolve_outcome(2, Decimal("51"), Decimal("49"), Decimal("100")) == "passed"

    def test_odd_pool(self):
        assert resolve_outcome(1, Decimal("2"), Decimal("0"), Decimal("3")) == "active_round2"
        assert resolve_outcome(1, Decimal("0"), Decimal("1"), Decimal("3")) is None

    def test_expiry_rule_is_simple_majority(self):
        assert resolve_expired(Decimal("2"), Decimal("1")) == "active_round2"
        assert resolve_expired(Decimal("1"), Decimal("1")) == "rejected"
        assert resolve_expired(Decimal("0"), Decimal("0")) == "rejected"

    def test_tally_unweighted_and_weighted(self):
        assert tally({"a": "for", "b": "against", "c": "for"}, weighted=False) == (Decimal("2"), Decimal("1"))
        weighted = {"a": {"choice": "for", "power": "12.5"}, "b": {"choice": "against", "power": "3"}}
        assert tally(weighted, weighted=True) == (Decimal("12.5"), Decimal("3"))


class TestEligibility:
    @pytest.mark.asyncio
    async def test_top_supporter_is_eligible(self, governance, make_voter, seed_snapshot, address):
        await make_voter(1)
        await seed_snapshot([address(1)])
        result = await governance.check_eligibility("voter-1")
        assert result.eligible is True

    @pytest.mark.asyncio
    async def test_kyc_required(self, governance, make_voter, seed_snapshot, address):
        await make_voter(1, kyc_state="pending")
        await seed_snapshot([address(1)])
        result = await governance.check_eligibility("voter-1")
        assert result.eligible is False
        assert "KYC" in result.reason

    @pytest.mark.asyncio
    async def test_not_in_leaderboard(self, governance, make_voter, seed_snapshot, address):
        await make_voter(1)
        await seed_snapshot([address(2)])
        result = await governance.check_eligibility("voter-1")
        assert result.eligible is False

    @pytest.mark.asyncio
    async def test_no_snapshot_means_nobody_is_eligible(self, governance, make_voter):
        await make_voter(1)
        result = await governance.check_eligibility("voter-1")
        assert result.eligible is False


class TestCreateProposal:
    @pytest.mark.asyncio
    async def test_general_proposal(self, governance, make_voter, seed_snapshot, address):
        await make_voter(1)
        await seed_snapshot([address(1)])
        proposal = await governance.create_proposal("voter-1", "Burn fees", "Burn all withdrawal fees.", now=NOW)
        assert proposal.kind == "general"
        assert proposal.status == "active_round1"
        assert proposal.expires_at is None
        assert proposal.proposer_address == address(1)

    @pytest.mark.asyncio
    async def test_treasury_proposal_expires_after_window(self, governance, make_voter, seed_snapshot, address):
        await make_voter(1)
        await seed_snapshot([address(1)])
        proposal = await governance.create_proposal(
            "voter-1", "Fund audit", "Pay the auditors.", amount=Decimal("500"), recipient=address(50), now=NOW,
        )
        assert proposal.kind == "treasury"
        assert proposal.recipient == address(50)
        assert proposal.expires_at == NOW + timedelta(days=7)

    @pytest.mark.asyncio
    async def test_treasury_needs_recipient(self, governance):
        with pytest.raises(InvalidArgument):
            await governance.create_proposal("voter-1", "Fund audit", "Pay.", amount=Decimal("500"))

    @pytest.mark.asyncio
    async def test_treasury_needs_positive_amount(self, governance, address):
        with pytest.raises(InvalidArgument):
            await governance.create_proposal("voter-1", "Fund", "Pay.", amount=Decimal("0"), recipient=address(5))

    @pytest.mark.asyncio
    async def test_title_length_limit(self, governance):
        with pytest.raises(InvalidArgument):
            await governance.create_proposal("voter-1", "x" * 101, "Body")

    @pytest.mark.asyncio
    async def test_empty_description(self, governance):
        with pytest.raises(InvalidArgument):
            await governance.create_proposal("voter-1", "Title", "   ")

    @pytest.mark.asyncio
    async def test_ineligible_proposer(self, governance, make_voter, seed_snapshot, address):
        await make_voter(1)
        await seed_snapshot([address(2)])
        with pytest.raises(NotEligible):
            await governance.create_proposal("voter-1", "Title", "Body")


class TestRoundOneVoting:
    """Unweighted round 1 against the leaderboard pool."""

    @pytest.mark.asyncio
    async def test_pool_of_hundred_advances_on_fifty_first_vote(
        self, governance, make_voter, seed_snapshot, address,
    ):
        await seed_snapshot([address(i) for i in range(100)])
        for i in range(51):
            await make_voter(i)
        proposal = await governance.create_proposal("voter-0", "Title", "Body")

        for i in range(50):
            result = await governance.vote(f"voter-{i}", proposal.id, "for")
            assert result.status == "active_round1"
        result = await governance.vote("voter-50", proposal.id, "for")
        assert result.status == "active_round2"
        assert result.tally_for == Decimal("51")

    @pytest.mark.asyncio
    async def test_half_against_rejects(self, governance, make_voter, seed_snapshot, address, session_factory):
        await seed_snapshot([address(i) for i in range(4)])
        for i in range(4):
            await make_voter(i)
        proposal = await governance.create_proposal("voter-0", "Title", "Body")

        await governance.vote("voter-0", proposal.id, "for")
        await governance.vote("voter-1", proposal.id, "against")
        result = await governance.vote("voter-2", proposal.id, "against")
        assert result.status == "rejected"

        stored = await governance.get_proposal(proposal.id)
        assert stored.decided_at is not None
        assert stored.round1_votes == {"voter-0": "for", "voter-1": "against", "voter-2": "against"}

        with pytest.raises(WrongPhase):
            await governance.vote("voter-3", proposal.id, "for")

    @pytest.mark.asyncio
    async def test_duplicate_vote(self, governance, make_voter, seed_snapshot, address):
        await seed_snapshot([address(i) for i in range(10)])
        await make_voter(1)
        proposal = await governance.create_proposal("voter-1", "Title", "Body")
        await governance.vote("voter-1", proposal.id, "for")
        with pytest.raises(AlreadyVoted):
            await governance.vote("voter-1", proposal.id, "against")

    @pytest.mark.asyncio
    async def test_voter_outside_leaderboard(self, governance, make_voter, seed_snapshot, address):
        await seed_snapshot([address(1), address(2)])
        await make_voter(1)
        await make_voter(9)
        proposal = await governance.create_proposal("voter-1", "Title", "Body")
        with pytest.raises(NotEligible):
            await governance.vote("voter-9", proposal.id, "for")

    @pytest.mark.asyncio
    async def test_voting_reward_credited(self, governance, make_voter, seed_snapshot, address, session_factory, rules):
        await seed_snapshot([address(i) for i in range(10)])
        await make_voter(1)
        proposal = await governance.create_proposal("voter-1", "Title", "Body")
        await governance.vote("voter-1", proposal.id, "against")

        account = await _account(session_factory, "voter-1")
        assert account.governance_rewards == rules.voting_reward
        assert account.withdrawable_balance == rules.voting_reward

    @pytest.mark.asyncio
    async def test_explicit_round_must_match(self, governance, make_voter, seed_snapshot, address):
        await seed_snapshot([address(i) for i in range(10)])
        await make_voter(1)
        proposal = await governance.create_proposal("voter-1", "Title", "Body")
        with pytest.raises(WrongPhase):
            await governance.vote("voter-1", proposal.id, "for", round_no=2)

    @pytest.mark.asyncio
    async def test_bad_choice(self, governance):
        with pytest.raises(InvalidArgument):
            await governance.vote("voter-1", "p", "abstain")

    @pytest.mark.asyncio
    async def test_unknown_proposal(self, governance):
        with pytest.raises(NotFound):
            await governance.vote("voter-1", "missing", "for")


class TestRoundTwoVoting:
    """Round 2 opens to every verified account with a wallet."""

    @pytest.mark.asyncio
    async def test_majority_passes_and_pays_proposer(
        self, governance, make_voter, seed_snapshot, address, session_factory, rules,
    ):
        await seed_snapshot([address(1)])
        for i in range(1, 5):
            await make_voter(i)
        proposal = await governance.create_proposal("voter-1", "Title", "Body")
        await _set_status(session_factory, proposal.id, "active_round2")

        # voter-4 is not a top supporter but may vote in round 2
        await governance.vote("voter-4", proposal.id, "for")
        await governance.vote("voter-2", proposal.id, "for")
        result = await governance.vote("voter-3", proposal.id, "for")
        assert result.round == 2
        assert result.status == "passed"

        proposer = await _account(session_factory, "voter-1")
        assert proposer.governance_rewards == rules.proposal_reward

    @pytest.mark.asyncio
    async def test_unverified_account_cannot_vote(self, governance, make_voter, seed_snapshot, address, session_factory):
        await seed_snapshot([address(1)])
        await make_voter(1)
        await make_voter(2, kyc_state="failed")
        proposal = await governance.create_proposal("voter-1", "Title", "Body")
        await _set_status(session_factory, proposal.id, "active_round2")
        with pytest.raises(NotEligible):
            await governance.vote("voter-2", proposal.id, "for")


class TestWeightedVoting:
    """Treasury proposals tally oracle balances."""

    @pytest.mark.asyncio
    async def test_power_from_oracle(self, governance, make_voter, seed_snapshot, address, oracle):
        await seed_snapshot([address(1), address(2)], total_power=Decimal("100"))
        await make_voter(1)
        await make_voter(2)
        oracle.balances = {address(1): Decimal("40"), address(2): Decimal("20")}
        proposal = await governance.create_proposal(
            "voter-1", "Fund", "Pay.", amount=Decimal("10"), recipient=address(9),
        )

        result = await governance.vote("voter-1", proposal.id, "for")
        assert result.status == "active_round1"
        assert result.tally_for == Decimal("40")

        result = await governance.vote("voter-2", proposal.id, "for")
        assert result.status == "active_round2"
        stored = await governance.get_proposal(proposal.id)
        assert stored.round1_votes["voter-2"] == {"choice": "for", "power": "20"}

    @pytest.mark.asyncio
    async def test_oracle_failure_counts_as_zero_power(self, governance, make_voter, seed_snapshot, address, oracle):
        await seed_snapshot([address(1)], total_power=Decimal("100"))
        await make_voter(1)
        proposal = await governance.create_proposal(
            "voter-1", "Fund", "Pay.", amount=Decimal("10"), recipient=address(9),
        )
        oracle.failing = True

        result = await governance.vote("voter-1", proposal.id, "for")
        assert result.status == "active_round1"
        assert result.tally_for == Decimal("0")

    @pytest.mark.asyncio
    async def test_round_two_uses_total_supply(
        self, governance, make_voter, seed_snapshot, address, oracle, session_factory,
    ):
        await seed_snapshot([address(1)], total_power=Decimal("10"))
        await make_voter(1)
        proposal = await governance.create_proposal(
            "voter-1", "Fund", "Pay.", amount=Decimal("10"), recipient=address(9),
        )
        await _set_status(session_factory, proposal.id, "active_round2")
        oracle.total_supply = Decimal("1000")
        oracle.balances = {address(1): Decimal("400")}

        result = await governance.vote("voter-1", proposal.id, "for")
        assert result.status == "active_round2"

    @pytest.mark.asyncio
    async def test_no_pool_is_a_precondition_failure(self, governance, make_voter, seed_snapshot, address):
        await seed_snapshot([address(1)], total_power=Decimal("0"))
        await make_voter(1)
        proposal = await governance.create_proposal(
            "voter-1", "Fund", "Pay.", amount=Decimal("10"), recipient=address(9),
        )
        with pytest.raises(FailedPrecondition, match="no eligible voters"):
            await governance.vote("voter-1", proposal.id, "for")


class TestExpirySweep:
    @pytest.mark.asyncio
    async def test_closes_by_simple_majority(self, governance, make_voter, seed_snapshot, address, oracle):
        await seed_snapshot([address(i) for i in range(1, 4)], total_power=Decimal("1000"))
        for i in range(1, 4):
            await make_voter(i)
        oracle.balances = {address(1): Decimal("5"), address(2): Decimal("3")}
        advancing = await governance.create_proposal(
            "voter-1", "Fund A", "Pay.", amount=Decimal("10"), recipient=address(9), now=NOW,
        )
        silent = await governance.create_proposal(
            "voter-1", "Fund B", "Pay.", amount=Decimal("10"), recipient=address(9), now=NOW,
        )
        general = await governance.create_proposal("voter-1", "General", "Body", now=NOW)
        await governance.vote("voter-1", advancing.id, "for")
        await governance.vote("voter-2", advancing.id, "against")

        closed = await governance.close_expired_proposals(now=NOW + timedelta(days=7, minutes=1))
        assert dict(closed) == {advancing.id: "active_round2", silent.id: "rejected"}
        assert (await governance.get_proposal(general.id)).status == "active_round1"

        # A second run finds nothing left to close
        assert await governance.close_expired_proposals(now=NOW + timedelta(days=8)) == []

    @pytest.mark.asyncio
    async def test_unexpired_untouched(self, governance, make_voter, seed_snapshot, address):
        await seed_snapshot([address(1)], total_power=Decimal("10"))
        await make_voter(1)
        proposal = await governance.create_proposal(
            "voter-1", "Fund", "Pay.", amount=Decimal("10"), recipient=address(9), now=NOW,
        )
        assert await governance.close_expired_proposals(now=NOW + timedelta(days=6)) == []
        assert (await governance.get_proposal(proposal.id)).status == "active_round1"


class TestListing:
    @pytest.mark.asyncio
    async def test_newest_first(self, governance, make_voter, seed_snapshot, address):
        await seed_snapshot([address(1)])
        await make_voter(1)
        first = await governance.create_proposal("voter-1", "First", "Body", now=NOW)
        second = await governance.create_proposal("voter-1", "Second", "Body", now=NOW + timedelta(hours=1))

        proposals = await governance.list_proposals()
        assert [p.id for p in proposals] == [second.id, first.id]
        assert await governance.list_proposals(status="passed") == []
