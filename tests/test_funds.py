from __future__ import annotations

import asyncio

import pytest

from predmarket_coordinator.application.funds import FundsCoordinator
from predmarket_coordinator.application.state import AppState, Slice, StateData
from predmarket_coordinator.domain.errors import (
    ActionInProgress,
    ApprovalFailed,
    InsufficientPlatformFunds,
    InsufficientWalletFunds,
    InvalidAmount,
    RemoteCallFailed,
    Unauthenticated,
)
from predmarket_coordinator.domain.models import (
    ActionKind,
    ActionPhase,
    ActionState,
    BalanceSnapshot,
)
from tests.utils.fakes import OWNER, PLATFORM, FakeClock, FakeLedger

UNIT = 1_000_000


def make_funds(state: AppState, ledger: FakeLedger, clock: FakeClock) -> FundsCoordinator:
    return FundsCoordinator(state, ledger, clock, PLATFORM)


def seed_snapshot(state: AppState, wallet: int, platform: int, allowance: int = 0) -> None:
    state.publish_balances(
        BalanceSnapshot(
            owner=OWNER,
            wallet_balance=wallet,
            platform_balance=platform,
            allowance=allowance,
            taken_at_ms=0,
            read_seq=state.next_balance_seq(),
        )
    )


@pytest.mark.asyncio
async def test_deposit_above_wallet_balance_makes_no_remote_call(state, clock) -> None:
    ledger = FakeLedger(wallet=50 * UNIT)
    seed_snapshot(state, wallet=50 * UNIT, platform=0)
    funds = make_funds(state, ledger, clock)

    with pytest.raises(InsufficientWalletFunds):
        await funds.request_deposit("100")

    assert ledger.calls == []
    status = state.current.funds
    assert status.phase is ActionPhase.ERROR
    assert status.error_code == "insufficient_wallet_funds"


@pytest.mark.asyncio
async def test_deposit_with_zero_allowance_approves_then_deposits(state, clock) -> None:
    ledger = FakeLedger(wallet=1000 * UNIT, platform=0, allowance_value=0)
    seed_snapshot(state, wallet=1000 * UNIT, platform=0)
    funds = make_funds(state, ledger, clock)

    action = await funds.request_deposit("100")

    assert ledger.write_calls == [
        ("approve", PLATFORM, 100 * UNIT),
        ("deposit", 100 * UNIT),
    ]
    assert action.kind is ActionKind.DEPOSIT
    assert action.state is ActionState.SUCCEEDED
    snapshot = state.current.balances
    assert snapshot.platform_balance == 100 * UNIT
    assert snapshot.wallet_balance == 900 * UNIT
    assert state.current.funds.phase is ActionPhase.SUCCEEDED
    assert state.current.funds.in_flight == ()


@pytest.mark.asyncio
async def test_deposit_with_enough_allowance_skips_approve(state, clock) -> None:
    ledger = FakeLedger(wallet=1000 * UNIT, allowance_value=500 * UNIT)
    seed_snapshot(state, wallet=1000 * UNIT, platform=0, allowance=0)
    funds = make_funds(state, ledger, clock)

    await funds.request_deposit("100")

    assert [call[0] for call in ledger.write_calls] == ["deposit"]


@pytest.mark.asyncio
async def test_deposit_rereads_allowance_instead_of_trusting_snapshot(state, clock) -> None:
    # cached snapshot claims a large allowance, ledger says otherwise
    ledger = FakeLedger(wallet=1000 * UNIT, allowance_value=0)
    seed_snapshot(state, wallet=1000 * UNIT, platform=0, allowance=1000 * UNIT)
    funds = make_funds(state, ledger, clock)

    await funds.request_deposit("10")

    assert [call[0] for call in ledger.write_calls] == ["approve", "deposit"]


@pytest.mark.asyncio
async def test_deposit_reads_snapshot_when_none_published(state, clock) -> None:
    ledger = FakeLedger(wallet=20 * UNIT, allowance_value=20 * UNIT)
    funds = make_funds(state, ledger, clock)

    await funds.request_deposit("5")

    names = [call[0] for call in ledger.calls]
    assert names[:3] == ["balance_of", "platform_balance", "allowance"]
    assert state.current.balances.platform_balance == 5 * UNIT


@pytest.mark.asyncio
async def test_rejected_approval_never_deposits(state, clock) -> None:
    ledger = FakeLedger(wallet=1000 * UNIT)
    ledger.failures["approve"] = RemoteCallFailed("user rejected the request")
    seed_snapshot(state, wallet=1000 * UNIT, platform=0)
    funds = make_funds(state, ledger, clock)
    before = state.current.balances

    with pytest.raises(ApprovalFailed) as excinfo:
        await funds.request_deposit("100")

    assert "user rejected" in excinfo.value.message
    assert [call[0] for call in ledger.write_calls] == ["approve"]
    assert state.current.balances == before
    status = state.current.funds
    assert status.phase is ActionPhase.ERROR
    assert status.error_code == "approval_failed"


@pytest.mark.asyncio
async def test_reverted_approval_marks_action_failed(state, clock) -> None:
    ledger = FakeLedger(wallet=1000 * UNIT)
    ledger.reverts.add("approve")
    seed_snapshot(state, wallet=1000 * UNIT, platform=0)
    funds = make_funds(state, ledger, clock)

    with pytest.raises(ApprovalFailed):
        await funds.request_deposit("100")

    action = state.current.funds.action
    assert action.kind is ActionKind.APPROVE
    assert action.state is ActionState.FAILED
    assert action.reason
    assert "deposit" not in [call[0] for call in ledger.calls]


@pytest.mark.asyncio
async def test_allowance_still_short_after_approve_fails(state, clock) -> None:
    ledger = FakeLedger(wallet=1000 * UNIT, approve_sets_allowance=False)
    seed_snapshot(state, wallet=1000 * UNIT, platform=0)
    funds = make_funds(state, ledger, clock)

    with pytest.raises(ApprovalFailed):
        await funds.request_deposit("100")

    assert [call[0] for call in ledger.write_calls] == ["approve"]


@pytest.mark.asyncio
async def test_reverted_deposit_raises_and_keeps_old_snapshot(state, clock) -> None:
    ledger = FakeLedger(wallet=1000 * UNIT, allowance_value=1000 * UNIT)
    ledger.reverts.add("deposit")
    seed_snapshot(state, wallet=1000 * UNIT, platform=0)
    funds = make_funds(state, ledger, clock)
    before = state.current.balances

    with pytest.raises(RemoteCallFailed):
        await funds.request_deposit("100")

    assert state.current.balances == before
    status = state.current.funds
    assert status.phase is ActionPhase.ERROR
    assert status.action.kind is ActionKind.DEPOSIT
    assert status.action.state is ActionState.FAILED
    assert funds.busy is None


@pytest.mark.asyncio
async def test_withdraw_above_platform_balance_makes_no_remote_call(state, clock) -> None:
    ledger = FakeLedger(wallet=0, platform=50 * UNIT)
    seed_snapshot(state, wallet=0, platform=50 * UNIT)
    funds = make_funds(state, ledger, clock)

    with pytest.raises(InsufficientPlatformFunds):
        await funds.request_withdraw("100")

    assert ledger.calls == []


@pytest.mark.asyncio
async def test_withdraw_moves_funds_back_without_approval(state, clock) -> None:
    ledger = FakeLedger(wallet=0, platform=50 * UNIT)
    seed_snapshot(state, wallet=0, platform=50 * UNIT)
    funds = make_funds(state, ledger, clock)

    action = await funds.request_withdraw("20.5")

    assert ledger.write_calls == [("withdraw", 20_500_000)]
    assert action.kind is ActionKind.WITHDRAW
    assert state.current.balances.platform_balance == 29_500_000
    assert state.current.balances.wallet_balance == 20_500_000


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", ["0", "-1", "abc", "1.0000001", ""])
async def test_invalid_amount_is_rejected_locally(state, clock, amount) -> None:
    ledger = FakeLedger(wallet=1000 * UNIT)
    funds = make_funds(state, ledger, clock)

    with pytest.raises(InvalidAmount):
        await funds.request_deposit(amount)

    assert ledger.calls == []
    assert state.current.funds.error_code == "invalid_amount"


@pytest.mark.asyncio
async def test_deposit_without_account_is_unauthenticated(clock) -> None:
    state = AppState()
    ledger = FakeLedger(wallet=1000 * UNIT)
    funds = make_funds(state, ledger, clock)

    with pytest.raises(Unauthenticated):
        await funds.request_deposit("1")

    assert ledger.calls == []


@pytest.mark.asyncio
async def test_concurrent_request_is_rejected_without_touching_state(state, clock) -> None:
    ledger = FakeLedger(wallet=1000 * UNIT, platform=100 * UNIT, allowance_value=1000 * UNIT)
    hold = asyncio.Event()
    ledger.holds["deposit"] = hold
    seed_snapshot(state, wallet=1000 * UNIT, platform=100 * UNIT)
    funds = make_funds(state, ledger, clock)

    first = asyncio.create_task(funds.request_deposit("10"))
    for _ in range(5):
        await asyncio.sleep(0)
    assert funds.busy is ActionKind.DEPOSIT
    version = state.version

    with pytest.raises(ActionInProgress):
        await funds.request_withdraw("5")
    with pytest.raises(ActionInProgress):
        await funds.request_mint(None, "5")

    assert state.version == version
    assert state.current.funds.phase is ActionPhase.DEPOSITING
    assert len(state.current.funds.in_flight) == 1

    hold.set()
    await first
    assert [call[0] for call in ledger.write_calls] == ["deposit"]
    assert funds.busy is None


@pytest.mark.asyncio
async def test_phases_are_published_in_order(state, clock) -> None:
    ledger = FakeLedger(wallet=1000 * UNIT)
    seed_snapshot(state, wallet=1000 * UNIT, platform=0)
    funds = make_funds(state, ledger, clock)
    phases: list[ActionPhase] = []

    def listener(change) -> None:
        if Slice.FUNDS in change.slices:
            phase = change.state.funds.phase
            if not phases or phases[-1] is not phase:
                phases.append(phase)

    state.subscribe(listener)
    await funds.request_deposit("100")

    assert phases == [
        ActionPhase.CHECKING,
        ActionPhase.APPROVING,
        ActionPhase.DEPOSITING,
        ActionPhase.REFRESHING,
        ActionPhase.SUCCEEDED,
    ]


@pytest.mark.asyncio
async def test_refresh_publishes_balances_in_one_update(state, clock) -> None:
    ledger = FakeLedger(wallet=7 * UNIT, platform=3 * UNIT, allowance_value=1 * UNIT)
    funds = make_funds(state, ledger, clock)
    changes = []
    state.subscribe(changes.append)

    snapshot = await funds.refresh_balances()

    assert len(changes) == 1
    assert changes[0].slices == frozenset({Slice.BALANCES})
    assert snapshot.wallet_balance == 7 * UNIT
    assert snapshot.platform_balance == 3 * UNIT
    assert snapshot.allowance == 1 * UNIT


@pytest.mark.asyncio
async def test_older_read_never_overwrites_newer_snapshot(state, clock) -> None:
    ledger = FakeLedger(wallet=1 * UNIT)
    funds = make_funds(state, ledger, clock)

    older = await funds.read_snapshot()
    ledger.wallet = 2 * UNIT
    newer = await funds.read_snapshot()

    assert funds.publish_snapshot(newer) is True
    assert funds.publish_snapshot(older) is False
    assert state.current.balances.wallet_balance == 2 * UNIT


@pytest.mark.asyncio
async def test_snapshot_for_previous_account_is_dropped(clock) -> None:
    state = AppState(StateData(account=OWNER))
    ledger = FakeLedger(wallet=1 * UNIT)
    funds = make_funds(state, ledger, clock)

    snapshot = await funds.read_snapshot()
    state.update(account="0x00000000000000000000000000000000000000c3")

    assert funds.publish_snapshot(snapshot) is False
    assert state.current.balances is None


@pytest.mark.asyncio
async def test_mint_refreshes_wallet_balance_only(state, clock) -> None:
    ledger = FakeLedger(wallet=0, platform=5 * UNIT)
    seed_snapshot(state, wallet=0, platform=5 * UNIT, allowance=3 * UNIT)
    funds = make_funds(state, ledger, clock)

    action = await funds.request_mint(None, "1000")

    assert action.kind is ActionKind.MINT
    assert ledger.write_calls == [("mint", OWNER, 1000 * UNIT)]
    reads = [call[0] for call in ledger.calls if call[0] not in {"mint"}]
    assert reads == ["balance_of"]
    snapshot = state.current.balances
    assert snapshot.wallet_balance == 1000 * UNIT
    assert snapshot.platform_balance == 5 * UNIT
    assert snapshot.allowance == 3 * UNIT


@pytest.mark.asyncio
async def test_mint_to_other_address_leaves_own_snapshot(state, clock) -> None:
    ledger = FakeLedger(wallet=0)
    seed_snapshot(state, wallet=0, platform=0)
    funds = make_funds(state, ledger, clock)
    other = "0x00000000000000000000000000000000000000d4"

    await funds.request_mint(other, "5")

    assert ledger.minted[other] == 5 * UNIT
    assert state.current.balances.wallet_balance == 0


@pytest.mark.asyncio
async def test_clear_error_resets_phase_but_keeps_last_action(state, clock) -> None:
    ledger = FakeLedger(wallet=1000 * UNIT, allowance_value=1000 * UNIT)
    ledger.reverts.add("deposit")
    seed_snapshot(state, wallet=1000 * UNIT, platform=0)
    funds = make_funds(state, ledger, clock)

    with pytest.raises(RemoteCallFailed):
        await funds.request_deposit("1")
    funds.clear_error()

    status = state.current.funds
    assert status.phase is ActionPhase.IDLE
    assert status.error is None
    assert status.action.state is ActionState.FAILED


@pytest.mark.asyncio
async def test_unexpected_receipt_error_ends_in_error_phase(state, clock) -> None:
    ledger = FakeLedger(wallet=1000 * UNIT, allowance_value=1000 * UNIT)
    ledger.wait_errors["deposit"] = ConnectionResetError("node closed the connection")
    seed_snapshot(state, wallet=1000 * UNIT, platform=0)
    funds = make_funds(state, ledger, clock)

    with pytest.raises(RemoteCallFailed) as excinfo:
        await funds.request_deposit("100")

    assert isinstance(excinfo.value.__cause__, ConnectionResetError)
    status = state.current.funds
    assert status.phase is ActionPhase.ERROR
    assert status.error_code == "remote_call_failed"
    assert "node closed the connection" in status.error
    assert status.action.kind is ActionKind.DEPOSIT
    assert status.action.state is ActionState.FAILED
    assert status.in_flight == ()
    assert state.current.balances.wallet_balance == 1000 * UNIT
    assert funds.busy is None


@pytest.mark.asyncio
async def test_unexpected_read_error_during_withdraw_is_classified(state, clock) -> None:
    ledger = FakeLedger(platform=10 * UNIT)
    ledger.failures["balance_of"] = RuntimeError("provider crashed")
    funds = make_funds(state, ledger, clock)

    with pytest.raises(RemoteCallFailed):
        await funds.request_withdraw("1")

    assert state.current.funds.phase is ActionPhase.ERROR
    assert ledger.write_calls == []


@pytest.mark.asyncio
async def test_mint_without_snapshot_reads_full_balances(state, clock) -> None:
    ledger = FakeLedger(wallet=0, platform=2 * UNIT, allowance_value=1 * UNIT)
    funds = make_funds(state, ledger, clock)

    await funds.request_mint(None, "50")

    snapshot = state.current.balances
    assert snapshot is not None
    assert snapshot.owner == OWNER
    assert snapshot.wallet_balance == 50 * UNIT
    assert snapshot.platform_balance == 2 * UNIT
    assert snapshot.allowance == 1 * UNIT
    assert state.current.funds.phase is ActionPhase.SUCCEEDED
