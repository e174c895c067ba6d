"""Tests for TaskStateMachine and the phase transition table."""

import asyncio

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from src.shipwright.state.machine import (
    InvalidTransitionError,
    TaskExistsError,
    TaskNotFoundError,
    TaskStateMachine,
)
from src.shipwright.state.models import (
    VALID_TRANSITIONS,
    TaskPhase,
    is_terminal_phase,
    is_valid_transition,
)
from src.shipwright.state.store import SQLiteTaskStore


def run_async(coro):
    return asyncio.run(coro)


def valid_transition_pairs():
    return [(src, dst) for src, targets in VALID_TRANSITIONS.items() for dst in targets]


def invalid_transition_pairs():
    return [
        (src, dst)
        for src in TaskPhase
        for dst in TaskPhase
        if dst not in VALID_TRANSITIONS[src]
    ]


_open_stores = []


@pytest.fixture(autouse=True)
def close_stores():
    yield
    while _open_stores:
        run_async(_open_stores.pop().disconnect())


async def _machine(tmp_path) -> TaskStateMachine:
    store = SQLiteTaskStore(str(tmp_path / "tasks.db"))
    await store.connect()
    _open_stores.append(store)
    return TaskStateMachine(store)


class TestTransitionTable:
    def test_every_phase_has_an_entry(self):
        assert set(VALID_TRANSITIONS) == set(TaskPhase)

    def test_done_is_the_only_terminal_phase(self):
        assert [p for p in TaskPhase if is_terminal_phase(p)] == [TaskPhase.DONE]

    def test_self_loops(self):
        assert is_valid_transition(TaskPhase.PLAN_POSTED, TaskPhase.PLAN_POSTED)
        assert is_valid_transition(TaskPhase.TEST, TaskPhase.TEST)
        assert not is_valid_transition(TaskPhase.APPROVED, TaskPhase.APPROVED)

    def test_failed_reenters_only_through_approved(self):
        assert VALID_TRANSITIONS[TaskPhase.FAILED] == [TaskPhase.APPROVED]

    @given(pair=st.sampled_from(invalid_transition_pairs()))
    @settings(max_examples=100)
    def test_invalid_pairs_rejected(self, pair):
        assert not is_valid_transition(*pair)


class TestTaskStateMachine:
    def test_create_in_entry_phase(self, tmp_path):
        async def scenario():
            machine = await _machine(tmp_path)
            return await machine.create("PROJ-1", TaskPhase.PLAN_POSTED, summary="Add X")

        record = run_async(scenario())

        assert record.phase is TaskPhase.PLAN_POSTED
        assert record.summary == "Add X"

    def test_create_outside_entry_phase_rejected(self, tmp_path):
        async def scenario():
            machine = await _machine(tmp_path)
            await machine.create("PROJ-1", TaskPhase.TEST)

        with pytest.raises(ValueError):
            run_async(scenario())

    def test_create_twice_rejected(self, tmp_path):
        async def scenario():
            machine = await _machine(tmp_path)
            await machine.create("PROJ-1", TaskPhase.PLAN_POSTED)
            await machine.create("PROJ-1", TaskPhase.PLAN_POSTED)

        with pytest.raises(TaskExistsError):
            run_async(scenario())

    def test_advance_writes_fields_with_phase(self, tmp_path):
        async def scenario():
            machine = await _machine(tmp_path)
            await machine.create("PROJ-1", TaskPhase.PLAN_POSTED)
            return await machine.advance(
                "PROJ-1", TaskPhase.APPROVED, reviewer_notes="keep it minimal"
            )

        record = run_async(scenario())

        assert record.phase is TaskPhase.APPROVED
        assert record.reviewer_notes == "keep it minimal"

    def test_invalid_advance_leaves_record_unchanged(self, tmp_path):
        async def scenario():
            machine = await _machine(tmp_path)
            await machine.create("PROJ-1", TaskPhase.PLAN_POSTED)
            with pytest.raises(InvalidTransitionError) as info:
                await machine.advance("PROJ-1", TaskPhase.MERGING, pr_number=7)
            return info.value, await machine.get("PROJ-1")

        error, record = run_async(scenario())

        assert error.from_phase is TaskPhase.PLAN_POSTED
        assert error.to_phase is TaskPhase.MERGING
        assert record.phase is TaskPhase.PLAN_POSTED
        assert record.pr_number is None

    def test_advance_unknown_task(self, tmp_path):
        async def scenario():
            machine = await _machine(tmp_path)
            await machine.advance("PROJ-404", TaskPhase.APPROVED)

        with pytest.raises(TaskNotFoundError):
            run_async(scenario())

    def test_update_cannot_change_phase(self, tmp_path):
        async def scenario():
            machine = await _machine(tmp_path)
            await machine.create("PROJ-1", TaskPhase.PLAN_POSTED)
            await machine.update("PROJ-1", phase=TaskPhase.DONE)

        with pytest.raises(ValueError):
            run_async(scenario())

    def test_cost_only_grows(self, tmp_path):
        async def scenario():
            machine = await _machine(tmp_path)
            await machine.create("PROJ-1", TaskPhase.PLAN_POSTED, accrued_cost=0.5)
            await machine.add_cost("PROJ-1", 0.25)
            await machine.add_cost("PROJ-1", 0)
            with pytest.raises(ValueError):
                await machine.add_cost("PROJ-1", -1.0)
            return await machine.require("PROJ-1")

        assert run_async(scenario()).accrued_cost == pytest.approx(0.75)

    def test_remove(self, tmp_path):
        async def scenario():
            machine = await _machine(tmp_path)
            await machine.create("PROJ-1", TaskPhase.PLAN_POSTED)
            removed = await machine.remove("PROJ-1")
            return removed, await machine.get("PROJ-1")

        assert run_async(scenario()) == (True, None)

    def test_full_lifecycle(self, tmp_path):
        path = [
            TaskPhase.APPROVED,
            TaskPhase.IMPLEMENTING,
            TaskPhase.TEST,
            TaskPhase.TEST,
            TaskPhase.MERGING,
            TaskPhase.DONE,
        ]

        async def scenario():
            machine = await _machine(tmp_path)
            await machine.create("PROJ-1", TaskPhase.PLAN_POSTED)
            for phase in path:
                await machine.advance("PROJ-1", phase)
            return await machine.require("PROJ-1")

        assert run_async(scenario()).phase is TaskPhase.DONE

    @given(pair=st.sampled_from(valid_transition_pairs()))
    @settings(max_examples=30, deadline=None)
    def test_valid_transitions_succeed(self, tmp_path_factory, pair):
        from_phase, to_phase = pair
        tmp_path = tmp_path_factory.mktemp("machine")

        async def scenario():
            machine = await _machine(tmp_path)
            await machine.store.upsert("PROJ-1", phase=from_phase)
            return await machine.advance("PROJ-1", to_phase)

        assert run_async(scenario()).phase is to_phase
