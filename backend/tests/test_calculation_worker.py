"""Tests for the calculation worker and worker pool.

Sessions are created through the runtime's SessionManager and processed by
draining the in-memory queue, unless a test starts the pool explicitly.
"""

import asyncio
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, patch

import pytest
from sqlalchemy import select

from gains_sandbox.models import AuditLog, SessionStatus, WhatIfSession
from gains_sandbox.services.audit import PROCESS_COMPLETE, PROCESS_FAILED, PROCESS_START, SESSION_CREATED
from gains_sandbox.services.calculation_worker import CANCELLED_MESSAGE, TIMED_OUT_MESSAGE
from gains_sandbox.services.job_queue import CalculationJobPayload
from gains_sandbox.services.notifications import topic_for


REFERENCE_SUMMARY = {"shortTermGain": "9993", "longTermGain": "0", "totalGain": "9993"}


async def load_session(session_maker, session_id: str) -> WhatIfSession:
    async with session_maker() as session:
        return await session.get(WhatIfSession, session_id)


async def wait_for_terminal(session_maker, session_ids, timeout: float = 5.0):
    """Poll until every session left QUEUED."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        sessions = [await load_session(session_maker, sid) for sid in session_ids]
        if all(s.is_terminal for s in sessions):
            return sessions
        await asyncio.sleep(0.05)
    raise AssertionError("sessions did not complete in time")


class TestLifecycle:
    """QUEUED -> READY / FAILED."""

    @pytest.mark.asyncio
    async def test_ready_with_summary_and_details(self, runtime, session_maker, sample_ledger):
        whatif = await runtime.sessions.create_session("user1", "FIFO")
        subscription = await runtime.bus.subscribe(topic_for(whatif.id))

        assert await runtime.pool.drain() == 1

        stored = await load_session(session_maker, whatif.id)
        assert stored.status == SessionStatus.READY
        assert stored.summary == REFERENCE_SUMMARY
        assert stored.error_message is None
        assert stored.started_at is not None
        assert stored.completed_at is not None
        assert stored.details == [{
            "tradeId": "s1",
            "lotTradeId": "b1",
            "asset": "BTC",
            "quantity": "1",
            "proceedsUsd": "39998",
            "basisUsd": "30005",
            "gainUsd": "9993",
            "holdingPeriodDays": 152,
            "longTerm": False,
        }]

        assert await subscription.get(timeout=1.0) == {"summary": REFERENCE_SUMMARY}

    @pytest.mark.asyncio
    async def test_user_without_trades_gets_zero_summary(self, runtime, session_maker):
        whatif = await runtime.sessions.create_session("nobody", "HIFO")
        await runtime.pool.drain()

        stored = await load_session(session_maker, whatif.id)
        assert stored.status == SessionStatus.READY
        assert stored.summary == {"shortTermGain": "0", "longTermGain": "0", "totalGain": "0"}
        assert stored.details == []

    @pytest.mark.asyncio
    async def test_spec_id_without_lot_order_fails(self, runtime, session_maker, sample_ledger):
        whatif = await runtime.sessions.create_session("user1", "SPEC_ID")
        subscription = await runtime.bus.subscribe(topic_for(whatif.id))

        await runtime.pool.drain()

        stored = await load_session(session_maker, whatif.id)
        assert stored.status == SessionStatus.FAILED
        assert "lot order" in stored.error_message
        assert stored.summary is None

        message = await subscription.get(timeout=1.0)
        assert message["error"] is True
        assert message["message"] == stored.error_message

    @pytest.mark.asyncio
    async def test_spec_id_with_lot_order(self, runtime, session_maker, add_trades):
        await add_trades(
            ("b1", "1", "100", "0", datetime(2024, 1, 1)),
            ("b2", "1", "150", "0", datetime(2024, 2, 1)),
            ("s1", "-1", "200", "0", datetime(2024, 3, 1)),
        )
        whatif = await runtime.sessions.create_session("user1", "SPEC_ID", ["b2", "b1"])

        await runtime.pool.drain()

        stored = await load_session(session_maker, whatif.id)
        assert stored.status == SessionStatus.READY
        assert stored.summary["totalGain"] == "50"
        assert stored.details[0]["lotTradeId"] == "b2"

    @pytest.mark.asyncio
    async def test_unexpected_engine_error_fails_session(self, runtime, session_maker, sample_ledger):
        whatif = await runtime.sessions.create_session("user1", "FIFO")

        with patch.object(runtime.worker.engine, "calculate", side_effect=ZeroDivisionError("bad lot")):
            await runtime.pool.drain()

        stored = await load_session(session_maker, whatif.id)
        assert stored.status == SessionStatus.FAILED
        assert "bad lot" in stored.error_message

    @pytest.mark.asyncio
    async def test_audit_trail(self, runtime, session_maker, sample_ledger):
        whatif = await runtime.sessions.create_session("user1", "FIFO")
        await runtime.pool.drain()

        async with session_maker() as session:
            entries = (await session.execute(select(AuditLog).order_by(AuditLog.id))).scalars().all()

        assert [e.action for e in entries] == [SESSION_CREATED, PROCESS_START, PROCESS_COMPLETE]
        assert all(e.meta["session_id"] == whatif.id for e in entries)
        assert entries[-1].meta["duration_ms"] >= 0

    @pytest.mark.asyncio
    async def test_publish_failure_still_persists(self, runtime, session_maker, sample_ledger):
        whatif = await runtime.sessions.create_session("user1", "FIFO")

        with patch.object(runtime.bus, "publish", AsyncMock(side_effect=RuntimeError("bus down"))):
            await runtime.pool.drain()

        stored = await load_session(session_maker, whatif.id)
        assert stored.status == SessionStatus.READY
        assert stored.summary == REFERENCE_SUMMARY


class TestIsolation:
    """One session's failure never affects another."""

    @pytest.mark.asyncio
    async def test_oversold_user_fails_alone(self, runtime, session_maker, sample_ledger, add_trades):
        await add_trades(
            ("u2-b1", "1", "100", "0", datetime(2024, 1, 1)),
            ("u2-s1", "-3", "120", "0", datetime(2024, 2, 1)),
            user_id="user2",
        )
        good = await runtime.sessions.create_session("user1", "FIFO")
        bad = await runtime.sessions.create_session("user2", "FIFO")

        await runtime.pool.drain()

        assert (await load_session(session_maker, good.id)).status == SessionStatus.READY
        failed = await load_session(session_maker, bad.id)
        assert failed.status == SessionStatus.FAILED
        assert "u2-s1" in failed.error_message

    @pytest.mark.asyncio
    async def test_same_user_methods_do_not_interfere(self, runtime, session_maker, add_trades):
        await add_trades(
            ("b1", "1", "100", "0", datetime(2024, 1, 1)),
            ("b2", "1", "50", "0", datetime(2024, 2, 1)),
            ("s1", "-1", "120", "0", datetime(2024, 3, 1)),
        )
        fifo = await runtime.sessions.create_session("user1", "FIFO")
        lifo = await runtime.sessions.create_session("user1", "LIFO")

        await runtime.pool.drain()

        assert (await load_session(session_maker, fifo.id)).summary["totalGain"] == "20"
        assert (await load_session(session_maker, lifo.id)).summary["totalGain"] == "70"

    @pytest.mark.asyncio
    async def test_running_pool_completes_concurrent_sessions(self, runtime, session_maker, add_trades):
        for n in range(4):
            await add_trades(
                (f"u{n}-b1", "2", "100", "0", datetime(2024, 1, 1)),
                (f"u{n}-s1", "-1", str(100 + n), "0", datetime(2024, 2, 1)),
                user_id=f"user{n}",
            )

        await runtime.pool.start()
        created = [await runtime.sessions.create_session(f"user{n}", "FIFO") for n in range(4)]

        sessions = await wait_for_terminal(session_maker, [s.id for s in created])
        await runtime.pool.stop()

        assert [s.status for s in sessions] == [SessionStatus.READY] * 4
        assert [s.summary["totalGain"] for s in sessions] == ["0", "1", "2", "3"]


class TestExactlyOnce:
    """Terminal state is written and announced once."""

    @pytest.mark.asyncio
    async def test_redelivered_job_is_noop(self, runtime, session_maker, sample_ledger):
        whatif = await runtime.sessions.create_session("user1", "FIFO")
        subscription = await runtime.bus.subscribe(topic_for(whatif.id))
        await runtime.pool.drain()
        first = await load_session(session_maker, whatif.id)

        payload = CalculationJobPayload(session_id=whatif.id, user_id="user1", method="FIFO")
        assert await runtime.worker.process(payload) == SessionStatus.READY

        second = await load_session(session_maker, whatif.id)
        assert second.completed_at == first.completed_at
        assert await subscription.get(timeout=1.0) == {"summary": REFERENCE_SUMMARY}
        assert await subscription.get(timeout=0.1) is None

    @pytest.mark.asyncio
    async def test_terminal_state_not_overwritten(self, runtime, session_maker, sample_ledger):
        whatif = await runtime.sessions.create_session("user1", "FIFO")
        assert await runtime.worker.fail_session(whatif.id, "user1", "first") is True
        assert await runtime.worker.fail_session(whatif.id, "user1", "second") is False

        await runtime.pool.drain()

        stored = await load_session(session_maker, whatif.id)
        assert stored.status == SessionStatus.FAILED
        assert stored.error_message == "first"

    @pytest.mark.asyncio
    async def test_unknown_session_dropped(self, runtime):
        payload = CalculationJobPayload(session_id="missing", user_id="user1", method="FIFO")
        assert await runtime.worker.process(payload) is None

    @pytest.mark.asyncio
    async def test_persistence_error_nacks_until_dead(self, runtime, sample_ledger):
        await runtime.sessions.create_session("user1", "FIFO")

        with patch.object(runtime.worker, "process", AsyncMock(side_effect=RuntimeError("db down"))):
            processed = await runtime.pool.drain()

        assert processed == runtime.queue.max_attempts
        assert len(runtime.queue.dead) == 1
        assert await runtime.queue.depth() == 0


class TestCancellation:
    """Best-effort cancel flag."""

    @pytest.mark.asyncio
    async def test_cancelled_before_pickup(self, runtime, session_maker, sample_ledger):
        whatif = await runtime.sessions.create_session("user1", "FIFO")
        subscription = await runtime.bus.subscribe(topic_for(whatif.id))
        await runtime.sessions.cancel_session(whatif.id)

        await runtime.pool.drain()

        stored = await load_session(session_maker, whatif.id)
        assert stored.status == SessionStatus.FAILED
        assert stored.error_message == CANCELLED_MESSAGE
        assert await subscription.get(timeout=1.0) == {"error": True, "message": CANCELLED_MESSAGE}

    @pytest.mark.asyncio
    async def test_cancel_after_completion_has_no_effect(self, runtime, session_maker, sample_ledger):
        whatif = await runtime.sessions.create_session("user1", "FIFO")
        await runtime.pool.drain()

        assert await runtime.sessions.cancel_session(whatif.id) is False
        assert (await load_session(session_maker, whatif.id)).status == SessionStatus.READY


class TestStaleSweep:
    """Sessions nobody picks up eventually fail."""

    @pytest.mark.asyncio
    async def test_sweep_fails_stale_sessions(self, runtime, session_maker, sample_ledger):
        whatif = await runtime.sessions.create_session("user1", "FIFO")
        subscription = await runtime.bus.subscribe(topic_for(whatif.id))

        later = datetime.utcnow() + timedelta(seconds=runtime.pool.claim_timeout + 1)
        assert await runtime.pool.sweep_stale_sessions(now=later) == 1

        stored = await load_session(session_maker, whatif.id)
        assert stored.status == SessionStatus.FAILED
        assert stored.error_message == TIMED_OUT_MESSAGE
        assert await subscription.get(timeout=1.0) == {"error": True, "message": TIMED_OUT_MESSAGE}

        # The job still in the queue finds the session terminal
        await runtime.pool.drain()
        assert (await load_session(session_maker, whatif.id)).error_message == TIMED_OUT_MESSAGE

    @pytest.mark.asyncio
    async def test_sweep_leaves_fresh_sessions(self, runtime, session_maker):
        whatif = await runtime.sessions.create_session("user1", "FIFO")

        assert await runtime.pool.sweep_stale_sessions() == 0
        assert (await load_session(session_maker, whatif.id)).status == SessionStatus.QUEUED

    @pytest.mark.asyncio
    async def test_sweep_records_failure_audit(self, runtime, session_maker):
        await runtime.sessions.create_session("user1", "FIFO")
        later = datetime.utcnow() + timedelta(seconds=runtime.pool.claim_timeout + 1)
        await runtime.pool.sweep_stale_sessions(now=later)

        async with session_maker() as session:
            actions = (await session.execute(select(AuditLog.action))).scalars().all()
        assert PROCESS_FAILED in actions
