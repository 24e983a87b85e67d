"""Tests for stage timers: arming, firing, cancellation and retry."""

import asyncio
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from conftest import START, RecordingSink, walk_to
from opsflow.deps import build_services
from opsflow.engine.automation import BACKOFF_SECONDS, MAX_FIRE_ATTEMPTS, add_business_days
from opsflow.engine.models import TIMER_ARMED, TIMER_CANCELLED, TIMER_DEAD, TIMER_FIRED
from opsflow.engine.stages import SALES_DEAL, SALES_LEAD

NEW_YORK = ZoneInfo("America/New_York")

# needs-info reminder armed at START fires three business days later
NEED_INFO_DUE = datetime(2024, 3, 7, 15, 0, tzinfo=timezone.utc)


async def deal_at_needs_info(engine, entity_id="deal-1"):
    await engine.create_entity(entity_id, SALES_DEAL)
    return await engine.advance(entity_id, "demo-call")


async def only_timer(engine, entity_id, stage_id):
    timers = [t for t in await engine.list_timers(entity_id) if t.stage_id == stage_id]
    assert len(timers) == 1
    return timers[0]


class TestBusinessDays:
    def test_skips_weekend(self):
        friday = datetime(2024, 3, 1, 15, 0, tzinfo=timezone.utc)
        assert add_business_days(friday, 1, NEW_YORK) == datetime(2024, 3, 4, 15, 0, tzinfo=timezone.utc)

    def test_three_days_from_monday(self):
        assert add_business_days(START, 3, NEW_YORK) == NEED_INFO_DUE

    def test_keeps_local_time_across_dst(self):
        # Fri 10:00 EST -> Mon 10:00 EDT
        friday = datetime(2024, 3, 8, 15, 0, tzinfo=timezone.utc)
        assert add_business_days(friday, 1, NEW_YORK) == datetime(2024, 3, 11, 14, 0, tzinfo=timezone.utc)

    def test_saturday_start(self):
        saturday = datetime(2024, 3, 9, 15, 0, tzinfo=timezone.utc)
        assert add_business_days(saturday, 1, NEW_YORK).astimezone(NEW_YORK).weekday() == 0

    def test_backoff_schedule_length_matches_attempts(self):
        assert len(BACKOFF_SECONDS) == MAX_FIRE_ATTEMPTS


class TestArming:
    @pytest.mark.asyncio
    async def test_entering_stage_arms_timer(self, engine):
        await deal_at_needs_info(engine)
        timer = await only_timer(engine, "deal-1", "needs-info")
        assert timer.kind == "reminder-sequence"
        assert timer.status == TIMER_ARMED
        assert timer.armed_at == START
        assert timer.fires_at == NEED_INFO_DUE

    @pytest.mark.asyncio
    async def test_stages_without_timers_arm_nothing(self, engine):
        await engine.create_entity("cust-1", "offboarding")
        assert await engine.list_timers("cust-1") == []

    @pytest.mark.asyncio
    async def test_revert_rearms_target_stage(self, engine, clock):
        await deal_at_needs_info(engine)
        clock.advance(days=1)
        await engine.advance("deal-1", "needs-info")
        assert (await only_timer(engine, "deal-1", "needs-info")).status == TIMER_CANCELLED

        await engine.revert("deal-1", "needs-info", "customer went quiet")

        timer = await only_timer(engine, "deal-1", "needs-info")
        assert timer.status == TIMER_ARMED
        assert timer.cancelled_at is None
        assert timer.armed_at == clock.now
        assert timer.fires_at == add_business_days(clock.now, 3, NEW_YORK)


class TestFiring:
    @pytest.mark.asyncio
    async def test_advance_before_expiry_cancels(self, engine, scheduler, sink, clock):
        await deal_at_needs_info(engine)
        clock.advance(days=1)
        await engine.advance("deal-1", "needs-info")

        result = await scheduler.tick(NEED_INFO_DUE + timedelta(hours=1))

        assert result["claimed"] == 0
        assert sink.calls == []
        timer = await only_timer(engine, "deal-1", "needs-info")
        assert timer.status == TIMER_CANCELLED
        assert timer.cancelled_at == clock.now

    @pytest.mark.asyncio
    async def test_not_due_yet(self, engine, scheduler, sink):
        await deal_at_needs_info(engine)
        result = await scheduler.tick(NEED_INFO_DUE - timedelta(seconds=1))
        assert result == {"claimed": 0, "fired": 0, "failed": 0, "skipped": 0}
        assert sink.calls == []

    @pytest.mark.asyncio
    async def test_due_timer_enrolls_then_exit_unenrolls(self, engine, scheduler, sink, clock):
        await deal_at_needs_info(engine)
        clock.set(NEED_INFO_DUE)

        result = await scheduler.tick(clock.now)

        assert result == {"claimed": 1, "fired": 1, "failed": 0, "skipped": 0}
        assert sink.ops("enroll") == [("enroll", "deal-1", "need-info", None)]
        timer = await only_timer(engine, "deal-1", "needs-info")
        assert timer.status == TIMER_FIRED
        assert timer.fired_count == 1

        clock.advance(hours=2)
        await engine.advance("deal-1", "needs-info")
        await scheduler.drain()

        assert sink.ops("unenroll") == [("unenroll", "deal-1", "need-info", None)]

    @pytest.mark.asyncio
    async def test_recurring_follow_up_stops_at_max_fires(self, engine, scheduler, sink, clock):
        await engine.create_entity("lead-1", SALES_LEAD)
        await walk_to(engine, "lead-1", "proposal-decision")

        expected = [
            datetime(2024, 3, 6, 15, 0, tzinfo=timezone.utc),
            datetime(2024, 3, 8, 15, 0, tzinfo=timezone.utc),
            datetime(2024, 3, 12, 14, 0, tzinfo=timezone.utc),
        ]
        for due in expected:
            timer = await only_timer(engine, "lead-1", "proposal-decision")
            assert timer.fires_at == due
            clock.set(due)
            assert (await scheduler.tick(clock.now))["fired"] == 1

        timer = await only_timer(engine, "lead-1", "proposal-decision")
        assert timer.status == TIMER_FIRED
        assert timer.fired_count == 3
        assert (await scheduler.tick(clock.now + timedelta(days=30)))["claimed"] == 0

        sends = sink.ops("send")
        assert [s[2] for s in sends] == ["proposal-follow-up"] * 3
        assert sends[0][3]["stage_id"] == "proposal-decision"

    @pytest.mark.asyncio
    async def test_entity_moved_without_cancel_is_skipped(self, engine, scheduler, store, sink):
        await deal_at_needs_info(engine)
        # another writer decided the deal without touching its timers
        entity = await store.get("deal-1")
        entity.outcome = "lost"
        await store.upsert(entity, entity.version)

        result = await scheduler.tick(NEED_INFO_DUE)

        assert result["skipped"] == 1
        assert sink.calls == []
        assert (await only_timer(engine, "deal-1", "needs-info")).status == TIMER_CANCELLED


class TestFailures:
    @pytest.mark.asyncio
    async def test_failure_retries_with_backoff(self, engine, scheduler, sink):
        await deal_at_needs_info(engine)
        sink.fail_times = 1

        assert (await scheduler.tick(NEED_INFO_DUE))["failed"] == 1
        timer = await only_timer(engine, "deal-1", "needs-info")
        assert timer.status == TIMER_ARMED
        assert timer.attempts == 1
        assert "boom" in timer.last_error
        assert timer.fires_at == NEED_INFO_DUE + timedelta(seconds=30)

        assert (await scheduler.tick(NEED_INFO_DUE + timedelta(seconds=29)))["claimed"] == 0
        assert (await scheduler.tick(NEED_INFO_DUE + timedelta(seconds=30)))["fired"] == 1

        timer = await only_timer(engine, "deal-1", "needs-info")
        assert timer.status == TIMER_FIRED
        assert timer.attempts == 0
        assert timer.last_error is None

    @pytest.mark.asyncio
    async def test_dead_after_max_attempts(self, engine, scheduler, sink):
        await deal_at_needs_info(engine)
        sink.fail_all = True

        for _ in range(MAX_FIRE_ATTEMPTS):
            timer = await only_timer(engine, "deal-1", "needs-info")
            assert (await scheduler.tick(timer.fires_at))["failed"] == 1

        timer = await only_timer(engine, "deal-1", "needs-info")
        assert timer.status == TIMER_DEAD
        assert timer.attempts == MAX_FIRE_ATTEMPTS
        assert (await scheduler.tick(timer.fires_at + timedelta(days=1)))["claimed"] == 0
        # the entity itself is untouched
        assert (await engine.get_entity("deal-1")).current_stage_id == "needs-info"

    @pytest.mark.asyncio
    async def test_one_failure_does_not_block_other_entities(self, engine, scheduler, sink):
        await deal_at_needs_info(engine, "deal-1")
        await deal_at_needs_info(engine, "deal-2")
        sink.fail_times = 1

        result = await scheduler.tick(NEED_INFO_DUE)

        assert result == {"claimed": 2, "fired": 1, "failed": 1, "skipped": 0}


class BlockingSink(RecordingSink):
    """Holds enroll calls open until released."""

    def __init__(self) -> None:
        super().__init__()
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def enroll_in_sequence(self, entity_id, sequence):
        self.calls.append(("enroll", entity_id, sequence, None))
        self.started.set()
        await self.release.wait()
        return {"success": True}


@pytest.mark.asyncio
async def test_exit_during_fire_cancels_without_rearm(store, clock):
    sink = BlockingSink()
    services = build_services(store, sink, clock=clock, business_timezone="America/New_York")
    engine, scheduler = services.engine, services.scheduler
    await deal_at_needs_info(engine)
    clock.set(NEED_INFO_DUE)

    tick = asyncio.ensure_future(scheduler.tick(clock.now))
    await sink.started.wait()

    # the sink call runs outside the entity lock, so the user is not held up
    entity = await engine.advance("deal-1", "needs-info")
    assert entity.current_stage_id == "gl-review"

    sink.release.set()
    result = await tick
    await scheduler.drain()

    assert result["fired"] == 1
    timer = await only_timer(engine, "deal-1", "needs-info")
    assert timer.status == TIMER_CANCELLED
    assert timer.fired_count == 1
    assert sink.ops("unenroll") == [("unenroll", "deal-1", "need-info", None)]


class FailingBlockingSink(BlockingSink):
    async def enroll_in_sequence(self, entity_id, sequence):
        await super().enroll_in_sequence(entity_id, sequence)
        return {"success": False, "error": "boom"}


async def leave_and_return_mid_fire(sink, store, clock):
    services = build_services(store, sink, clock=clock, business_timezone="America/New_York")
    engine, scheduler = services.engine, services.scheduler
    await deal_at_needs_info(engine)
    clock.set(NEED_INFO_DUE)

    tick = asyncio.ensure_future(scheduler.tick(clock.now))
    await sink.started.wait()

    await engine.advance("deal-1", "needs-info")
    entity = await engine.revert("deal-1", "needs-info")
    assert entity.current_stage_id == "needs-info"

    sink.release.set()
    result = await tick
    await scheduler.drain()
    return engine, result


@pytest.mark.asyncio
async def test_late_fire_leaves_rearmed_timer_alone(store, clock):
    sink = BlockingSink()
    engine, result = await leave_and_return_mid_fire(sink, store, clock)

    assert result["fired"] == 1
    timer = await only_timer(engine, "deal-1", "needs-info")
    assert timer.status == TIMER_ARMED
    assert timer.fired_count == 0
    assert timer.armed_at == NEED_INFO_DUE
    assert timer.fires_at == datetime(2024, 3, 12, 14, 0, tzinfo=timezone.utc)
    # the enrollment from the earlier stay is withdrawn
    assert sink.ops("unenroll") == [("unenroll", "deal-1", "need-info", None)]


@pytest.mark.asyncio
async def test_late_failure_leaves_rearmed_timer_alone(store, clock):
    sink = FailingBlockingSink()
    engine, result = await leave_and_return_mid_fire(sink, store, clock)

    assert result["failed"] == 1
    timer = await only_timer(engine, "deal-1", "needs-info")
    assert timer.status == TIMER_ARMED
    assert timer.attempts == 0
    assert timer.last_error is None
    assert timer.fires_at == datetime(2024, 3, 12, 14, 0, tzinfo=timezone.utc)
