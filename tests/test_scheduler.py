import asyncio

from chicken_vault.services.scheduler import AsyncioScheduler, ManualScheduler


def test_manual_scheduler_runs_in_due_order():
    scheduler = ManualScheduler()
    fired = []

    async def mark(label):
        fired.append((label, scheduler.time()))

    async def scenario():
        scheduler.call_later(5, lambda: mark("b"), name="b")
        scheduler.call_later(2, lambda: mark("a"), name="a")
        scheduler.call_later(5, lambda: mark("c"), name="c")
        await scheduler.advance(4)
        assert fired == [("a", 2)]
        await scheduler.advance(1)

    asyncio.run(scenario())
    assert fired == [("a", 2), ("b", 5), ("c", 5)]
    assert scheduler.time() == 5
    assert scheduler.pending() == []


def test_manual_call_every_and_cancel():
    scheduler = ManualScheduler()
    ticks = []

    async def tick():
        ticks.append(scheduler.time())
        if len(ticks) == 3:
            handle.cancel()

    handle = scheduler.call_every(2, tick, name="poll")
    asyncio.run(scheduler.advance(20))

    assert ticks == [2, 4, 6]
    assert handle.cancelled
    assert scheduler.pending() == []


def test_manual_callback_can_schedule_more_work():
    scheduler = ManualScheduler()
    fired = []

    async def first():
        fired.append("first")
        scheduler.call_later(1, second)

    async def second():
        fired.append("second")

    scheduler.call_later(1, first)
    asyncio.run(scheduler.advance(3))
    assert fired == ["first", "second"]


def test_failing_callback_does_not_stop_the_clock():
    scheduler = ManualScheduler()
    fired = []

    async def boom():
        raise RuntimeError("boom")

    async def ok():
        fired.append("ok")

    scheduler.call_later(1, boom)
    scheduler.call_later(2, ok)
    asyncio.run(scheduler.advance(5))
    assert fired == ["ok"]


def test_asyncio_scheduler_call_later_and_cancel():
    fired = []

    async def scenario():
        scheduler = AsyncioScheduler()

        async def mark(label):
            fired.append(label)

        scheduler.call_later(0.01, lambda: mark("kept"))
        dropped = scheduler.call_later(0.01, lambda: mark("dropped"))
        dropped.cancel()
        await asyncio.sleep(0.05)

    asyncio.run(scenario())
    assert fired == ["kept"]


def test_asyncio_call_every_stops_itself():
    ticks = []

    async def scenario():
        scheduler = AsyncioScheduler()

        async def tick():
            ticks.append(1)
            if len(ticks) == 2:
                handle.cancel()

        handle = scheduler.call_every(0.01, tick)
        await asyncio.sleep(0.1)
        return handle

    handle = asyncio.run(scenario())
    assert len(ticks) == 2
    assert handle.cancelled
