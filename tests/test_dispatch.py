from __future__ import annotations

import asyncio

from fakes import FakeRest, Recorder, member
from server.dispatch import DispatchLoop, DmJob, JobStatus
from server.recipients import RecipientResolver, RecipientScope


def _loop(rest, recorder, cancel_event=None) -> DispatchLoop:
    return DispatchLoop(
        rest,
        recorder,
        resolver=RecipientResolver(rest, page_delay=0),
        cancel_event=cancel_event,
    )


def _custom_job(ids, **kw) -> DmJob:
    kw.setdefault("delay_seconds", 0)
    kw.setdefault("rest_minutes", 0)
    return DmJob(message="hello", scope=RecipientScope.CUSTOM, custom_recipients=list(ids), **kw)


def test_forbidden_channel_counts_failure_and_continues() -> None:
    rest = FakeRest(dm_forbidden={"2"})
    rec = Recorder()

    final = asyncio.run(_loop(rest, rec).run(_custom_job(["1", "2", "3"])))

    assert final.status is JobStatus.COMPLETED
    assert (final.sent, final.failed, final.total) == (2, 1, 3)
    assert rest.dm_calls == ["1", "2", "3"]
    assert [r for r, _ in rest.sent] == ["1", "3"]


def test_send_failure_after_channel_created_is_counted() -> None:
    rest = FakeRest(send_fail={"1"})
    rec = Recorder()
    final = asyncio.run(_loop(rest, rec).run(_custom_job(["1", "2"])))
    assert (final.sent, final.failed) == (1, 1)


def test_zero_recipients_complete_without_sending() -> None:
    rest = FakeRest()
    rec = Recorder()

    final = asyncio.run(_loop(rest, rec).run(_custom_job([])))

    assert rec.statuses() == ["starting", "completed"]
    assert final.total == 0
    assert final.total_batches == 0
    assert rest.dm_calls == []


def test_three_batches_rest_twice() -> None:
    rest = FakeRest()
    rec = Recorder()

    final = asyncio.run(_loop(rest, rec).run(_custom_job([str(i) for i in range(5)], batch_size=2)))

    statuses = rec.statuses()
    assert statuses.count("resting") == 2
    assert statuses.count("batch_completed") == 3
    assert statuses[0] == "starting"
    assert statuses[-1] == "completed"
    # no rest after the final batch
    assert statuses[-2] == "batch_completed"
    assert final.total_batches == 3

    completions = [e for e in rec.events if e.status is JobStatus.BATCH_COMPLETED]
    assert [(e.batch_sent, e.batch_failed) for e in completions] == [(2, 0), (2, 0), (1, 0)]


def test_counts_never_exceed_total() -> None:
    rest = FakeRest(dm_forbidden={"1", "4"})
    rec = Recorder()

    final = asyncio.run(_loop(rest, rec).run(_custom_job([str(i) for i in range(7)], batch_size=3)))

    for e in rec.events:
        assert e.sent + e.failed <= e.total
    assert final.sent + final.failed == final.total == 7
    sending = [e for e in rec.events if e.status is JobStatus.SENDING]
    assert sending[0].batch_progress == 0
    assert max(e.batch_progress for e in sending) == 100


def test_all_scope_resolves_members_and_skips_bots() -> None:
    rest = FakeRest({"g1": [member(1), member(2, bot=True), member(3)]})
    rec = Recorder()
    job = DmJob(message="hi", scope=RecipientScope.ALL, guild_id="g1", delay_seconds=0)

    final = asyncio.run(_loop(rest, rec).run(job))

    assert final.total == 2
    assert rest.dm_calls == ["1", "3"]


def test_resolution_failure_emits_error() -> None:
    rest = FakeRest({"g1": [member(i) for i in range(1, 1500)]}, page_errors={1})
    rec = Recorder()
    job = DmJob(message="hi", scope=RecipientScope.ALL, guild_id="g1")

    final = asyncio.run(_loop(rest, rec).run(job))

    assert final.status is JobStatus.ERROR
    assert "Failed to fetch members" in final.error
    assert rec.statuses() == ["error"]
    assert rest.dm_calls == []


def test_cancel_stops_before_next_recipient() -> None:
    async def scenario():
        cancel = asyncio.Event()
        rest = FakeRest()
        rec = Recorder()

        async def publish(event):
            await rec.publish(event)
            if event.status is JobStatus.SENDING and event.sent == 1:
                cancel.set()

        loop = DispatchLoop(
            rest, publish, resolver=RecipientResolver(rest, page_delay=0), cancel_event=cancel
        )
        final = await loop.run(_custom_job(["1", "2", "3"], delay_seconds=30))
        return rest, rec, final

    rest, rec, final = asyncio.run(scenario())

    assert final.status is JobStatus.CANCELLED
    assert rest.dm_calls == ["1"]
    assert (final.sent, final.failed, final.total) == (1, 0, 3)


def test_events_carry_job_id_and_camel_case_keys() -> None:
    rec = Recorder()
    job = _custom_job(["1"])
    asyncio.run(_loop(FakeRest(), rec).run(job))

    payload = rec.events[1].to_dict()
    assert payload["jobId"] == job.id
    assert payload["status"] == "sending"
    assert payload["currentBatch"] == 1
    assert payload["totalBatches"] == 1
    assert payload["batchProgress"] == 0
    assert "error" not in payload


class TimedLoop(DispatchLoop):
    """Records pause lengths instead of sleeping."""

    def __init__(self, *args, on_pause=None, **kw):
        super().__init__(*args, **kw)
        self.pauses = []
        self.on_pause = on_pause

    async def _pause(self, seconds: float) -> None:
        self.pauses.append(seconds)
        if self.on_pause is not None:
            self.on_pause(len(self.pauses))


def test_delay_after_every_recipient_and_rest_between_batches() -> None:
    rest = FakeRest()
    loop = TimedLoop(rest, Recorder(), resolver=RecipientResolver(rest, page_delay=0))
    job = _custom_job([str(i) for i in range(5)], batch_size=2, delay_seconds=1.5, rest_minutes=2)

    final = asyncio.run(loop.run(job))

    assert final.status is JobStatus.COMPLETED
    assert loop.pauses == [1.5, 1.5, 120, 1.5, 1.5, 120, 1.5]


def test_single_batch_never_rests() -> None:
    rest = FakeRest()
    loop = TimedLoop(rest, Recorder(), resolver=RecipientResolver(rest, page_delay=0))
    asyncio.run(loop.run(_custom_job(["1", "2"], batch_size=5, delay_seconds=2, rest_minutes=10)))
    assert loop.pauses == [2, 2]


def test_cancel_during_trailing_delay_skips_rest() -> None:
    async def scenario():
        cancel = asyncio.Event()
        rest = FakeRest()
        rec = Recorder()

        def on_pause(n):
            # second pause is the delay after the last recipient of batch one
            if n == 2:
                cancel.set()

        loop = TimedLoop(
            rest,
            rec,
            resolver=RecipientResolver(rest, page_delay=0),
            cancel_event=cancel,
            on_pause=on_pause,
        )
        final = await loop.run(
            _custom_job(["1", "2", "3", "4"], batch_size=2, delay_seconds=1, rest_minutes=1)
        )
        return rest, rec, loop, final

    rest, rec, loop, final = asyncio.run(scenario())

    assert final.status is JobStatus.CANCELLED
    assert "resting" not in rec.statuses()
    assert rec.statuses()[-2:] == ["batch_completed", "cancelled"]
    assert loop.pauses == [1, 1]
    assert rest.dm_calls == ["1", "2"]
