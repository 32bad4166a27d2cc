# =============================================================================
#  botdash
#  Copyright (C) 2025 botdash contributors
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations

import asyncio
import contextlib
import logging
import math
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Iterator, List, Optional, Sequence, Tuple

from server.recipients import RecipientResolver, RecipientScope

logger = logging.getLogger("botdash.dispatch")


class JobStatus(str, Enum):
    STARTING = "starting"
    SENDING = "sending"
    RESTING = "resting"
    BATCH_COMPLETED = "batch_completed"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset(
    {JobStatus.COMPLETED, JobStatus.ERROR, JobStatus.CANCELLED}
)


def percent(done: int, total: int) -> int:
    if total <= 0:
        return 0
    return min(100, max(0, (done * 100) // total))


@dataclass(frozen=True)
class ProgressEvent:
    sent: int
    failed: int
    total: int
    status: JobStatus
    current_batch: int = 0
    total_batches: int = 0
    batch_sent: Optional[int] = None
    batch_failed: Optional[int] = None
    batch_progress: Optional[int] = None
    error: Optional[str] = None
    job_id: Optional[str] = None

    def to_dict(self) -> dict:
        out = {
            "sent": self.sent,
            "failed": self.failed,
            "total": self.total,
            "status": self.status.value,
            "currentBatch": self.current_batch,
            "totalBatches": self.total_batches,
        }
        optional = {
            "batchSent": self.batch_sent,
            "batchFailed": self.batch_failed,
            "batchProgress": self.batch_progress,
            "error": self.error,
            "jobId": self.job_id,
        }
        out.update({k: v for k, v in optional.items() if v is not None})
        return out


class BatchPlan:
    """Fixed-size, in-order partition of a recipient sequence."""

    def __init__(self, recipients: Sequence[str], batch_size: int):
        if int(batch_size) < 1:
            raise ValueError("batch_size must be >= 1")
        self.recipients: Tuple[str, ...] = tuple(recipients)
        self.batch_size = int(batch_size)

    @property
    def count(self) -> int:
        return math.ceil(len(self.recipients) / self.batch_size)

    def __len__(self) -> int:
        return self.count

    def batch(self, index: int) -> Tuple[str, ...]:
        if index < 0 or index >= self.count:
            raise IndexError(f"batch {index} out of range (0..{self.count - 1})")
        start = index * self.batch_size
        return self.recipients[start : min(start + self.batch_size, len(self.recipients))]

    def __iter__(self) -> Iterator[Tuple[str, ...]]:
        for i in range(self.count):
            yield self.batch(i)


@dataclass
class DmJob:
    message: str
    scope: RecipientScope
    guild_id: Optional[str] = None
    custom_recipients: List[str] = field(default_factory=list)
    delay_seconds: float = 1.0
    rest_minutes: float = 0.0
    batch_size: int = 100
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])

    # mutated only by the DispatchLoop running this job
    status: JobStatus = JobStatus.STARTING
    sent: int = 0
    failed: int = 0
    total: int = 0
    current_batch: int = 0
    total_batches: int = 0

    def snapshot(self, status: JobStatus, **extra) -> ProgressEvent:
        self.status = status
        return ProgressEvent(
            sent=self.sent,
            failed=self.failed,
            total=self.total,
            status=status,
            current_batch=self.current_batch,
            total_batches=self.total_batches,
            job_id=self.id,
            **extra,
        )

    def settings(self) -> dict:
        return {
            "delay": self.delay_seconds,
            "batchSize": self.batch_size,
            "restTime": self.rest_minutes,
        }


Publish = Callable[[ProgressEvent], Awaitable[None]]


class DispatchLoop:
    """
    Drains one DmJob batch by batch:

    STARTING -> SENDING -> (RESTING <-> SENDING)* -> COMPLETED,
    ERROR from anywhere, CANCELLED when the cancel event is set.

    Sends are strictly sequential. A failed recipient is counted and
    skipped; only failures outside the per-recipient send end the job.
    """

    def __init__(
        self,
        rest,
        publish: Publish,
        *,
        resolver: Optional[RecipientResolver] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ):
        self.rest = rest
        self.publish = publish
        self.resolver = resolver or RecipientResolver(rest)
        self.cancel_event = cancel_event

    @property
    def cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    async def _emit(self, job: DmJob, status: JobStatus, **extra) -> ProgressEvent:
        event = job.snapshot(status, **extra)
        await self.publish(event)
        return event

    async def _pause(self, seconds: float) -> None:
        """Sleep, returning early if the job is cancelled."""
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        if self.cancel_event is None:
            await asyncio.sleep(seconds)
            return
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self.cancel_event.wait(), timeout=seconds)

    async def _deliver(self, job: DmJob, recipient_id: str) -> bool:
        try:
            channel = await self.rest.create_dm(recipient_id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.info("[❌] Failed to create DM channel for user %s: %s", recipient_id, e)
            return False

        channel_id = (channel or {}).get("id")
        if not channel_id:
            logger.info("[❌] No DM channel returned for user %s", recipient_id)
            return False

        try:
            await self.rest.send_message(channel_id, job.message)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.info("[❌] Failed to send DM to user %s: %s", recipient_id, e)
            return False

        logger.debug("[✅] DM sent to user %s", recipient_id)
        return True

    async def run(self, job: DmJob) -> ProgressEvent:
        try:
            recipients = await self.resolver.resolve(
                job.scope, guild_id=job.guild_id, explicit=job.custom_recipients
            )
            plan = BatchPlan(recipients, job.batch_size)
            job.total = len(plan.recipients)
            job.total_batches = plan.count
            logger.info(
                "[📨] Job %s: %d recipients in %d batches of %d",
                job.id, job.total, job.total_batches, job.batch_size,
                extra={"job_id": job.id, "guild_id": job.guild_id},
            )
            await self._emit(job, JobStatus.STARTING)

            for index, batch in enumerate(plan):
                if self.cancelled:
                    return await self._cancel(job)

                job.current_batch = index + 1
                await self._emit(job, JobStatus.SENDING, batch_progress=0)
                logger.info(
                    "[🔄] Job %s: batch %d/%d with %d users",
                    job.id, job.current_batch, job.total_batches, len(batch),
                )

                batch_sent = batch_failed = 0
                for done, recipient_id in enumerate(batch, start=1):
                    if self.cancelled:
                        return await self._cancel(job)

                    if await self._deliver(job, recipient_id):
                        job.sent += 1
                        batch_sent += 1
                    else:
                        job.failed += 1
                        batch_failed += 1

                    await self._emit(
                        job, JobStatus.SENDING, batch_progress=percent(done, len(batch))
                    )
                    await self._pause(job.delay_seconds)

                await self._emit(
                    job,
                    JobStatus.BATCH_COMPLETED,
                    batch_sent=batch_sent,
                    batch_failed=batch_failed,
                )
                logger.info(
                    "[✅] Job %s: batch %d/%d completed - sent=%d failed=%d",
                    job.id, job.current_batch, job.total_batches, batch_sent, batch_failed,
                )

                if index < plan.count - 1:
                    if self.cancelled:
                        return await self._cancel(job)
                    await self._emit(job, JobStatus.RESTING)
                    logger.info(
                        "[⏳] Job %s: resting %.2f minutes before next batch",
                        job.id, job.rest_minutes,
                    )
                    await self._pause(job.rest_minutes * 60)

            event = await self._emit(job, JobStatus.COMPLETED)
            logger.info(
                "[✅] Job %s completed - sent=%d failed=%d total=%d",
                job.id, job.sent, job.failed, job.total,
            )
            return event

        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("[⛔] Job %s failed", job.id)
            return await self._emit(job, JobStatus.ERROR, error=str(e) or repr(e))

    async def _cancel(self, job: DmJob) -> ProgressEvent:
        logger.info(
            "[🛑] Job %s cancelled - sent=%d failed=%d total=%d",
            job.id, job.sent, job.failed, job.total,
        )
        return await self._emit(job, JobStatus.CANCELLED)
