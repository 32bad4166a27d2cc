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
from typing import Callable, Optional

from common.config import Config
from server.dispatch import (
    DispatchLoop,
    DmJob,
    JobStatus,
    ProgressEvent,
    TERMINAL_STATUSES,
)
from server.recipients import RecipientResolver

logger = logging.getLogger("botdash.jobs")


class JobSupervisor:
    """
    Owns the single in-flight bulk DM job.

    `try_start` is a mutex without a wait queue: it refuses while a job runs
    and otherwise launches the DispatchLoop as a background task. The
    in-flight flag is cleared as soon as the job publishes a terminal event,
    and otherwise in a `finally`, whatever way the loop ends.
    """

    def __init__(
        self,
        publisher,
        *,
        config: Optional[Config] = None,
        resolver_factory: Optional[Callable[[object], RecipientResolver]] = None,
    ):
        self.publisher = publisher
        self.config = config or Config()
        self._resolver_factory = resolver_factory or self._default_resolver
        self._in_flight = False
        self._job: Optional[DmJob] = None
        self._task: Optional[asyncio.Task] = None
        self._cancel: Optional[asyncio.Event] = None
        self.last_event: Optional[ProgressEvent] = None

    def _default_resolver(self, rest) -> RecipientResolver:
        return RecipientResolver(
            rest,
            page_limit=self.config.MEMBER_PAGE_LIMIT,
            max_pages=self.config.MEMBER_MAX_PAGES,
            page_delay=self.config.MEMBER_PAGE_DELAY,
        )

    @property
    def running(self) -> bool:
        return self._in_flight

    @property
    def current(self) -> Optional[DmJob]:
        return self._job

    def try_start(self, job: DmJob, rest) -> bool:
        if self._in_flight:
            logger.warning(
                "[⚠️] Rejected job %s: job %s is still running",
                job.id, self._job.id if self._job else "?",
            )
            return False

        self._in_flight = True
        self._job = job
        self._cancel = asyncio.Event()
        self.last_event = None
        loop = DispatchLoop(
            rest,
            self._publish,
            resolver=self._resolver_factory(rest),
            cancel_event=self._cancel,
        )
        self._task = asyncio.create_task(self._run(loop, job), name=f"dm-job-{job.id}")
        logger.info("[📨] Job %s accepted (scope=%s)", job.id, job.scope.value)
        return True

    async def _run(self, loop: DispatchLoop, job: DmJob) -> None:
        try:
            await loop.run(job)
        except asyncio.CancelledError:
            logger.info("Job %s task cancelled", job.id)
            raise
        except Exception as e:
            logger.exception("[⛔] Job %s crashed outside the dispatch loop", job.id)
            if job.status not in TERMINAL_STATUSES:
                await self._publish(job.snapshot(JobStatus.ERROR, error=str(e) or repr(e)))
        finally:
            # a newer job may already own the flag once a terminal event went out
            if self._job is job:
                self._in_flight = False
            logger.debug("Job %s released in-flight flag", job.id)

    async def _publish(self, event: ProgressEvent) -> None:
        self.last_event = event
        job = self._job
        if event.status in TERMINAL_STATUSES and job is not None and event.job_id == job.id:
            self._in_flight = False
        try:
            await self.publisher.publish(event)
        except Exception:
            logger.debug("progress publish failed", exc_info=True)

    def cancel(self) -> bool:
        if not self._in_flight or self._cancel is None:
            return False
        self._cancel.set()
        logger.info("[🛑] Cancel requested for job %s", self._job.id if self._job else "?")
        return True

    async def wait(self) -> None:
        """Wait for the current job task (if any) to finish."""
        task = self._task
        if task is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await task

    async def shutdown(self) -> None:
        if self._cancel is not None:
            self._cancel.set()
        task = self._task
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task

    def status(self) -> dict:
        return {
            "running": self._in_flight,
            "jobId": self._job.id if self._job else None,
            "settings": self._job.settings() if self._job else None,
            "last": self.last_event.to_dict() if self.last_event else None,
        }
