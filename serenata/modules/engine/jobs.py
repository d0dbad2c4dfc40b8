"""
Job pipeline base: select → check → claim → process → commit.

Every stage polls one status value. A job is claimed with a compare-and-swap on
its version (taking a lease) before any side effect, and the result is committed
only while the lease is still ours. A crashed worker's lease simply expires and
the job becomes selectable again, so delivery stays at-least-once.
"""

import logging
import os
import socket
from datetime import datetime, timedelta

from serenata.clock import Clock, utcnow
from serenata.config import Settings
from serenata.models.jobs import Job, JobKind
from serenata.modules.store.base import LeadStore

logger = logging.getLogger(__name__)

ERROR_STATUS = "error"


def worker_id(stage: str) -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{stage}"


class JobStage:
    kind: JobKind
    name: str
    select_status: str
    # Status written by the claim itself, when the stage moves the job on claim.
    claim_status: str | None = None

    def __init__(self, settings: Settings, store: LeadStore, clock: Clock = utcnow, owner: str | None = None):
        self.settings = settings
        self.store = store
        self.clock = clock
        self.owner = owner or worker_id(self.name)

    async def tick(self) -> int:
        """Run one polling pass. Returns how many jobs this pass advanced.

        Pages through the status oldest first until batch_size jobs have passed
        `ready`, so jobs that are skipped or not yet due never hold back newer ones.
        """
        now = self.clock()
        limit = max(self.settings.batch_size, 1)
        taken = 0
        advanced = 0
        after = None
        while taken < limit:
            jobs = await self.store.find_jobs(self.kind, self.select_status, now, limit=limit, after=after)
            for job in jobs:
                if taken >= limit:
                    break
                try:
                    if not await self.ready(job, now):
                        continue
                    taken += 1
                    if await self.run(job, now):
                        advanced += 1
                except Exception:
                    logger.exception("[%s] %s job %s failed", self.name, self.kind, job.id)
            if len(jobs) < limit:
                break
            after = (jobs[-1].created_at, jobs[-1].id)
        if advanced:
            logger.info("[%s] advanced %d %s job(s)", self.name, advanced, self.kind)
        return advanced

    async def handle(self, job: Job, now: datetime) -> bool:
        if not await self.ready(job, now):
            return False
        return await self.run(job, now)

    async def run(self, job: Job, now: datetime) -> bool:
        """Claim, process and commit a job that passed `ready`."""
        claimed = await self.claim(job, now)
        if claimed is None:
            return False

        try:
            fields = await self.process(claimed, now)
        except Exception as e:
            await self.store.update_job(self.kind, claimed, self.owner, self.failure_fields(claimed, now, e))
            raise

        committed = await self.store.update_job(self.kind, claimed, self.owner, fields)
        return committed is not None

    async def claim(self, job: Job, now: datetime, status: str | None = None) -> Job | None:
        lease_until = now + timedelta(seconds=self.settings.lease_seconds)
        claimed = await self.store.claim_job(
            self.kind, job, self.owner, lease_until, status=status or self.claim_status,
        )
        if claimed is None:
            logger.info("[%s] %s job %s already claimed elsewhere", self.name, self.kind, job.id)
        return claimed

    async def ready(self, job: Job, now: datetime) -> bool:
        """Checks on the unclaimed snapshot (cooldowns, required fields)."""
        return True

    async def process(self, job: Job, now: datetime) -> dict:
        """Do the stage's work on a claimed job; return the fields to commit."""
        raise NotImplementedError

    def failure_fields(self, job: Job, now: datetime, error: Exception) -> dict:
        """Default: keep the status so the next tick retries; just record the error."""
        return {"error_message": str(error)}

    def retry_fields(self, job: Job, now: datetime, error: Exception) -> dict:
        """Exponential backoff; a job that used up max_attempts moves to error."""
        attempts = job.attempts + 1
        delay = min(
            self.settings.retry_backoff_seconds * 2 ** (attempts - 1),
            self.settings.retry_backoff_max_seconds,
        )
        fields = {
            "attempts": attempts,
            "next_attempt_at": now + timedelta(seconds=delay),
            "error_message": str(error),
        }
        if self.settings.max_attempts and attempts >= self.settings.max_attempts:
            logger.error(
                "[%s] %s job %s gave up after %d attempts: %s",
                self.name, self.kind, job.id, attempts, error,
            )
            fields["status"] = ERROR_STATUS
        return fields

    async def reject_incomplete(self, job: Job, now: datetime, reason: str) -> bool:
        """Apply the incomplete-job policy. Always returns False (not ready)."""
        if self.settings.incomplete_job_policy != "error":
            logger.warning("[%s] skipping %s job %s: %s", self.name, self.kind, job.id, reason)
            return False

        logger.error("[%s] failing %s job %s: %s", self.name, self.kind, job.id, reason)
        claimed = await self.claim(job, now)
        if claimed is not None:
            await self.store.update_job(
                self.kind, claimed, self.owner, {"status": ERROR_STATUS, "error_message": reason},
            )
        return False


def cooldown_elapsed(since: datetime | None, now: datetime, minutes: int) -> bool:
    return since is not None and now >= since + timedelta(minutes=minutes)
