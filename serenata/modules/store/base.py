"""
Store interface consumed by the webhook ingest and the sequence engine.
The Postgres implementation lives in postgres.py; tests use an in-memory one.
Job status is the scheduling cursor; claims are compare-and-swap on `version`.
"""

from datetime import datetime
from typing import Protocol

from serenata.models.jobs import Job, JobKind, MusicJob
from serenata.models.lead import ActiveSequence, Lead, Message
from serenata.models.sequence import SequenceDefinition


class LeadStore(Protocol):

    # --- Leads ---

    async def get_lead(self, lead_id: str) -> Lead | None:
        ...

    async def find_lead_by_phone(self, phone: str) -> Lead | None:
        ...

    async def create_lead(self, lead: Lead) -> str:
        """Insert a lead with its initial sequences. Returns the generated id.

        Raises DuplicateLead when the phone is already taken.
        """
        ...

    async def register_inbound(self, lead_id: str, at: datetime) -> None:
        """Atomically increment unread_count and set last_message_at."""
        ...

    async def touch_lead(self, lead_id: str, at: datetime) -> None:
        ...

    async def find_leads_with_active_sequences(
        self,
        limit: int | None = None,
        after: tuple[datetime, str] | None = None,
    ) -> list[Lead]:
        """Leads with at least one sequence instance, ordered by (created_at, id).

        `after` is the (created_at, id) of the last lead of the previous page.
        """
        ...

    async def advance_sequence(
        self,
        lead_id: str,
        sequence_id: str,
        expected_index: int,
        new_index: int,
        completed: bool,
    ) -> bool:
        """Move one sequence instance forward only if its index is still expected_index."""
        ...

    async def prune_completed_sequences(self, lead_id: str) -> None:
        ...

    async def add_label_and_sequence(self, lead_id: str, label: str, sequence: ActiveSequence) -> None:
        ...

    # --- Messages ---

    async def append_message(self, lead_id: str, message: Message) -> str:
        ...

    async def list_messages(self, lead_id: str, limit: int = 50) -> list[Message]:
        ...

    # --- Sequence definitions / config ---

    async def get_sequence(self, trigger: str) -> SequenceDefinition | None:
        ...

    async def get_app_config(self) -> dict:
        ...

    # --- Jobs ---

    async def get_job(self, kind: JobKind, job_id: str) -> Job | None:
        ...

    async def find_jobs(
        self,
        kind: JobKind,
        status: str,
        now: datetime,
        limit: int | None = None,
        after: tuple[datetime, str] | None = None,
    ) -> list[Job]:
        """Jobs in `status` with no live lease and no pending backoff, ordered by (created_at, id).

        `after` is the (created_at, id) of the last job of the previous page.
        """
        ...

    async def find_music_job_by_task(self, task_id: str) -> MusicJob | None:
        ...

    async def claim_job(
        self,
        kind: JobKind,
        job: Job,
        owner: str,
        lease_until: datetime,
        status: str | None = None,
    ) -> Job | None:
        """CAS on job.version: take the lease (and optionally move status). None if lost."""
        ...

    async def update_job(self, kind: JobKind, job: Job, owner: str, fields: dict) -> Job | None:
        """Write fields and release the lease, only while `owner` still holds it. None if lost."""
        ...
