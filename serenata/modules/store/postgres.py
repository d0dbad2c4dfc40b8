"""
Postgres implementation of LeadStore (asyncpg).
Leads, their sequence instances, message log, sequence definitions and jobs.
"""

import json
import logging
from datetime import datetime
from uuid import UUID

import asyncpg

from serenata.errors import DuplicateLead
from serenata.models.jobs import Job, JobKind, LyricsJob, MusicJob
from serenata.models.lead import ActiveSequence, Lead, Message
from serenata.models.sequence import SequenceDefinition

logger = logging.getLogger(__name__)

JOB_TABLES: dict[str, tuple[str, type[Job]]] = {
    "lyrics": ("lyrics_jobs", LyricsJob),
    "music": ("music_jobs", MusicJob),
}

# Managed by claim_job/update_job themselves
RESERVED_JOB_FIELDS = {"id", "version", "lease_owner", "lease_expires_at"}

LEAD_COLUMNS = "id, phone, name, source, status, labels, unread_count, created_at, last_message_at"


def _clean(row: asyncpg.Record) -> dict:
    return {k: (str(v) if isinstance(v, UUID) else v) for k, v in dict(row).items()}


class PostgresStore:
    def __init__(self, pool: asyncpg.Pool):
        self.pool = pool

    # --- Leads ---

    async def _attach_sequences(self, rows: list[asyncpg.Record]) -> list[Lead]:
        if not rows:
            return []
        lead_ids = [r["id"] for r in rows]
        seq_rows = await self.pool.fetch(
            """
            SELECT id, lead_id, trigger, start_time, step_index, completed
            FROM lead_sequences
            WHERE lead_id = ANY($1::uuid[])
            ORDER BY start_time, id
            """,
            lead_ids,
        )
        by_lead: dict[str, list[ActiveSequence]] = {}
        for s in seq_rows:
            data = _clean(s)
            by_lead.setdefault(data.pop("lead_id"), []).append(ActiveSequence(**data))

        leads = []
        for r in rows:
            data = _clean(r)
            data["labels"] = list(data.get("labels") or [])
            leads.append(Lead(**data, active_sequences=by_lead.get(data["id"], [])))
        return leads

    async def get_lead(self, lead_id: str) -> Lead | None:
        row = await self.pool.fetchrow(f"SELECT {LEAD_COLUMNS} FROM leads WHERE id = $1", lead_id)
        leads = await self._attach_sequences([row] if row else [])
        return leads[0] if leads else None

    async def find_lead_by_phone(self, phone: str) -> Lead | None:
        row = await self.pool.fetchrow(f"SELECT {LEAD_COLUMNS} FROM leads WHERE phone = $1 LIMIT 1", phone)
        leads = await self._attach_sequences([row] if row else [])
        return leads[0] if leads else None

    async def create_lead(self, lead: Lead) -> str:
        try:
            return await self._insert_lead(lead)
        except asyncpg.UniqueViolationError as e:
            raise DuplicateLead(lead.phone) from e

    async def _insert_lead(self, lead: Lead) -> str:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    INSERT INTO leads (phone, name, source, status, labels, unread_count, created_at, last_message_at)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                    RETURNING id
                    """,
                    lead.phone, lead.name, lead.source, lead.status, lead.labels,
                    lead.unread_count, lead.created_at, lead.last_message_at,
                )
                lead_id = str(row["id"])
                for seq in lead.active_sequences:
                    await conn.execute(
                        """
                        INSERT INTO lead_sequences (id, lead_id, trigger, start_time, step_index, completed)
                        VALUES ($1, $2, $3, $4, $5, $6)
                        """,
                        seq.id, lead_id, seq.trigger, seq.start_time, seq.step_index, seq.completed,
                    )
        return lead_id

    async def register_inbound(self, lead_id: str, at: datetime) -> None:
        await self.pool.execute(
            "UPDATE leads SET unread_count = unread_count + 1, last_message_at = $2 WHERE id = $1",
            lead_id, at,
        )

    async def touch_lead(self, lead_id: str, at: datetime) -> None:
        await self.pool.execute("UPDATE leads SET last_message_at = $2 WHERE id = $1", lead_id, at)

    async def find_leads_with_active_sequences(
        self,
        limit: int | None = None,
        after: tuple[datetime, str] | None = None,
    ) -> list[Lead]:
        after_created, after_id = after or (None, None)
        rows = await self.pool.fetch(
            f"""
            SELECT {LEAD_COLUMNS} FROM leads l
            WHERE EXISTS (SELECT 1 FROM lead_sequences s WHERE s.lead_id = l.id)
              AND ($2::timestamptz IS NULL OR (l.created_at, l.id) > ($2::timestamptz, $3::uuid))
            ORDER BY l.created_at, l.id
            LIMIT $1
            """,
            limit, after_created, after_id,
        )
        return await self._attach_sequences(rows)

    async def advance_sequence(
        self,
        lead_id: str,
        sequence_id: str,
        expected_index: int,
        new_index: int,
        completed: bool,
    ) -> bool:
        result = await self.pool.execute(
            """
            UPDATE lead_sequences SET step_index = $4, completed = $5
            WHERE id = $1 AND lead_id = $2 AND step_index = $3 AND completed = FALSE
            """,
            sequence_id, lead_id, expected_index, new_index, completed,
        )
        return result.endswith(" 1")

    async def prune_completed_sequences(self, lead_id: str) -> None:
        await self.pool.execute(
            "DELETE FROM lead_sequences WHERE lead_id = $1 AND completed = TRUE", lead_id,
        )

    async def add_label_and_sequence(self, lead_id: str, label: str, sequence: ActiveSequence) -> None:
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                await conn.execute(
                    """
                    UPDATE leads SET labels = array_append(labels, $2)
                    WHERE id = $1 AND NOT ($2 = ANY(labels))
                    """,
                    lead_id, label,
                )
                await conn.execute(
                    """
                    INSERT INTO lead_sequences (id, lead_id, trigger, start_time, step_index, completed)
                    VALUES ($1, $2, $3, $4, $5, $6)
                    """,
                    sequence.id, lead_id, sequence.trigger, sequence.start_time,
                    sequence.step_index, sequence.completed,
                )

    # --- Messages ---

    async def append_message(self, lead_id: str, message: Message) -> str:
        row = await self.pool.fetchrow(
            """
            INSERT INTO messages (lead_id, content, media_type, media_url, sender, timestamp)
            VALUES ($1, $2, $3, $4, $5, $6)
            RETURNING id
            """,
            lead_id, message.content, message.media_type, message.media_url,
            message.sender, message.timestamp,
        )
        return str(row["id"])

    async def list_messages(self, lead_id: str, limit: int = 50) -> list[Message]:
        rows = await self.pool.fetch(
            """
            SELECT id, content, media_type, media_url, sender, timestamp
            FROM messages WHERE lead_id = $1
            ORDER BY timestamp DESC
            LIMIT $2
            """,
            lead_id, limit,
        )
        return [Message(**_clean(r)) for r in reversed(rows)]

    # --- Sequence definitions / config ---

    async def get_sequence(self, trigger: str) -> SequenceDefinition | None:
        row = await self.pool.fetchrow("SELECT trigger, steps FROM sequences WHERE trigger = $1", trigger)
        if not row:
            return None
        steps = row["steps"]
        if isinstance(steps, str):
            steps = json.loads(steps)
        return SequenceDefinition(trigger=row["trigger"], steps=steps)

    async def get_app_config(self) -> dict:
        rows = await self.pool.fetch("SELECT key, value FROM app_config")
        config = {}
        for r in rows:
            value = r["value"]
            config[r["key"]] = json.loads(value) if isinstance(value, str) else value
        return config

    # --- Jobs ---

    def _job(self, kind: JobKind, row: asyncpg.Record | None) -> Job | None:
        if not row:
            return None
        _, model = JOB_TABLES[kind]
        return model(**_clean(row))

    async def get_job(self, kind: JobKind, job_id: str) -> Job | None:
        table, _ = JOB_TABLES[kind]
        row = await self.pool.fetchrow(f"SELECT * FROM {table} WHERE id = $1", job_id)
        return self._job(kind, row)

    async def find_jobs(
        self,
        kind: JobKind,
        status: str,
        now: datetime,
        limit: int | None = None,
        after: tuple[datetime, str] | None = None,
    ) -> list[Job]:
        table, _ = JOB_TABLES[kind]
        after_created, after_id = after or (None, None)
        rows = await self.pool.fetch(
            f"""
            SELECT * FROM {table}
            WHERE status = $1
              AND (lease_expires_at IS NULL OR lease_expires_at <= $2)
              AND (next_attempt_at IS NULL OR next_attempt_at <= $2)
              AND ($4::timestamptz IS NULL OR (created_at, id) > ($4::timestamptz, $5::uuid))
            ORDER BY created_at, id
            LIMIT $3
            """,
            status, now, limit, after_created, after_id,
        )
        return [self._job(kind, r) for r in rows]

    async def find_music_job_by_task(self, task_id: str) -> MusicJob | None:
        row = await self.pool.fetchrow(
            "SELECT * FROM music_jobs WHERE task_id = $1 ORDER BY created_at DESC LIMIT 1", task_id,
        )
        return self._job("music", row)

    async def claim_job(
        self,
        kind: JobKind,
        job: Job,
        owner: str,
        lease_until: datetime,
        status: str | None = None,
    ) -> Job | None:
        table, _ = JOB_TABLES[kind]
        row = await self.pool.fetchrow(
            f"""
            UPDATE {table}
            SET version = version + 1,
                lease_owner = $3,
                lease_expires_at = $4,
                status = COALESCE($5, status)
            WHERE id = $1 AND version = $2
            RETURNING *
            """,
            job.id, job.version, owner, lease_until, status,
        )
        return self._job(kind, row)

    async def update_job(self, kind: JobKind, job: Job, owner: str, fields: dict) -> Job | None:
        table, model = JOB_TABLES[kind]
        unknown = (set(fields) - set(model.model_fields)) | (set(fields) & RESERVED_JOB_FIELDS)
        if unknown:
            raise ValueError(f"Unknown {kind} job fields: {', '.join(sorted(unknown))}")

        assignments = []
        values = [job.id, owner]
        for i, (column, value) in enumerate(fields.items(), start=3):
            assignments.append(f"{column} = ${i}")
            values.append(value)
        assignments += ["version = version + 1", "lease_owner = NULL", "lease_expires_at = NULL"]

        row = await self.pool.fetchrow(
            f"""
            UPDATE {table} SET {", ".join(assignments)}
            WHERE id = $1 AND lease_owner = $2
            RETURNING *
            """,
            *values,
        )
        if row is None:
            logger.warning("Lost lease on %s job %s (owner=%s)", kind, job.id, owner)
        return self._job(kind, row)
