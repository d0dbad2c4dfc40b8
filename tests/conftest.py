"""
Shared fixtures: an in-memory LeadStore, a recording WhatsApp provider, and
fakes for Claude, the music API, blob storage and ffmpeg.
"""

from datetime import datetime, timedelta, timezone
from pathlib import Path
from uuid import uuid4

import pytest

from serenata.config import Settings
from serenata.errors import DuplicateLead, GenerationError, SendError
from serenata.models.jobs import Job, LyricsJob, MusicJob
from serenata.models.lead import ActiveSequence, Lead, Message
from serenata.models.sequence import SequenceDefinition
from serenata.modules.whatsapp.providers import meta
from serenata.modules.whatsapp.sender import OutboundChannel

T0 = datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


class InMemoryStore:
    """Dict-backed LeadStore with the same claim/lease semantics as PostgresStore."""

    def __init__(self):
        self.leads: dict[str, Lead] = {}
        self.messages: dict[str, list[Message]] = {}
        self.sequences: dict[str, SequenceDefinition] = {}
        self.app_config: dict = {}
        self.jobs: dict[str, dict[str, Job]] = {"lyrics": {}, "music": {}}

    # --- Leads ---

    async def get_lead(self, lead_id):
        lead = self.leads.get(lead_id)
        return lead.model_copy(deep=True) if lead else None

    async def find_lead_by_phone(self, phone):
        for lead in self.leads.values():
            if lead.phone == phone:
                return lead.model_copy(deep=True)
        return None

    async def create_lead(self, lead):
        if any(l.phone == lead.phone for l in self.leads.values()):
            raise DuplicateLead(lead.phone)
        lead_id = uuid4().hex
        self.leads[lead_id] = lead.model_copy(update={"id": lead_id}, deep=True)
        return lead_id

    async def register_inbound(self, lead_id, at):
        lead = self.leads[lead_id]
        lead.unread_count += 1
        lead.last_message_at = at

    async def touch_lead(self, lead_id, at):
        self.leads[lead_id].last_message_at = at

    async def find_leads_with_active_sequences(self, limit=None, after=None):
        found = sorted(
            (l for l in self.leads.values() if l.active_sequences), key=lambda l: (l.created_at, l.id),
        )
        if after is not None:
            found = [l for l in found if (l.created_at, l.id) > after]
        found = found[:limit] if limit else found
        return [l.model_copy(deep=True) for l in found]

    async def advance_sequence(self, lead_id, sequence_id, expected_index, new_index, completed):
        for seq in self.leads[lead_id].active_sequences:
            if seq.id == sequence_id and seq.step_index == expected_index and not seq.completed:
                seq.step_index = new_index
                seq.completed = completed
                return True
        return False

    async def prune_completed_sequences(self, lead_id):
        lead = self.leads[lead_id]
        lead.active_sequences = [s for s in lead.active_sequences if not s.completed]

    async def add_label_and_sequence(self, lead_id, label, sequence):
        lead = self.leads[lead_id]
        if label not in lead.labels:
            lead.labels.append(label)
        lead.active_sequences.append(sequence.model_copy())

    # --- Messages ---

    async def append_message(self, lead_id, message):
        message_id = uuid4().hex
        self.messages.setdefault(lead_id, []).append(message.model_copy(update={"id": message_id}))
        return message_id

    async def list_messages(self, lead_id, limit=50):
        return list(self.messages.get(lead_id, []))[-limit:]

    # --- Sequence definitions / config ---

    async def get_sequence(self, trigger):
        return self.sequences.get(trigger)

    async def get_app_config(self):
        return dict(self.app_config)

    # --- Jobs ---

    def add_job(self, kind, job):
        job = job.model_copy(update={"id": job.id or uuid4().hex})
        self.jobs[kind][job.id] = job
        return job.id

    def job(self, kind, job_id):
        return self.jobs[kind][job_id]

    async def get_job(self, kind, job_id):
        job = self.jobs[kind].get(job_id)
        return job.model_copy() if job else None

    async def find_jobs(self, kind, status, now, limit=None, after=None):
        found = [
            j for j in self.jobs[kind].values()
            if j.status == status
            and (j.lease_expires_at is None or j.lease_expires_at <= now)
            and (j.next_attempt_at is None or j.next_attempt_at <= now)
        ]
        found.sort(key=lambda j: (j.created_at, j.id))
        if after is not None:
            found = [j for j in found if (j.created_at, j.id) > after]
        found = found[:limit] if limit else found
        return [j.model_copy() for j in found]

    async def find_music_job_by_task(self, task_id):
        for job in self.jobs["music"].values():
            if job.task_id == task_id:
                return job.model_copy()
        return None

    async def claim_job(self, kind, job, owner, lease_until, status=None):
        stored = self.jobs[kind].get(job.id)
        if stored is None or stored.version != job.version:
            return None
        stored.version += 1
        stored.lease_owner = owner
        stored.lease_expires_at = lease_until
        if status is not None:
            stored.status = status
        return stored.model_copy()

    async def update_job(self, kind, job, owner, fields):
        stored = self.jobs[kind].get(job.id)
        if stored is None or stored.lease_owner != owner:
            return None
        for key, value in fields.items():
            setattr(stored, key, value)
        stored.version += 1
        stored.lease_owner = None
        stored.lease_expires_at = None
        return stored.model_copy()


class FakeProvider:
    """Records outbound sends; parsing/verification use the real Meta provider."""

    parse_webhook = staticmethod(meta.parse_webhook)
    verify_webhook = staticmethod(meta.verify_webhook)

    def __init__(self):
        self.sent: list[tuple[str, str, str]] = []
        self.fail_on: set[str] = set()
        self.fail_after: int | None = None
        self.downloads: list[tuple[str | None, str | None]] = []

    def _record(self, kind, to, payload):
        if kind in self.fail_on or (self.fail_after is not None and len(self.sent) >= self.fail_after):
            raise SendError(f"{kind} to {to} rejected")
        self.sent.append((kind, to, payload))
        return {"messages": [{"id": f"wamid.{len(self.sent)}"}]}

    async def send_text(self, settings, to, text):
        return self._record("text", to, text)

    async def send_audio(self, settings, to, media):
        return self._record("audio", to, media)

    async def send_video(self, settings, to, media, caption=None):
        return self._record("video", to, media)

    async def download_media(self, settings, media_id=None, media_url=None):
        self.downloads.append((media_id, media_url))
        return b"\xff\xd8media", "image/jpeg"

    async def get_phone_info(self, settings):
        return {"phone": "+52 55 0000 0000"}


class FakeGenerator:
    """Returns queued replies in order; an Exception in the queue is raised instead."""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls: list[tuple[str, str]] = []

    async def complete(self, system_role, prompt, max_tokens=None):
        self.calls.append((system_role, prompt))
        reply = self.replies.pop(0) if self.replies else ""
        if isinstance(reply, Exception):
            raise reply
        return reply


class FakeMusicClient:
    def __init__(self, task_id="task-123", error: Exception | None = None):
        self.task_id = task_id
        self.error = error
        self.submissions: list[dict] = []

    async def submit(self, title, style_prompt, lyrics, callback_url):
        self.submissions.append(
            {"title": title, "style_prompt": style_prompt, "lyrics": lyrics, "callback_url": callback_url}
        )
        if self.error:
            raise self.error
        return self.task_id


class FakeStorage:
    def __init__(self, fail_download: bool = False):
        self.uploads: dict[str, bytes] = {}
        self.fail_download = fail_download

    async def upload_bytes(self, data, key, content_type="application/octet-stream"):
        self.uploads[key] = data
        return f"https://cdn.test/{key}"

    async def upload_file(self, path, key, content_type):
        return await self.upload_bytes(Path(path).read_bytes(), key, content_type)

    async def download(self, url):
        if self.fail_download:
            raise GenerationError(f"download failed: {url}")
        return b"ID3full-track"


class FakeTranscoder:
    def __init__(self, work_dir: Path):
        self.work_dir = work_dir
        self.calls: list[tuple] = []

    def _write(self, name, data):
        path = self.work_dir / f"{uuid4().hex}-{name}"
        path.write_bytes(data)
        return path

    async def transcode(self, input_path, codec="aac"):
        self.calls.append(("transcode", codec))
        return self._write("audio.m4a", b"m4a")

    async def clip(self, input_path, start, duration):
        self.calls.append(("clip", start, duration))
        return self._write("clip.mp3", b"clip")

    async def overlay(self, clip_path, watermark_path, offset_seconds=1):
        self.calls.append(("overlay", str(watermark_path), offset_seconds))
        return self._write("preview.mp3", b"preview")


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        whatsapp_verify_token="secreto",
        music_callback_url="https://serenata.test/music/callback",
        intro_audio_url="https://cdn.test/intro.m4a",
        intro_video_url="https://cdn.test/intro.mp4",
        work_dir=str(tmp_path / "work"),
        watermark_path=str(tmp_path / "watermark.mp3"),
        max_attempts=3,
        retry_backoff_seconds=60,
        retry_backoff_max_seconds=600,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def channel(settings, store, provider, clock):
    return OutboundChannel(settings, store, provider, clock)


@pytest.fixture
def storage():
    return FakeStorage()


@pytest.fixture
def transcoder(tmp_path):
    work = tmp_path / "ffmpeg"
    work.mkdir()
    return FakeTranscoder(work)


def make_lead(store: InMemoryStore, phone="525512345678", name="Ana María López", sequences=None, created_at=T0) -> str:
    lead = Lead(
        phone=phone,
        name=name,
        created_at=created_at,
        labels=[s.trigger for s in sequences or []],
        active_sequences=sequences or [],
    )
    lead_id = uuid4().hex
    store.leads[lead_id] = lead.model_copy(update={"id": lead_id})
    return lead_id


def lyrics_job(**kwargs) -> LyricsJob:
    data = {
        "created_at": T0,
        "purpose": "aniversario",
        "subject_name": "Carlos",
        "anecdotes": "Nos conocimos en un concierto en Guadalajara",
        "requester_name": "Ana María",
    }
    data.update(kwargs)
    return LyricsJob(**data)


def music_job(**kwargs) -> MusicJob:
    data = {
        "created_at": T0,
        "purpose": "cumpleaños de mi mamá",
        "subject_name": "Rosa",
        "anecdotes": "Siempre canta boleros cuando cocina",
        "artist": "Luis Miguel",
        "genre": "bolero",
        "voice_type": "masculina",
    }
    data.update(kwargs)
    return MusicJob(**data)


def new_sequence(trigger="NuevoLead", start=T0, index=0) -> ActiveSequence:
    return ActiveSequence(trigger=trigger, start_time=start, step_index=index)
