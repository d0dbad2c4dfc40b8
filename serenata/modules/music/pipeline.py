"""
Music pipeline.

pending_lyrics → pending_prompt → pending_generation → generating → pending_send → sent
                                  (submit failure / retries exhausted) ↘ error

Stage A writes lyrics, Stage B writes a style prompt, Stage C submits the song
(claiming the job straight into `generating`), the finalize stage turns the
provider's finished track into a durable copy plus a watermarked preview, and
Stage D delivers lyrics + preview after the cooldown.

The finalize step runs from two producers: the provider callback and the
polling tick (for callbacks whose processing failed). Both go through
FinalizeTrackStage.handle, guarded by the same claim.
"""

import logging
from datetime import datetime
from pathlib import Path
from uuid import uuid4

from serenata.clock import Clock, utcnow
from serenata.config import Settings
from serenata.errors import GenerationError
from serenata.models.jobs import MusicJob, MusicStatus
from serenata.models.lead import ActiveSequence
from serenata.modules.engine.jobs import ERROR_STATUS, JobStage, cooldown_elapsed
from serenata.modules.llm.text import TextGenerator
from serenata.modules.lyrics.pipeline import write_lyrics
from serenata.modules.lyrics.prompts import (
    STYLE_MAX_CHARS,
    STYLE_REFINE_PROMPT,
    STYLE_SYSTEM_ROLE,
    build_style_draft,
    clean_style_prompt,
    song_delivery_intro,
    song_title,
)
from serenata.modules.media.transcoder import MediaTranscoder
from serenata.modules.music.client import MusicClient
from serenata.modules.storage import BlobStorage
from serenata.modules.store.base import LeadStore
from serenata.modules.whatsapp.phone import is_valid_phone
from serenata.modules.whatsapp.sender import OutboundChannel

logger = logging.getLogger(__name__)


class MusicStage(JobStage):
    kind = "music"


class MusicLyricsStage(MusicStage):
    """Stage A."""
    name = "music-lyrics"
    select_status = MusicStatus.PENDING_LYRICS.value

    def __init__(self, settings: Settings, store: LeadStore, generator: TextGenerator, clock: Clock = utcnow, owner: str | None = None):
        super().__init__(settings, store, clock, owner)
        self.generator = generator

    async def process(self, job: MusicJob, now: datetime) -> dict:
        lyrics = await write_lyrics(self.generator, job.purpose, job.subject_name, job.anecdotes)
        return {
            "lyrics": lyrics,
            "status": MusicStatus.PENDING_PROMPT.value,
            "attempts": 0,
            "next_attempt_at": None,
            "error_message": None,
        }

    def failure_fields(self, job: MusicJob, now: datetime, error: Exception) -> dict:
        return self.retry_fields(job, now, error)


class StylePromptStage(MusicStage):
    """Stage B: artist/genre/voice → short comma-separated style terms, no artist names."""
    name = "music-style"
    select_status = MusicStatus.PENDING_PROMPT.value

    def __init__(self, settings: Settings, store: LeadStore, generator: TextGenerator, clock: Clock = utcnow, owner: str | None = None):
        super().__init__(settings, store, clock, owner)
        self.generator = generator

    async def process(self, job: MusicJob, now: datetime) -> dict:
        draft = await self.generator.complete(
            STYLE_SYSTEM_ROLE, build_style_draft(job.artist, job.genre, job.voice_type),
        )
        if not draft:
            raise GenerationError("Claude returned an empty style description")

        refined = await self.generator.complete(
            STYLE_SYSTEM_ROLE, STYLE_REFINE_PROMPT.format(max_chars=STYLE_MAX_CHARS, draft=draft),
        )
        style = clean_style_prompt(refined) if refined else ""
        if not style:
            raise GenerationError("Claude returned an empty style prompt")

        logger.info("[%s] style for job %s: %s", self.name, job.id, style)
        return {
            "style_prompt": style,
            "status": MusicStatus.PENDING_GENERATION.value,
            "attempts": 0,
            "next_attempt_at": None,
            "error_message": None,
        }

    def failure_fields(self, job: MusicJob, now: datetime, error: Exception) -> dict:
        return self.retry_fields(job, now, error)


class SubmissionStage(MusicStage):
    """Stage C. The claim moves the job to generating before the API call; failures are terminal."""
    name = "music-submit"
    select_status = MusicStatus.PENDING_GENERATION.value
    claim_status = MusicStatus.GENERATING.value

    def __init__(self, settings: Settings, store: LeadStore, client: MusicClient, clock: Clock = utcnow, owner: str | None = None):
        super().__init__(settings, store, clock, owner)
        self.client = client

    async def ready(self, job: MusicJob, now: datetime) -> bool:
        if not job.lyrics or not job.style_prompt:
            return await self.reject_incomplete(job, now, "missing lyrics or style prompt")
        return True

    async def process(self, job: MusicJob, now: datetime) -> dict:
        task_id = await self.client.submit(
            title=song_title(job.purpose, job.subject_name),
            style_prompt=job.style_prompt,
            lyrics=job.lyrics,
            callback_url=self.settings.music_callback_url,
        )
        return {"task_id": task_id, "error_message": None}

    def failure_fields(self, job: MusicJob, now: datetime, error: Exception) -> dict:
        return {"status": ERROR_STATUS, "error_message": str(error)}


class FinalizeTrackStage(MusicStage):
    """generating → pending_send once the provider's audio URL is known."""
    name = "music-finalize"
    select_status = MusicStatus.GENERATING.value

    def __init__(
        self,
        settings: Settings,
        store: LeadStore,
        storage: BlobStorage,
        transcoder: MediaTranscoder,
        clock: Clock = utcnow,
        owner: str | None = None,
    ):
        super().__init__(settings, store, clock, owner)
        self.storage = storage
        self.transcoder = transcoder

    async def ready(self, job: MusicJob, now: datetime) -> bool:
        return bool(job.audio_source_url)

    async def process(self, job: MusicJob, now: datetime) -> dict:
        settings = self.settings
        work_dir = Path(settings.work_dir)
        work_dir.mkdir(parents=True, exist_ok=True)
        source = work_dir / f"{uuid4().hex}.mp3"
        temp_files = [source]

        try:
            data = await self.storage.download(job.audio_source_url)
            source.write_bytes(data)
            full_url = await self.storage.upload_bytes(data, f"songs/{job.id}/full.mp3", "audio/mpeg")

            clip = await self.transcoder.clip(source, 0, settings.preview_seconds)
            temp_files.append(clip)
            preview = await self.transcoder.overlay(clip, settings.watermark_path, settings.watermark_offset_seconds)
            temp_files.append(preview)
            clip_url = await self.storage.upload_file(preview, f"songs/{job.id}/preview.mp3", "audio/mpeg")
        finally:
            for path in temp_files:
                Path(path).unlink(missing_ok=True)

        logger.info("[%s] job %s ready: full=%s preview=%s", self.name, job.id, full_url, clip_url)
        return {
            "full_track_url": full_url,
            "clip_url": clip_url,
            "status": MusicStatus.PENDING_SEND.value,
            "attempts": 0,
            "next_attempt_at": None,
            "error_message": None,
        }

    def failure_fields(self, job: MusicJob, now: datetime, error: Exception) -> dict:
        return self.retry_fields(job, now, error)

    async def handle_callback(self, task_id: str | None, audio_url: str | None, error: str | None) -> bool:
        """Entry point for the provider callback. Safe to call repeatedly for the same task."""
        if not task_id:
            logger.warning("[%s] callback without task id", self.name)
            return False

        job = await self.store.find_music_job_by_task(task_id)
        if job is None:
            logger.warning("[%s] callback for unknown task %s", self.name, task_id)
            return False
        if job.status != MusicStatus.GENERATING.value:
            logger.info("[%s] task %s already handled (status=%s)", self.name, task_id, job.status)
            return False

        now = self.clock()
        if error:
            claimed = await self.claim(job, now)
            if claimed is None:
                return False
            logger.error("[%s] generation failed for job %s: %s", self.name, job.id, error)
            await self.store.update_job(
                self.kind, claimed, self.owner, {"status": ERROR_STATUS, "error_message": error},
            )
            return False

        if not audio_url:
            return False

        if job.audio_source_url != audio_url:
            claimed = await self.claim(job, now)
            if claimed is None:
                return False
            job = await self.store.update_job(self.kind, claimed, self.owner, {"audio_source_url": audio_url})
            if job is None:
                return False

        return await self.handle(job, now)


class MusicDeliveryStage(MusicStage):
    """Stage D: lyrics as text + preview clip as audio, after the cooldown from job creation."""
    name = "music-send"
    select_status = MusicStatus.PENDING_SEND.value

    def __init__(self, settings: Settings, store: LeadStore, channel: OutboundChannel, clock: Clock = utcnow, owner: str | None = None):
        super().__init__(settings, store, clock, owner)
        self.channel = channel

    async def _phone(self, job: MusicJob) -> str | None:
        if job.lead_phone:
            return job.lead_phone
        if job.lead_id:
            lead = await self.store.get_lead(job.lead_id)
            return lead.phone if lead else None
        return None

    async def ready(self, job: MusicJob, now: datetime) -> bool:
        if not cooldown_elapsed(job.created_at, now, self.settings.music_cooldown_minutes):
            return False

        phone = await self._phone(job)
        if not phone or not job.lyrics or not job.clip_url:
            return await self.reject_incomplete(job, now, "missing phone, lyrics or preview clip")
        if not is_valid_phone(phone):
            return await self.reject_incomplete(job, now, f"invalid phone {phone!r}")
        return True

    async def process(self, job: MusicJob, now: datetime) -> dict:
        phone = await self._phone(job)
        await self.channel.send_text(phone, f"{song_delivery_intro(job.subject_name)}\n\n{job.lyrics}", job.lead_id)
        await self.channel.send_audio(phone, job.clip_url, job.lead_id)

        if job.lead_id:
            await self.store.add_label_and_sequence(
                job.lead_id,
                self.settings.music_completion_label,
                ActiveSequence(trigger=self.settings.music_completion_trigger, start_time=now),
            )
        logger.info("[%s] song job %s delivered to %s", self.name, job.id, phone)
        return {"status": MusicStatus.SENT.value, "sent_at": now, "error_message": None}
