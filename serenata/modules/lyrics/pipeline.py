"""
Lyrics pipelines.

pending_lyrics --(Claude writes the lyrics)--> pending_send --(15 min cooldown, burst)--> sent
"""

import logging
from datetime import datetime

from serenata.clock import Clock, utcnow
from serenata.config import Settings
from serenata.errors import GenerationError
from serenata.models.jobs import LyricsJob, LyricsStatus
from serenata.models.lead import ActiveSequence
from serenata.modules.engine.jobs import JobStage, cooldown_elapsed
from serenata.modules.llm.text import TextGenerator
from serenata.modules.lyrics.prompts import LYRICS_SYSTEM_ROLE, build_lyrics_prompt, lyrics_greeting
from serenata.modules.store.base import LeadStore
from serenata.modules.whatsapp.phone import is_valid_phone
from serenata.modules.whatsapp.sender import OutboundChannel

logger = logging.getLogger(__name__)


async def write_lyrics(generator: TextGenerator, purpose: str, subject_name: str, anecdotes: str) -> str:
    """Shared by the lyrics and music pipelines. Raises GenerationError on empty output."""
    lyrics = await generator.complete(LYRICS_SYSTEM_ROLE, build_lyrics_prompt(purpose, subject_name, anecdotes))
    if not lyrics:
        raise GenerationError("Claude returned empty lyrics")
    return lyrics


class LyricsGenerationStage(JobStage):
    kind = "lyrics"
    name = "lyrics-generate"
    select_status = LyricsStatus.PENDING_LYRICS.value

    def __init__(self, settings: Settings, store: LeadStore, generator: TextGenerator, clock: Clock = utcnow, owner: str | None = None):
        super().__init__(settings, store, clock, owner)
        self.generator = generator

    async def process(self, job: LyricsJob, now: datetime) -> dict:
        lyrics = await write_lyrics(self.generator, job.purpose, job.subject_name, job.anecdotes)
        logger.info("[%s] lyrics ready for job %s (%d chars)", self.name, job.id, len(lyrics))
        return {
            "lyrics": lyrics,
            "generated_at": now,
            "status": LyricsStatus.PENDING_SEND.value,
            "attempts": 0,
            "next_attempt_at": None,
            "error_message": None,
        }

    def failure_fields(self, job: LyricsJob, now: datetime, error: Exception) -> dict:
        return self.retry_fields(job, now, error)


class LyricsDeliveryStage(JobStage):
    kind = "lyrics"
    name = "lyrics-send"
    select_status = LyricsStatus.PENDING_SEND.value

    def __init__(self, settings: Settings, store: LeadStore, channel: OutboundChannel, clock: Clock = utcnow, owner: str | None = None):
        super().__init__(settings, store, clock, owner)
        self.channel = channel

    async def ready(self, job: LyricsJob, now: datetime) -> bool:
        if not job.lead_id or not job.lyrics or not job.generated_at:
            return await self.reject_incomplete(job, now, "missing lead, lyrics or generation time")

        if not cooldown_elapsed(job.generated_at, now, self.settings.lyrics_cooldown_minutes):
            return False

        lead = await self.store.get_lead(job.lead_id)
        if lead is None:
            return await self.reject_incomplete(job, now, f"lead {job.lead_id} not found")
        if not is_valid_phone(lead.phone):
            return await self.reject_incomplete(job, now, f"invalid phone {lead.phone!r}")

        return True

    async def process(self, job: LyricsJob, now: datetime) -> dict:
        lead = await self.store.get_lead(job.lead_id)
        phone = lead.phone
        settings = self.settings

        await self.channel.send_text(phone, lyrics_greeting(job.requester_name, job.subject_name), job.lead_id)
        await self.channel.send_text(phone, job.lyrics, job.lead_id)
        if settings.intro_audio_url:
            await self.channel.send_audio(phone, settings.intro_audio_url, job.lead_id)
        if settings.intro_video_url:
            await self.channel.send_video(phone, settings.intro_video_url, job.lead_id)
        await self.channel.send_text(phone, settings.promo_text, job.lead_id)

        await self.store.add_label_and_sequence(
            job.lead_id,
            settings.lyrics_completion_label,
            ActiveSequence(trigger=settings.lyrics_completion_trigger, start_time=now),
        )
        logger.info("[%s] lyrics job %s delivered to %s", self.name, job.id, phone)
        return {"status": LyricsStatus.SENT.value, "sent_at": now, "error_message": None}
