"""
Component wiring: every collaborator is built once from one Settings instance.
"""

import logging
from dataclasses import dataclass

from serenata.clock import Clock, utcnow
from serenata.config import Settings
from serenata.modules.engine.scheduler import SequenceEngine
from serenata.modules.leads.ingest import LeadIngest
from serenata.modules.llm.text import TextGenerator
from serenata.modules.lyrics.pipeline import LyricsDeliveryStage, LyricsGenerationStage
from serenata.modules.media.transcoder import MediaTranscoder
from serenata.modules.music.client import MusicClient
from serenata.modules.music.pipeline import (
    FinalizeTrackStage,
    MusicDeliveryStage,
    MusicLyricsStage,
    StylePromptStage,
    SubmissionStage,
)
from serenata.modules.sequences.advancer import SequenceAdvancer
from serenata.modules.storage import BlobStorage
from serenata.modules.store.base import LeadStore
from serenata.modules.whatsapp.sender import OutboundChannel, get_provider

logger = logging.getLogger(__name__)

FUNNEL_MEDIA_SETTINGS = ("intro_audio_url", "intro_video_url")


def missing_funnel_media(settings: Settings) -> list[str]:
    """Intro media settings left empty. The lyrics burst skips those parts."""
    missing = [name for name in FUNNEL_MEDIA_SETTINGS if not getattr(settings, name)]
    for name in missing:
        logger.warning("%s is not set: lyrics deliveries will go out without it", name.upper())
    return missing


@dataclass
class Services:
    settings: Settings
    store: LeadStore
    provider: object
    channel: OutboundChannel
    storage: BlobStorage
    transcoder: MediaTranscoder
    ingest: LeadIngest
    finalizer: FinalizeTrackStage
    engine: SequenceEngine


def build_services(
    settings: Settings,
    store: LeadStore,
    *,
    provider=None,
    generator: TextGenerator | None = None,
    music_client: MusicClient | None = None,
    storage: BlobStorage | None = None,
    transcoder: MediaTranscoder | None = None,
    clock: Clock = utcnow,
) -> Services:
    missing_funnel_media(settings)
    provider = provider or get_provider(settings)
    generator = generator or TextGenerator(settings)
    music_client = music_client or MusicClient(settings)
    storage = storage or BlobStorage(settings)
    transcoder = transcoder or MediaTranscoder(settings)

    channel = OutboundChannel(settings, store, provider, clock)
    finalizer = FinalizeTrackStage(settings, store, storage, transcoder, clock)

    stages = [
        SequenceAdvancer(settings, store, channel, clock),
        LyricsGenerationStage(settings, store, generator, clock),
        LyricsDeliveryStage(settings, store, channel, clock),
        MusicLyricsStage(settings, store, generator, clock),
        StylePromptStage(settings, store, generator, clock),
        SubmissionStage(settings, store, music_client, clock),
        finalizer,
        MusicDeliveryStage(settings, store, channel, clock),
    ]

    return Services(
        settings=settings,
        store=store,
        provider=provider,
        channel=channel,
        storage=storage,
        transcoder=transcoder,
        ingest=LeadIngest(settings, store, storage, provider, clock),
        finalizer=finalizer,
        engine=SequenceEngine(settings, stages),
    )
