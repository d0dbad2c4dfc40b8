"""
Inbound ingest: turns a WhatsApp message into a lead upsert plus a message-log entry.
New leads start with the default trigger as label and as their first active sequence.
"""

import logging
from datetime import datetime

from serenata.clock import Clock, utcnow
from serenata.config import Settings
from serenata.errors import DuplicateLead
from serenata.models.lead import ActiveSequence, Lead, Message
from serenata.modules.storage import BlobStorage
from serenata.modules.store.base import LeadStore
from serenata.modules.whatsapp.phone import normalize_phone
from serenata.modules.whatsapp.providers.base import IncomingMessage

logger = logging.getLogger(__name__)

MEDIA_TYPES = {
    "image": ("image", "jpg"),
    "document": ("pdf", "pdf"),
    "audio": ("audio", "mp4"),
    "video": ("video", "mp4"),
}


class LeadIngest:
    def __init__(self, settings: Settings, store: LeadStore, storage: BlobStorage, provider, clock: Clock = utcnow):
        self.settings = settings
        self.store = store
        self.storage = storage
        self.provider = provider
        self.clock = clock

    async def ingest(self, msg: IncomingMessage) -> str:
        """Upsert the sender's lead and append the message. Returns the lead id."""
        now = self.clock()
        phone = normalize_phone(msg.sender_phone, self.settings.default_country_code)
        media_type, media_url = await self._store_media(msg)

        lead = await self.store.find_lead_by_phone(phone)
        lead_id = None
        if lead is None:
            try:
                lead_id = await self._create_lead(msg, phone, now)
            except DuplicateLead:
                # Another delivery created it between our lookup and insert
                logger.info("Lead %s created concurrently, registering as inbound", phone)
                lead = await self.store.find_lead_by_phone(phone)
                if lead is None:
                    raise

        if lead_id is None:
            lead_id = lead.id
            await self.store.register_inbound(lead_id, now)

        await self.store.append_message(lead_id, Message(
            content=msg.text or "",
            media_type=media_type,
            media_url=media_url,
            sender="lead",
            timestamp=now,
        ))
        return lead_id

    async def _create_lead(self, msg: IncomingMessage, phone: str, now: datetime) -> str:
        trigger = await self._default_trigger()
        lead_id = await self.store.create_lead(Lead(
            phone=phone,
            name=msg.profile_name or "",
            source="WhatsApp",
            status="nuevo",
            labels=[trigger],
            active_sequences=[ActiveSequence(trigger=trigger, start_time=now)],
            unread_count=1,
            created_at=now,
            last_message_at=now,
        ))
        logger.info("New lead %s (%s) with trigger %s", lead_id, phone, trigger)
        return lead_id

    async def _default_trigger(self) -> str:
        config = await self.store.get_app_config()
        return config.get("defaultTrigger") or self.settings.default_trigger

    async def _store_media(self, msg: IncomingMessage) -> tuple[str | None, str | None]:
        """Copy provider media to our bucket (provider URLs expire). Returns (media_type, url)."""
        if msg.message_type not in MEDIA_TYPES:
            return ("text" if msg.text else None), None

        media_type, ext = MEDIA_TYPES[msg.message_type]
        if not msg.media_id and not msg.media_url:
            return media_type, None

        try:
            content, content_type = await self.provider.download_media(
                self.settings, media_id=msg.media_id, media_url=msg.media_url,
            )
            key = f"chat-media/{msg.media_id or msg.message_id}.{ext}"
            url = await self.storage.upload_bytes(content, key, content_type or msg.media_mime_type or "application/octet-stream")
        except Exception as e:
            logger.exception("Could not store %s media from %s: %s", media_type, msg.sender_phone, e)
            return media_type, None
        return media_type, url
