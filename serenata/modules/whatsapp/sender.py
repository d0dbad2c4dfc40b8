"""
Outbound channel: sends WhatsApp messages through the configured provider
(Meta or Twilio) and appends every business message to the lead's log.
"""

import logging

from serenata.clock import Clock, utcnow
from serenata.config import Settings
from serenata.models.lead import Message
from serenata.modules.store.base import LeadStore
from serenata.modules.whatsapp.phone import normalize_phone

logger = logging.getLogger(__name__)


def get_provider(settings: Settings):
    if settings.whatsapp_provider == "twilio":
        from serenata.modules.whatsapp.providers import twilio
        return twilio
    from serenata.modules.whatsapp.providers import meta
    return meta


class OutboundChannel:
    def __init__(self, settings: Settings, store: LeadStore, provider=None, clock: Clock = utcnow):
        self.settings = settings
        self.store = store
        self.provider = provider or get_provider(settings)
        self.clock = clock

    def normalize(self, phone: str) -> str:
        return normalize_phone(phone, self.settings.default_country_code)

    async def send_text(self, phone: str, text: str, lead_id: str | None = None) -> dict:
        to = self.normalize(phone)
        logger.info("Sending text to %s: %s", to, text[:80])
        response = await self.provider.send_text(self.settings, to, text)
        await self._record(to, lead_id, Message(content=text, media_type="text", sender="business", timestamp=self.clock()))
        return response

    async def send_audio(self, phone: str, media: str, lead_id: str | None = None) -> dict:
        to = self.normalize(phone)
        logger.info("Sending audio to %s: %s", to, media)
        response = await self.provider.send_audio(self.settings, to, media)
        await self._record(to, lead_id, Message(media_type="audio", media_url=media, sender="business", timestamp=self.clock()))
        return response

    async def send_video(self, phone: str, media: str, lead_id: str | None = None, caption: str | None = None) -> dict:
        to = self.normalize(phone)
        logger.info("Sending video to %s: %s", to, media)
        response = await self.provider.send_video(self.settings, to, media, caption)
        await self._record(
            to, lead_id,
            Message(content=caption or "", media_type="video", media_url=media, sender="business", timestamp=self.clock()),
        )
        return response

    async def _record(self, to: str, lead_id: str | None, message: Message) -> None:
        if lead_id is None:
            lead = await self.store.find_lead_by_phone(to)
            if lead is None:
                return
            lead_id = lead.id
        await self.store.append_message(lead_id, message)
        await self.store.touch_lead(lead_id, message.timestamp)
