"""
Base interface for WhatsApp providers.
Both Meta and Twilio implementations conform to this interface.
The rest of the app works with IncomingMessage and never touches provider-specific formats.
"""

from dataclasses import dataclass, field
from typing import Protocol

from serenata.config import Settings


@dataclass
class IncomingMessage:
    """Normalized message format, provider-agnostic."""
    sender_phone: str
    message_id: str
    message_type: str  # "text", "audio", "image", "document", "video"
    text: str | None = None
    profile_name: str | None = None
    media_url: str | None = None
    media_id: str | None = None
    media_mime_type: str | None = None
    filename: str | None = None
    raw: dict = field(default_factory=dict)


class WhatsAppProvider(Protocol):
    """Interface that both Meta and Twilio providers implement."""

    async def parse_webhook(self, request) -> list[IncomingMessage]:
        """Parse incoming webhook request into normalized messages."""
        ...

    async def verify_webhook(
        self,
        settings: Settings,
        hub_mode: str | None,
        hub_verify_token: str | None,
        hub_challenge: str | None,
    ) -> str | None:
        """Handle webhook verification (GET). Returns challenge string or None."""
        ...

    async def send_text(self, settings: Settings, to: str, text: str) -> dict:
        ...

    async def send_audio(self, settings: Settings, to: str, media: str) -> dict:
        """media is either a public URL or a provider media id."""
        ...

    async def send_video(self, settings: Settings, to: str, media: str, caption: str | None = None) -> dict:
        ...

    async def download_media(
        self,
        settings: Settings,
        media_id: str | None = None,
        media_url: str | None = None,
    ) -> tuple[bytes, str | None]:
        """Download media by ID (Meta) or URL (Twilio). Returns (content, content_type)."""
        ...

    async def get_phone_info(self, settings: Settings) -> dict:
        """Business number currently attached to the account."""
        ...
