"""Twilio WhatsApp Sandbox provider."""

import httpx
from fastapi import Request

from serenata.config import Settings
from serenata.errors import SendError
from serenata.modules.whatsapp.providers.base import IncomingMessage

TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"


def _clean_phone(phone: str) -> str:
    """Strip 'whatsapp:' prefix and '+' from Twilio phone format."""
    return phone.replace("whatsapp:", "").replace("+", "")


async def parse_webhook(request: Request) -> list[IncomingMessage]:
    form = await request.form()
    data = dict(form)

    sender = _clean_phone(data.get("From", ""))
    message_id = data.get("MessageSid", "")
    body = data.get("Body", "")
    profile_name = data.get("ProfileName") or None
    num_media = int(data.get("NumMedia", "0"))

    if num_media > 0:
        media_url = data.get("MediaUrl0", "")
        content_type = data.get("MediaContentType0", "")

        if "audio" in content_type:
            message_type = "audio"
        elif "image" in content_type:
            message_type = "image"
        elif "video" in content_type:
            message_type = "video"
        else:
            message_type = "document"

        return [IncomingMessage(
            sender_phone=sender,
            message_id=message_id,
            message_type=message_type,
            text=body or None,
            profile_name=profile_name,
            media_url=media_url,
            media_mime_type=content_type,
            raw=data,
        )]

    return [IncomingMessage(
        sender_phone=sender,
        message_id=message_id,
        message_type="text",
        text=body,
        profile_name=profile_name,
        raw=data,
    )]


async def verify_webhook(
    settings: Settings,
    hub_mode: str | None,
    hub_verify_token: str | None,
    hub_challenge: str | None,
) -> str | None:
    # Twilio doesn't use GET verification; it validates via signature.
    return None


async def _post_message(settings: Settings, payload: dict) -> dict:
    url = f"{TWILIO_API_BASE}/Accounts/{settings.twilio_account_sid}/Messages.json"
    auth = (settings.twilio_account_sid, settings.twilio_auth_token)
    async with httpx.AsyncClient(timeout=settings.http_timeout_seconds) as client:
        response = await client.post(url, data=payload, auth=auth)
        data = response.json()
    if response.status_code >= 400:
        raise SendError(f"Twilio rejected message: {data.get('message', response.status_code)}", data)
    return data


def _base_payload(settings: Settings, to: str) -> dict:
    return {
        "From": f"whatsapp:{settings.twilio_whatsapp_number}",
        "To": f"whatsapp:+{to}",
    }


async def send_text(settings: Settings, to: str, text: str) -> dict:
    return await _post_message(settings, {**_base_payload(settings, to), "Body": text})


async def send_audio(settings: Settings, to: str, media: str) -> dict:
    return await _post_message(settings, {**_base_payload(settings, to), "Body": "", "MediaUrl": media})


async def send_video(settings: Settings, to: str, media: str, caption: str | None = None) -> dict:
    return await _post_message(
        settings, {**_base_payload(settings, to), "Body": caption or "", "MediaUrl": media},
    )


async def download_media(
    settings: Settings,
    media_id: str | None = None,
    media_url: str | None = None,
) -> tuple[bytes, str | None]:
    """Download media from Twilio. Media URLs are directly accessible with Basic Auth."""
    auth = (settings.twilio_account_sid, settings.twilio_auth_token)

    async with httpx.AsyncClient(timeout=settings.http_timeout_seconds, follow_redirects=True) as client:
        response = await client.get(media_url, auth=auth)
        response.raise_for_status()
        return response.content, response.headers.get("content-type")


async def get_phone_info(settings: Settings) -> dict:
    return {"phone": settings.twilio_whatsapp_number}
