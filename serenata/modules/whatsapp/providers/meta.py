"""Meta WhatsApp Cloud API provider."""

import httpx
from fastapi import Request

from serenata.config import Settings
from serenata.errors import SendError
from serenata.modules.whatsapp.providers.base import IncomingMessage

WA_API_BASE = "https://graph.facebook.com/v21.0"

MEDIA_TYPES = ("audio", "image", "document", "video")


async def parse_webhook(request: Request) -> list[IncomingMessage]:
    body = await request.json()
    messages = []

    for entry in body.get("entry", []):
        for change in entry.get("changes", []):
            value = change.get("value", {})
            names = {
                c.get("wa_id"): c.get("profile", {}).get("name")
                for c in value.get("contacts", [])
            }
            for msg in value.get("messages", []):
                message_type = msg.get("type", "text")
                incoming = IncomingMessage(
                    sender_phone=msg.get("from"),
                    message_id=msg.get("id"),
                    message_type=message_type,
                    profile_name=names.get(msg.get("from")),
                    raw=msg,
                )

                if message_type == "text":
                    incoming.text = msg.get("text", {}).get("body")
                elif message_type in MEDIA_TYPES:
                    media = msg.get(message_type, {})
                    incoming.media_id = media.get("id")
                    incoming.media_mime_type = media.get("mime_type")
                    incoming.filename = media.get("filename")
                    incoming.text = media.get("caption")

                messages.append(incoming)

    return messages


async def verify_webhook(
    settings: Settings,
    hub_mode: str | None,
    hub_verify_token: str | None,
    hub_challenge: str | None,
) -> str | None:
    if hub_mode == "subscribe" and hub_verify_token == settings.whatsapp_verify_token:
        return hub_challenge
    return None


def _media_field(media: str) -> dict:
    """URLs go as link, anything else is a previously uploaded media id."""
    return {"link": media} if media.startswith("http") else {"id": media}


async def _post_message(settings: Settings, payload: dict) -> dict:
    url = f"{WA_API_BASE}/{settings.whatsapp_phone_number_id}/messages"
    headers = {"Authorization": f"Bearer {settings.whatsapp_token}"}
    async with httpx.AsyncClient(timeout=settings.http_timeout_seconds) as client:
        response = await client.post(url, json=payload, headers=headers)
        data = response.json()
    if response.status_code >= 400 or "error" in data:
        message = data.get("error", {}).get("message") or f"HTTP {response.status_code}"
        raise SendError(f"Graph API rejected {payload['type']} message: {message}", data)
    return data


async def send_text(settings: Settings, to: str, text: str) -> dict:
    return await _post_message(settings, {
        "messaging_product": "whatsapp",
        "to": to,
        "type": "text",
        "text": {"body": text},
    })


async def send_audio(settings: Settings, to: str, media: str) -> dict:
    return await _post_message(settings, {
        "messaging_product": "whatsapp",
        "to": to,
        "type": "audio",
        "audio": _media_field(media),
    })


async def send_video(settings: Settings, to: str, media: str, caption: str | None = None) -> dict:
    payload = {
        "messaging_product": "whatsapp",
        "to": to,
        "type": "video",
        "video": _media_field(media),
    }
    if caption:
        payload["video"]["caption"] = caption
    return await _post_message(settings, payload)


async def download_media(
    settings: Settings,
    media_id: str | None = None,
    media_url: str | None = None,
) -> tuple[bytes, str | None]:
    headers = {"Authorization": f"Bearer {settings.whatsapp_token}"}

    async with httpx.AsyncClient(timeout=settings.http_timeout_seconds) as client:
        if not media_url:
            url_response = await client.get(f"{WA_API_BASE}/{media_id}", headers=headers)
            url_response.raise_for_status()
            media_url = url_response.json().get("url")
        response = await client.get(media_url, headers=headers)
        response.raise_for_status()
        return response.content, response.headers.get("content-type")


async def get_phone_info(settings: Settings) -> dict:
    url = f"{WA_API_BASE}/{settings.whatsapp_phone_number_id}"
    async with httpx.AsyncClient(timeout=settings.http_timeout_seconds) as client:
        response = await client.get(
            url,
            params={"access_token": settings.whatsapp_token, "fields": "display_phone_number"},
        )
        response.raise_for_status()
        return {"phone": response.json().get("display_phone_number")}
