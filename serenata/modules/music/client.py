"""
Music generation client (Suno-compatible HTTP API).
Submission is async: the API answers with a task id and later POSTs the
finished track to our callback URL.
"""

import logging

import httpx

from serenata.config import Settings
from serenata.errors import GenerationError

logger = logging.getLogger(__name__)


class MusicClient:
    def __init__(self, settings: Settings):
        self.settings = settings

    async def submit(self, title: str, style_prompt: str, lyrics: str, callback_url: str) -> str:
        """Submit a generation job. Returns the provider task id."""
        settings = self.settings
        payload = {
            "customMode": True,
            "instrumental": False,
            "model": settings.music_model,
            "title": title,
            "style": style_prompt,
            "prompt": lyrics,
            "callBackUrl": callback_url,
        }
        headers = {"Authorization": f"Bearer {settings.music_api_key}"}

        try:
            async with httpx.AsyncClient(timeout=settings.http_timeout_seconds) as client:
                response = await client.post(
                    f"{settings.music_api_base_url}/api/v1/generate", json=payload, headers=headers,
                )
                data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise GenerationError(f"Music API request failed: {e}") from e

        if response.status_code >= 400 or data.get("code") != 200:
            raise GenerationError(f"Music API error: {data.get('msg') or response.status_code}")

        task_id = (data.get("data") or {}).get("taskId")
        if not task_id:
            raise GenerationError("Music API returned no taskId")
        logger.info("Submitted music generation '%s' -> task %s", title, task_id)
        return task_id


def parse_callback(body: dict) -> tuple[str | None, str | None, str | None]:
    """Extract (task_id, audio_url, error) from a provider callback.

    Intermediate callbacks ("text", "first") yield no audio_url and no error.
    """
    data = body.get("data") or {}
    task_id = data.get("task_id") or data.get("taskId")

    if body.get("code") not in (None, 200):
        return task_id, None, body.get("msg") or f"code {body.get('code')}"

    if data.get("callbackType") != "complete":
        return task_id, None, None

    tracks = data.get("data") or []
    audio_url = next((t.get("audio_url") for t in tracks if t.get("audio_url")), None)
    return task_id, audio_url, None
