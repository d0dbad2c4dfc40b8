"""
Music provider callback: acknowledges immediately and finalizes the song in the background.
"""

import logging

from fastapi import APIRouter, BackgroundTasks, Request

from serenata.modules.music.client import parse_callback
from serenata.modules.music.pipeline import FinalizeTrackStage

router = APIRouter()
logger = logging.getLogger(__name__)


async def _finalize(finalizer: FinalizeTrackStage, task_id: str | None, audio_url: str | None, error: str | None) -> None:
    try:
        await finalizer.handle_callback(task_id, audio_url, error)
    except Exception as e:
        # The job keeps its audio URL; the polling finalize stage retries it.
        logger.exception("Finalize failed for task %s: %s", task_id, e)


@router.post("/callback")
async def music_callback(request: Request, background_tasks: BackgroundTasks):
    body = await request.json()
    task_id, audio_url, error = parse_callback(body)
    logger.info(
        "Music callback: task=%s type=%s audio=%s error=%s",
        task_id, (body.get("data") or {}).get("callbackType"), bool(audio_url), error,
    )

    finalizer = request.app.state.services.finalizer
    background_tasks.add_task(_finalize, finalizer, task_id, audio_url, error)
    return {"status": "ok"}
