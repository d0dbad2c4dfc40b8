"""
Admin API: operator endpoints for manual sends, connection status,
message history, and on-demand scheduler ticks.
"""

import logging
from pathlib import Path
from typing import Optional
from uuid import uuid4

from fastapi import APIRouter, File, Form, Request, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel

logger = logging.getLogger(__name__)

router = APIRouter()
whatsapp_api_router = APIRouter()


class SendMessageRequest(BaseModel):
    message: str = ""
    leadId: Optional[str] = None
    phone: Optional[str] = None


# --- Manual WhatsApp sends ---

@whatsapp_api_router.post("/send-message")
async def send_message(body: SendMessageRequest, request: Request):
    """Send a text to a lead (by id) or to a raw phone number."""
    services = request.app.state.services
    if not body.message or (not body.leadId and not body.phone):
        return JSONResponse(status_code=400, content={"error": "Faltan message y leadId o phone"})

    phone = body.phone
    if body.leadId:
        lead = await services.store.get_lead(body.leadId)
        if lead is None:
            return JSONResponse(status_code=404, content={"error": "Lead no encontrado"})
        phone = lead.phone

    try:
        await services.channel.send_text(phone, body.message, body.leadId)
    except Exception as e:
        logger.exception("Error sending text to %s", phone)
        return JSONResponse(status_code=500, content={"error": str(e)})
    return {"success": True}


@whatsapp_api_router.post("/send-audio")
async def send_audio(
    request: Request,
    phone: str = Form(...),
    audio: UploadFile = File(...),
):
    """Transcode an uploaded voice note to AAC/M4A, store it, and send it by link."""
    services = request.app.state.services
    work_dir = Path(services.settings.work_dir)
    work_dir.mkdir(parents=True, exist_ok=True)
    upload_path = work_dir / f"{uuid4().hex}{Path(audio.filename or '').suffix}"
    m4a_path = None

    try:
        upload_path.write_bytes(await audio.read())
        m4a_path = await services.transcoder.transcode(upload_path, "aac")
        url = await services.storage.upload_file(m4a_path, f"chat-audios/{m4a_path.name}", "audio/mp4")
        await services.channel.send_audio(phone, url)
    except Exception as e:
        logger.exception("Error sending audio to %s", phone)
        return JSONResponse(status_code=500, content={"error": str(e)})
    finally:
        upload_path.unlink(missing_ok=True)
        if m4a_path is not None:
            m4a_path.unlink(missing_ok=True)

    return {"success": True, "url": url}


@whatsapp_api_router.get("/status")
async def connection_status(request: Request):
    """Validate credentials by asking the provider for the business number."""
    services = request.app.state.services
    try:
        info = await services.provider.get_phone_info(services.settings)
    except Exception as e:
        logger.error("Status check failed: %s", e)
        return JSONResponse(status_code=502, content={"status": "Desconectado", "error": str(e)})
    return {"status": "Conectado", "phone": info.get("phone")}


@whatsapp_api_router.get("/number")
async def active_number(request: Request):
    services = request.app.state.services
    try:
        info = await services.provider.get_phone_info(services.settings)
    except Exception as e:
        logger.error("Number fetch failed: %s", e)
        return JSONResponse(status_code=500, content={"error": str(e)})
    return {"phone": info.get("phone")}


# --- Scheduler / history ---

@router.post("/tick")
async def run_tick(request: Request):
    """Run every pipeline stage once (cron-friendly alternative to the in-process loops)."""
    results = await request.app.state.services.engine.run_once()
    return {"advanced": results}


@router.get("/leads/{lead_id}/messages")
async def lead_messages(lead_id: str, request: Request, limit: int = 50):
    services = request.app.state.services
    lead = await services.store.get_lead(lead_id)
    if lead is None:
        return JSONResponse(status_code=404, content={"error": f"Lead {lead_id} not found"})
    messages = await services.store.list_messages(lead_id, limit=limit)
    return {
        "lead": lead.model_dump(mode="json"),
        "messages": [m.model_dump(mode="json") for m in messages],
    }
