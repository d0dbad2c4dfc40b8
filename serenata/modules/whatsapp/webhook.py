import logging

from fastapi import APIRouter, Request, Query, Response

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/webhook")
async def verify_webhook(
    request: Request,
    hub_mode: str = Query(None, alias="hub.mode"),
    hub_verify_token: str = Query(None, alias="hub.verify_token"),
    hub_challenge: str = Query(None, alias="hub.challenge"),
):
    """Webhook verification (Meta uses GET challenge, Twilio skips this)."""
    services = request.app.state.services
    challenge = await services.provider.verify_webhook(
        services.settings, hub_mode, hub_verify_token, hub_challenge,
    )
    if challenge:
        return Response(content=challenge, media_type="text/plain")
    return Response(status_code=403)


@router.post("/webhook")
async def receive_message(request: Request):
    """Receive incoming WhatsApp messages; works with both Meta and Twilio."""
    services = request.app.state.services
    messages = await services.provider.parse_webhook(request)

    for msg in messages:
        logger.info(
            "Incoming [%s] from %s: type=%s text=%s",
            services.settings.whatsapp_provider,
            msg.sender_phone,
            msg.message_type,
            msg.text[:80] if msg.text else "(media)",
        )
        try:
            await services.ingest.ingest(msg)
        except Exception as e:
            logger.exception("Error processing message from %s: %s", msg.sender_phone, e)

    return {"status": "ok"}
