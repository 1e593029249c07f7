from fastapi import APIRouter, HTTPException

from ticobot.logging_config import get_logger
from ticobot.runtime import get_runtime
from ticobot.schemas.channel import ChannelEvent, ChannelEventResponse

logger = get_logger("channel_events")

router = APIRouter()


@router.post("/channel/events", response_model=ChannelEventResponse)
async def handle_channel_event(request: ChannelEvent):
    """Re-emit a gateway lifecycle or inbound event to the registered handlers."""
    provider = get_runtime().provider

    if request.event == "inbound_message":
        if request.message is None:
            raise HTTPException(status_code=400, detail="message required for inbound_message")
        await provider.emit("inbound_message", request.message)
    elif request.event == "scan_required":
        await provider.emit("scan_required", request.qr)
    elif request.event in ("disconnected", "auth_failure"):
        await provider.emit(request.event, request.reason)
    else:
        await provider.emit(request.event)

    if request.event != "inbound_message":
        logger.info("Channel event received", extra={"context": {"event": request.event}})
    return ChannelEventResponse(success=True, event=request.event)
