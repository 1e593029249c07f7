from datetime import datetime, timezone

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from ticobot.logging_config import get_logger
from ticobot.runtime import get_runtime

logger = get_logger("debug")

router = APIRouter()

LOCAL_ADDRESSES = {"127.0.0.1", "::1", "::ffff:127.0.0.1"}
CHAT_SAMPLE_SIZE = 20


def _is_local_request(request: Request) -> bool:
    return bool(request.client) and request.client.host in LOCAL_ADDRESSES


def _forbidden() -> JSONResponse:
    return JSONResponse(status_code=403, content={"ok": False, "error": "forbidden"})


@router.get("/debug/state")
async def debug_state(request: Request):
    if not _is_local_request(request):
        return _forbidden()
    state = await get_runtime().state()
    return {"ok": True, **state}


@router.get("/debug/chats")
async def debug_chats(request: Request):
    if not _is_local_request(request):
        return _forbidden()
    chats = await get_runtime().provider.list_chats()
    return {
        "ok": True,
        "total": len(chats),
        "unread": sum(1 for chat in chats if chat.unread_count > 0),
        "groups": sum(1 for chat in chats if chat.is_group),
        "sample": [chat.model_dump() for chat in chats[:CHAT_SAMPLE_SIZE]],
    }


@router.post("/debug/ping_admin")
async def ping_admin(request: Request):
    if not _is_local_request(request):
        return _forbidden()
    runtime = get_runtime()
    chat_id = runtime.operators.primary_chat_id
    if not chat_id:
        return JSONResponse(status_code=400, content={"ok": False, "error": "admin chatId not configured"})
    ts = datetime.now(timezone.utc).isoformat()
    await runtime.provider.send_text(chat_id, f"Ping del bot ({ts}). Si ves esto, el envío funciona.")
    logger.info("Admin ping sent", extra={"context": {"chat_id": chat_id}})
    return {"ok": True, "to": chat_id}
