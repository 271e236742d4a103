"""FastAPI application exposing a Session over HTTP and Server-Sent Events."""

import asyncio
import json
import logging
import queue
import threading
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from .report import AgentError, KillFailed, ProcessNotFound
from .session import DEFAULT_CONVERSATION_ID, Session

logger = logging.getLogger(__name__)

_POLL_INTERVAL = 0.25


# -----------------------------
# Pydantic request/response
# -----------------------------
class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: str = ""
    conversation_id: Optional[str] = Field(
        default=None,
        alias="conversationId",
        description="Conversation to continue; defaults to 'default'.",
    )


class ChatResponse(BaseModel):
    conversation_id: str
    messages: List[Dict[str, Any]]


class KillResponse(BaseModel):
    success: bool
    message: str


def _sse(payload: dict) -> str:
    return f"data: {json.dumps(payload)}\n\n"


def _message_text(req: ChatRequest) -> str:
    msg = (req.message or "").strip()
    if not msg:
        raise HTTPException(status_code=400, detail="Message cannot be empty.")
    return msg


# -----------------------------
# App factory
# -----------------------------
def create_app(session: Session, close_on_shutdown: bool = True) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if close_on_shutdown:
            session.close()

    app = FastAPI(title="shellmate", version="0.1.0", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    def health() -> Dict[str, Any]:
        return {"ok": True, "processes": len(session.list_processes())}

    @app.post("/api/chat", response_model=ChatResponse)
    def chat(req: ChatRequest):
        text = _message_text(req)
        conversation_id = req.conversation_id or DEFAULT_CONVERSATION_ID
        try:
            result = session.send(conversation_id, text)
        except AgentError as e:
            logger.error("chat request for %s failed: %s", conversation_id, e)
            raise HTTPException(status_code=502, detail=str(e))
        return ChatResponse(
            conversation_id=result.conversation_id,
            messages=[m.to_dict() for m in result.messages],
        )

    @app.post("/api/chat/stream")
    async def chat_stream(req: ChatRequest, request: Request):
        text = _message_text(req)
        conversation_id = req.conversation_id or DEFAULT_CONVERSATION_ID
        events: queue.Queue = queue.Queue()
        cancel = threading.Event()

        def _work():
            try:
                session.send(
                    conversation_id,
                    text,
                    callback=lambda msg: events.put(("message", msg.to_dict())),
                    cancel=cancel,
                )
            except AgentError as e:
                events.put(("error", str(e)))
            except Exception as e:
                logger.exception("streaming chat for %s failed", conversation_id)
                events.put(("error", str(e)))
            else:
                events.put(("done", None))

        async def event_stream():
            yield _sse({"type": "connected"})
            worker = threading.Thread(
                target=_work, name=f"shellmate-chat-{conversation_id}", daemon=True
            )
            worker.start()
            finished = False
            try:
                while True:
                    try:
                        kind, payload = await asyncio.to_thread(
                            events.get, True, _POLL_INTERVAL
                        )
                    except queue.Empty:
                        if await request.is_disconnected():
                            logger.info(
                                "client disconnected from %s, cancelling", conversation_id
                            )
                            return
                        continue
                    if kind == "message":
                        yield _sse(payload)
                    elif kind == "error":
                        finished = True
                        yield _sse({"type": "error", "error": payload})
                        return
                    else:
                        finished = True
                        yield _sse({"type": "done"})
                        return
            finally:
                if not finished:
                    cancel.set()

        return StreamingResponse(
            event_stream(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
        )

    @app.get("/api/conversations")
    def list_conversations() -> List[Dict[str, Any]]:
        return [c.to_dict() for c in session.list_conversations()]

    @app.get("/api/conversations/{conversation_id}")
    def get_conversation(conversation_id: str) -> Dict[str, Any]:
        return session.get_or_create_conversation(conversation_id).to_dict()

    @app.delete("/api/conversations/{conversation_id}")
    def delete_conversation(conversation_id: str) -> Dict[str, Any]:
        deleted = session.delete_conversation(conversation_id)
        return {"success": True, "deleted": deleted}

    @app.get("/api/processes")
    def list_processes() -> List[Dict[str, Any]]:
        return [r.to_dict() for r in session.list_processes()]

    @app.post("/api/processes/{pid}/kill", response_model=KillResponse)
    def kill_process(pid: int):
        try:
            session.kill_process(pid)
        except ProcessNotFound as e:
            raise HTTPException(status_code=404, detail=str(e))
        except KillFailed as e:
            raise HTTPException(status_code=500, detail=str(e))
        return KillResponse(success=True, message=f"Process {pid} killed")

    return app


def serve(session: Session, host: str = "127.0.0.1", port: int = 8080) -> None:
    """Run the API under uvicorn until interrupted."""
    import uvicorn

    from . import fmt

    fmt.info(f"Serving on http://{host}:{port}")
    uvicorn.run(create_app(session), host=host, port=port, log_level="info")
