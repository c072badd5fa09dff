import asyncio
import json
from contextlib import asynccontextmanager
from typing import Any, List, Optional

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from .agent.orchestrator import Orchestrator, build_orchestrator
from .logging_setup import setup_server_logging
from .models import SessionRecord
from .services.database import Database
from .services.session_store import SessionStore, build_session_store
from .settings import get_settings

NO_API_KEY_TEXT = (
    "OpenAI API key not configured. Add OPENAI_API_KEY to your environment or .env file."
)
TIMEOUT_TEXT = "The request took too long to complete. Please try again."


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: Optional[str] = None
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    page_context: Optional[str] = Field(default=None, alias="pageContext")


class ChatHistoryRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: Optional[str] = Field(default=None, alias="sessionId")
    history: List[Any] = Field(default_factory=list)
    ui_messages: List[Any] = Field(default_factory=list, alias="uiMessages")


def _cors_origins_list(origins: str) -> list[str]:
    """Parse CORS_ORIGINS into a list."""
    if not origins or origins.strip() == "*":
        return ["*"]
    return [o.strip() for o in origins.split(",") if o.strip()]


settings = get_settings()
LOGGER = setup_server_logging(settings.log_level)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the database and session store at startup; flush and close them on shutdown."""
    database = Database(settings.db_sqlite_path)
    await asyncio.to_thread(database.initialize, seed=settings.seed_demo_data)
    LOGGER.info("Database ready: %s", database.path)

    sessions = await build_session_store(settings, database)
    app.state.sessions = sessions
    app.state.orchestrator = build_orchestrator(settings, database, sessions)
    if not settings.openai_api_key:
        LOGGER.warning("OPENAI_API_KEY is not set; chat requests will return a configuration warning")

    yield

    LOGGER.info("Shutting down...")
    await sessions.close()


app = FastAPI(
    title="AutoGRC Assistant",
    version="0.1.0",
    debug=settings.debug,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins_list(settings.cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def _orchestrator(app_: FastAPI) -> Orchestrator:
    return app_.state.orchestrator


def _sessions(app_: FastAPI) -> SessionStore:
    return app_.state.sessions


@app.get("/health")
async def health() -> dict[str, Any]:
    """Health check for load balancers and monitoring.

    Returns:
        dict[str, Any]: JSON response with status field.
    """
    return {"status": "ok"}


@app.post("/api/ai/chat")
async def chat(body: ChatRequest, request: Request) -> Any:
    """Answer one chat message.

    Request body: ``{message, sessionId, pageContext?}``.
    Response: ``{text, chartSpec, sessionId}``.
    """
    message = (body.message or "").strip()
    session_id = body.session_id
    LOGGER.info(
        "Chat request session_id=%s page_context=%s message_len=%d",
        session_id,
        body.page_context,
        len(message),
    )
    if not message or not session_id:
        return JSONResponse({"error": "Missing message or sessionId"}, status_code=400)

    current = get_settings()
    if not current.openai_api_key:
        LOGGER.error("No API key configured")
        return {"text": NO_API_KEY_TEXT, "chartSpec": None, "sessionId": session_id}

    try:
        result = await asyncio.wait_for(
            _orchestrator(request.app).run_turn(session_id, message, body.page_context),
            timeout=current.turn_timeout_seconds,
        )
    except asyncio.TimeoutError:
        LOGGER.error("Chat turn timed out session_id=%s", session_id)
        return {"text": TIMEOUT_TEXT, "chartSpec": None, "sessionId": session_id}
    except Exception as e:
        LOGGER.exception("Unhandled chat error: %s", e)
        return JSONResponse(
            {"text": f"An unexpected error occurred: {e}", "error": True},
            status_code=500,
        )
    return result.to_response()


@app.get("/api/ai/chat-history")
async def get_chat_history(request: Request, sessionId: Optional[str] = None) -> Any:
    """Return the stored model history and UI messages for a session."""
    if not sessionId:
        return JSONResponse({"error": "Missing sessionId"}, status_code=400)
    try:
        record = await _sessions(request.app).get_record(sessionId)
    except Exception as e:
        LOGGER.error("chat-history GET failed for %s: %s", sessionId, e)
        record = None
    if record is None:
        return {"history": [], "uiMessages": []}
    return {"history": record.history, "uiMessages": record.ui_messages}


@app.post("/api/ai/chat-history")
async def save_chat_history(body: ChatHistoryRequest, request: Request) -> Any:
    """Replace the stored history and UI messages for a session."""
    if not body.session_id:
        return JSONResponse({"error": "Missing sessionId"}, status_code=400)
    record = SessionRecord(
        session_id=body.session_id,
        history=list(body.history),
        ui_messages=list(body.ui_messages),
    )
    try:
        saved = await _sessions(request.app).save_record(record)
    except Exception as e:
        LOGGER.error("chat-history POST failed for %s: %s", body.session_id, e)
        saved = False
    if not saved:
        return JSONResponse({"error": "Failed to save"}, status_code=500)
    return {"ok": True}


@app.websocket("/ws/chat")
async def chat_ws(websocket: WebSocket) -> None:
    """WebSocket chat endpoint: client sends one message, server answers then sends done.

    Args:
        websocket: WebSocket connection from client.

    Expected Input (JSON):
        {
            "session_id": str - unique session identifier,
            "message": str - user query text,
            "page_context": str - optional current page name
        }

    Response Format:
        - {"type": "answer", "data": str, "chartSpec": dict | null} - final answer
        - {"type": "done", "session_id": str, "tool_calls_count": int} - completion message
        - {"type": "error", "data": str} - error message if applicable
    """
    await websocket.accept()
    try:
        raw = await websocket.receive_text()
        try:
            payload = json.loads(raw)
        except json.JSONDecodeError as e:
            LOGGER.error("Invalid WS payload (not JSON): %s", e)
            await websocket.send_json({"type": "error", "data": "Invalid JSON payload"})
            await websocket.close()
            return
        if not isinstance(payload, dict):
            payload = {}

        session_id = str(payload.get("session_id") or "default")
        message = str(payload.get("message") or "").strip()
        page_context = payload.get("page_context") or None

        if not message:
            await websocket.send_json({"type": "error", "data": "Empty message"})
            await websocket.close()
            return

        current = get_settings()
        if not current.openai_api_key:
            await websocket.send_json({"type": "error", "data": NO_API_KEY_TEXT})
            await websocket.close()
            return

        LOGGER.info("WS chat start session_id=%s", session_id)

        try:
            result = await asyncio.wait_for(
                _orchestrator(websocket.app).run_turn(session_id, message, page_context),
                timeout=current.turn_timeout_seconds,
            )
        except asyncio.TimeoutError:
            LOGGER.error("WS chat turn timed out session_id=%s", session_id)
            await websocket.send_json({"type": "error", "data": TIMEOUT_TEXT})
            await websocket.close()
            return

        response = result.to_response()
        await websocket.send_json(
            {"type": "answer", "data": response["text"], "chartSpec": response["chartSpec"]}
        )
        await websocket.send_json(
            {
                "type": "done",
                "session_id": session_id,
                "tool_calls_count": result.tool_calls_count,
            }
        )
        await websocket.close()

    except WebSocketDisconnect:
        LOGGER.info("WS disconnect")
    except (ConnectionError, TimeoutError, RuntimeError, ValueError) as e:
        LOGGER.exception("Unexpected WS error: %s", e)
        try:
            await websocket.send_json({"type": "error", "data": str(e)})
        except (OSError, RuntimeError, ValueError, TypeError):
            pass
        try:
            await websocket.close()
        except (OSError, RuntimeError):
            pass


def run() -> None:
    """Start the HTTP server."""
    import uvicorn

    LOGGER.info("Starting AutoGRC server on %s:%d", settings.host, settings.port)
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())
