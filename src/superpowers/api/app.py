"""
Core API backend for Superpowers.

This module exposes the agent through a RESTful API that's used by frontends.
It exposes the following endpoints:
- **GET /health**  - liveness probe for health checks.
- **POST /sessions** - create a new session, returns a session ID.
- **GET /sessions** - list all active sessions.
- **POST /agent**   - multi-turn interaction: {"message": "...", "session_id": "..."}
- **POST /agent/stop** - stop whatever the agent is currently doing.
"""

import logging
import uuid
from typing import (
    Dict,
    List,
    Optional,
)

from fastapi import (
    Depends,
    FastAPI,
    HTTPException,
)
from fastapi.middleware.cors import CORSMiddleware

from superpowers.agent.agent_loop import (
    Agent,
    create_agent,
)
from superpowers.agent.llm_transport import ProviderApiError
from superpowers.api.models import (
    MessageRequest,
    MessageResponse,
    SessionResponse,
)
from superpowers.config import (
    ConfigError,
    resolve_llm_options,
    settings,
)
from superpowers.core.schema import (
    AgentMessage,
    Attachment,
)

logger = logging.getLogger(__name__)

# Session storage (in-memory only)
sessions: Dict[str, List[AgentMessage]] = {}

_agent: Optional[Agent] = None

app = FastAPI(
    title="Superpowers API", version="0.1.0", description="Superpowers browsing agent API"
)

# Add CORS middleware so the extension can reach the API
app.add_middleware(
    CORSMiddleware,
    allow_origin_regex=r"^(chrome-extension://.*|http://localhost(:\d+)?)$",
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Helper functions
# ---------------------------------------------------------------------------
def get_or_create_session(session_id: Optional[str] = None) -> str:
    """Get existing session or create a new one."""
    if session_id and session_id in sessions:
        return session_id

    new_session_id = str(uuid.uuid4())
    sessions[new_session_id] = []
    return new_session_id


def get_agent() -> Agent:
    """Return the process-wide agent, building it on first use."""
    global _agent  # pylint: disable=global-statement
    if _agent is None:
        _agent = create_agent(settings)
    return _agent


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------
@app.get("/health", summary="Health check")
async def health() -> dict[str, str]:
    """Return a simple liveness payload."""
    return {"status": "ok"}


@app.post("/sessions", response_model=SessionResponse, summary="Create a new session")
async def create_session() -> SessionResponse:
    """Create a new conversation session."""
    session_id = get_or_create_session()
    return SessionResponse(session_id=session_id)


@app.get("/sessions", response_model=List[str], summary="List active sessions")
async def list_sessions() -> List[str]:
    """List all active session IDs."""
    return list(sessions.keys())


@app.post("/agent", response_model=MessageResponse, summary="Process a message")
async def agent_endpoint(
    req: MessageRequest, agent: Agent = Depends(get_agent)
) -> MessageResponse:
    """Run the agent on a user message within a session."""
    try:
        options = resolve_llm_options(
            settings, provider=req.provider, model=req.model, temperature=req.temperature
        )
        agent.transport_for(options.provider)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    session_id = get_or_create_session(req.session_id)
    history = sessions[session_id]

    user_msg = AgentMessage(
        role="user",
        content=req.message,
        attachments=[Attachment(data=img) for img in req.images] or None,
    )

    try:
        response = await agent.run([*history, user_msg], options, context=req.context)
    except ProviderApiError as exc:
        logger.error("Provider error: %s", exc)
        raise HTTPException(status_code=502, detail=str(exc)) from exc

    logger.debug(
        "Session %s: %d iteration(s), finished=%s",
        session_id,
        response.iterations,
        response.finished,
    )
    history.append(user_msg)
    history.append(AgentMessage(role="assistant", content=response.message))

    return MessageResponse(
        reply=response.message,
        tool_results=response.tool_results or None,
        iterations=response.iterations,
        finished=response.finished,
        session_id=session_id,
    )


@app.post("/agent/stop", summary="Stop the running agent")
async def stop_agent(agent: Agent = Depends(get_agent)) -> dict[str, str]:
    """Cancel every run in flight.  Harmless when the agent is idle."""
    was_running = agent.is_running
    agent.stop()
    return {"status": "stopped" if was_running else "idle"}


@app.get("/", summary="API root")
async def root() -> dict[str, str]:
    """Return a simple welcome message."""
    return {"message": "Welcome to the Superpowers API! Use /docs for API documentation."}


# ---------------------------------------------------------------------------
# Public helper to launch the API (imported by main.py)
# ---------------------------------------------------------------------------
def run_api(
    host: str = "0.0.0.0", port: int = 8000, reload: bool = False, log_level: str | None = None
) -> None:
    """Start a uvicorn server hosting *app*.

    Parameters
    ----------
    host, port:
        Bind address for the HTTP server.
    reload:
        If *True*, enable auto-reload.
    log_level:
        Logging level to use (default from settings if not provided).
    """

    # Lazy import - keeps uvicorn out of the import path of the library modules
    import uvicorn  # pylint: disable=import-outside-toplevel

    if log_level is None:
        log_level = settings.LOG_LEVEL

    logger.info(
        "Starting Superpowers API at %s:%d (reload=%s, log_level=%s)", host, port, reload, log_level
    )
    logger.debug(
        "API settings: %s",
        settings.model_dump(exclude={"OPENAI_API_KEY", "ANTHROPIC_API_KEY"}),
    )

    logger.info("API documentation at http://localhost:%d/docs", port)
    uvicorn.run(
        "superpowers.api.app:app",
        host=host,
        port=port,
        reload=reload,
        log_level=log_level,
    )


# ---------------------------------------------------------------------------
# `python -m superpowers.api.app` helper
# ---------------------------------------------------------------------------
if __name__ == "__main__":
    run_api(reload=True)
