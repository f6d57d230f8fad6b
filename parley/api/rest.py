"""Admin REST API for Parley.

Endpoints:
  GET  /health                         - Liveness check
  GET  /status                         - Running conversations, queues, approvals, cooldowns
  PUT  /conversations/{id}/queue       - Set queue mode and/or debounce window
  POST /conversations/{id}/stop        - Stop the active run
  POST /conversations/{id}/messages    - Inject a message through the full pipeline
  POST /approvals/{request_id}         - Approve or deny a pending command

When an admin token is configured every endpoint except /health requires
"Authorization: Bearer <token>".
"""

from __future__ import annotations

import hmac
import itertools
import logging
from typing import Any

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from parley.config import Settings
from parley.orchestrator import ConversationOrchestrator
from parley.schemas import InboundMessage, QueueMode

logger = logging.getLogger(__name__)


def create_app(
    orchestrator: ConversationOrchestrator,
    settings: Settings,
    lifespan: Any | None = None,
) -> Starlette:
    """Create the Starlette ASGI app with all routes."""

    # Injected messages have no transport sequence numbers of their own
    sequence = itertools.count(1)

    def unauthorized(request: Request) -> JSONResponse | None:
        if not settings.admin_token:
            return None
        header = request.headers.get("authorization", "")
        expected = f"Bearer {settings.admin_token}"
        if hmac.compare_digest(header.encode(), expected.encode()):
            return None
        return JSONResponse({"error": "Unauthorized"}, status_code=401)

    async def read_json(request: Request) -> dict[str, Any] | JSONResponse:
        try:
            body = await request.json()
        except Exception:
            return JSONResponse({"error": "Invalid JSON body"}, status_code=400)
        if not isinstance(body, dict):
            return JSONResponse({"error": "JSON body must be an object"}, status_code=400)
        return body

    async def health(request: Request) -> JSONResponse:
        """GET /health - Health check."""
        return JSONResponse({"status": "healthy"})

    async def status(request: Request) -> JSONResponse:
        """GET /status - Orchestrator state snapshot."""
        if denied := unauthorized(request):
            return denied
        return JSONResponse({"agent": settings.agent_name, "model": settings.model, **orchestrator.status()})

    async def set_queue(request: Request) -> JSONResponse:
        """PUT /conversations/{id}/queue - {"mode": ..., "debounce_ms": ...}."""
        if denied := unauthorized(request):
            return denied
        conversation_id = request.path_params["id"]
        body = await read_json(request)
        if isinstance(body, JSONResponse):
            return body

        mode = body.get("mode")
        debounce_ms = body.get("debounce_ms")
        if mode is None and debounce_ms is None:
            return JSONResponse(
                {"error": "Provide at least one of: mode, debounce_ms"}, status_code=400
            )
        if mode is not None and mode not in {m.value for m in QueueMode}:
            return JSONResponse(
                {"error": f"Invalid mode '{mode}'. Valid: collect, steer, interrupt"},
                status_code=400,
            )
        if debounce_ms is not None and (
            isinstance(debounce_ms, bool) or not isinstance(debounce_ms, int)
        ):
            return JSONResponse({"error": "debounce_ms must be an integer"}, status_code=400)

        try:
            orchestrator.set_queue_options(conversation_id, mode=mode, debounce_ms=debounce_ms)
        except ValueError as e:
            return JSONResponse({"error": str(e)}, status_code=400)

        return JSONResponse(
            {
                "conversation_id": conversation_id,
                "mode": orchestrator.queue_mode(conversation_id).value,
                "debounce_ms": orchestrator.debounce_ms(conversation_id),
            }
        )

    async def stop(request: Request) -> JSONResponse:
        """POST /conversations/{id}/stop - Cancel the active run."""
        if denied := unauthorized(request):
            return denied
        conversation_id = request.path_params["id"]
        stopped = await orchestrator.stop(conversation_id)
        return JSONResponse({"conversation_id": conversation_id, "stopped": stopped})

    async def post_message(request: Request) -> JSONResponse:
        """POST /conversations/{id}/messages - {"text": ..., "author_id": ...}."""
        if denied := unauthorized(request):
            return denied
        conversation_id = request.path_params["id"]
        body = await read_json(request)
        if isinstance(body, JSONResponse):
            return body

        text = body.get("text")
        if not text or not isinstance(text, str):
            return JSONResponse({"error": "Missing required field: text"}, status_code=400)

        seq = body.get("sequence_number")
        message = InboundMessage(
            conversation_id=conversation_id,
            author_id=str(body.get("author_id", "admin")),
            sequence_number=seq if isinstance(seq, int) else next(sequence),
            text=text,
        )
        await orchestrator.handle_message(message)
        return JSONResponse(
            {"conversation_id": conversation_id, "status": "accepted"}, status_code=202
        )

    async def decide(request: Request) -> JSONResponse:
        """POST /approvals/{request_id} - {"approved": bool}."""
        if denied := unauthorized(request):
            return denied
        request_id = request.path_params["request_id"]
        body = await read_json(request)
        if isinstance(body, JSONResponse):
            return body

        approved = body.get("approved")
        if not isinstance(approved, bool):
            return JSONResponse({"error": "Field 'approved' must be a boolean"}, status_code=400)

        if not orchestrator.decide(request_id, approved):
            return JSONResponse(
                {"error": "Request not found or expired"}, status_code=404
            )
        return JSONResponse({"request_id": request_id, "approved": approved})

    routes = [
        Route("/health", health),
        Route("/status", status),
        Route("/conversations/{id}/queue", set_queue, methods=["PUT"]),
        Route("/conversations/{id}/stop", stop, methods=["POST"]),
        Route("/conversations/{id}/messages", post_message, methods=["POST"]),
        Route("/approvals/{request_id}", decide, methods=["POST"]),
    ]

    kwargs: dict[str, Any] = {"routes": routes}
    if lifespan is not None:
        kwargs["lifespan"] = lifespan
    return Starlette(**kwargs)
