"""
Gateway HTTP application.

Translates the simplified request shape into the backend engine's native
API and back:

    POST /          {prompt, ...}  ->  {response, model, created_at, done}
    GET  /health    backend answers 200 on its model listing
    OPTIONS *       CORS preflight
    anything else   404

The app holds no per-request state; the model identifier and timeouts are
fixed when it is created.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse

from relay_core.errors import BackendError
from relay_core.gateway.backend import BackendClient

logger = logging.getLogger(__name__)

CORS_ORIGIN = {"Access-Control-Allow-Origin": "*"}
CORS_PREFLIGHT = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type",
}
OTHER_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD"]


def translate_response(model_identifier: str, backend_data: Dict[str, Any]) -> Dict[str, Any]:
    """Backend generate payload -> gateway response body."""
    return {
        "response": backend_data.get("response", ""),
        "model": model_identifier,
        "created_at": backend_data.get("created_at") or "",
        "done": True,
    }


def create_app(
    model_identifier: str,
    backend: BackendClient,
    generate_timeout: float = 60.0,
    health_timeout: float = 5.0,
) -> FastAPI:
    """Build the gateway app bound to one model and one backend."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Gateway serving model {model_identifier} via {backend.base_url}")
        yield
        await backend.close()

    app = FastAPI(
        title="Relay Gateway",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
        lifespan=lifespan,
    )

    @app.post("/")
    async def generate(request: Request) -> Response:
        try:
            body = await request.json()
            prompt = body.get("prompt", "") if isinstance(body, dict) else ""
            if not isinstance(prompt, str):
                prompt = str(prompt)

            data = await backend.generate(model_identifier, prompt, timeout=generate_timeout)
            return JSONResponse(
                translate_response(model_identifier, data),
                status_code=200,
                headers=CORS_ORIGIN,
            )

        except BackendError as e:
            logger.warning(f"Backend rejected generate request: {e.status}")
            return JSONResponse({"error": f"Backend error: {e.status}"}, status_code=500)
        except Exception as e:
            logger.error(f"Error processing request: {e}")
            return JSONResponse({"error": f"Internal server error: {e}"}, status_code=500)

    @app.get("/health")
    async def health() -> Response:
        try:
            await asyncio.wait_for(backend.ping(timeout=health_timeout), health_timeout)
        except Exception as e:
            logger.debug(f"Health check failed: {e}")
            return JSONResponse(
                {"status": "unavailable", "error": str(e) or type(e).__name__},
                status_code=503,
            )
        return JSONResponse({"status": "healthy", "model": model_identifier}, status_code=200)

    @app.options("/{path:path}")
    async def preflight(path: str) -> Response:
        return Response(status_code=200, headers=CORS_PREFLIGHT)

    @app.api_route("/{path:path}", methods=OTHER_METHODS)
    async def not_found(path: str) -> Response:
        return JSONResponse({"error": "Not found"}, status_code=404)

    return app


__all__ = ["create_app", "translate_response", "CORS_PREFLIGHT"]
