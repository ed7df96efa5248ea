"""
Client for the backend inference engine's native HTTP API.

Consumed endpoints:
    POST /api/generate   {model, prompt, stream: false} -> {response, created_at, done}
    GET  /api/tags       model listing; its status alone is the health signal
    POST /api/pull       {name, stream: false}
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

import aiohttp

from relay_core.errors import BackendError, BackendUnreachable

logger = logging.getLogger(__name__)

GENERATE_PATH = "/api/generate"
TAGS_PATH = "/api/tags"
PULL_PATH = "/api/pull"


class BackendClient:
    """
    Thin async wrapper around the engine API.

    Every call takes an explicit timeout. Non-200 answers raise
    ``BackendError(status)``; transport failures, timeouts and undecodable
    bodies raise ``BackendUnreachable``.
    """

    def __init__(self, base_url: str, session: Optional[aiohttp.ClientSession] = None):
        self.base_url = base_url.rstrip("/")
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        """Get or create HTTP session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={"Content-Type": "application/json"},
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _request(
        self,
        method: str,
        path: str,
        timeout: float,
        payload: Optional[Dict[str, Any]] = None,
        decode: bool = True,
    ) -> Any:
        session = await self._get_session()
        url = f"{self.base_url}{path}"
        try:
            async with session.request(
                method,
                url,
                json=payload,
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as response:
                if response.status != 200:
                    body = await response.text()
                    logger.warning(f"{method} {url} returned {response.status}")
                    raise BackendError(response.status, body[:500])
                if not decode:
                    return None
                return await response.json(content_type=None)
        except BackendError:
            raise
        except asyncio.TimeoutError as e:
            raise BackendUnreachable(f"{method} {url} timed out after {timeout:g}s") from e
        except (aiohttp.ClientError, json.JSONDecodeError, ValueError) as e:
            raise BackendUnreachable(f"{method} {url} failed: {e}") from e

    async def generate(self, model: str, prompt: str, timeout: float = 60.0) -> Dict[str, Any]:
        payload = {"model": model, "prompt": prompt, "stream": False}
        data = await self._request("POST", GENERATE_PATH, timeout, payload)
        if not isinstance(data, dict):
            raise BackendUnreachable(f"Unexpected generate response: {type(data).__name__}")
        return data

    async def ping(self, timeout: float = 5.0) -> None:
        """Raise unless the engine answers 200. The body is not read."""
        await self._request("GET", TAGS_PATH, timeout, decode=False)

    async def list_models(self, timeout: float = 5.0) -> List[Dict[str, Any]]:
        data = await self._request("GET", TAGS_PATH, timeout)
        if isinstance(data, dict):
            return list(data.get("models") or [])
        return []

    async def pull_model(self, name: str, timeout: float = 3600.0) -> Dict[str, Any]:
        logger.info(f"Pulling model {name} from {self.base_url}")
        data = await self._request("POST", PULL_PATH, timeout, {"name": name, "stream": False})
        return data if isinstance(data, dict) else {}


__all__ = ["BackendClient", "GENERATE_PATH", "TAGS_PATH", "PULL_PATH"]
