"""HTTP client for the opencode agent server."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

import aiohttp

from agent_errors import AgentServerError, PromptSendFailed, ServerUnreachable, SessionCreateFailed

logger = logging.getLogger(__name__)

HEALTH_TIMEOUT = 2.0
CALL_TIMEOUT = 30.0


async def probe_health(
    base_url: str,
    timeout: float = HEALTH_TIMEOUT,
    http: Optional[aiohttp.ClientSession] = None,
) -> bool:
    """Return True when ``GET /health`` on ``base_url`` answers with 2xx."""
    url = f"{base_url.rstrip('/')}/health"
    own = http is None
    session = http or aiohttp.ClientSession()
    try:
        async with session.get(url, timeout=aiohttp.ClientTimeout(total=timeout)) as resp:
            return 200 <= resp.status < 300
    except (aiohttp.ClientError, asyncio.TimeoutError, OSError):
        return False
    finally:
        if own:
            await session.close()


class AgentServerClient:
    """Small async JSON client for the agent server's HTTP surface."""

    def __init__(self, base_url: str, call_timeout: float = CALL_TIMEOUT) -> None:
        self.base_url = base_url.rstrip("/")
        self.call_timeout = call_timeout
        self._http: Optional[aiohttp.ClientSession] = None

    @property
    def http(self) -> aiohttp.ClientSession:
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession()
        return self._http

    async def close(self) -> None:
        if self._http is not None and not self._http.closed:
            await self._http.close()
        self._http = None

    def url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    async def call(
        self,
        method: str,
        path: str,
        params: Optional[dict] = None,
        body: Optional[dict] = None,
        timeout: Optional[float] = None,
    ) -> Any:
        query = {k: v for k, v in (params or {}).items() if v is not None}
        client_timeout = aiohttp.ClientTimeout(total=timeout or self.call_timeout)
        try:
            async with self.http.request(
                method,
                self.url(path),
                params=query or None,
                json=body,
                timeout=client_timeout,
            ) as resp:
                text = await resp.text()
                if resp.status >= 400:
                    raise AgentServerError(
                        f"{method} {path} failed: {resp.status} {text[:200]}".rstrip(),
                        status=resp.status,
                    )
                if not text:
                    return None
                try:
                    return await resp.json(content_type=None)
                except ValueError:
                    return text
        except aiohttp.ClientConnectorError as exc:
            raise ServerUnreachable(
                f"{method} {path} failed: agent server unreachable at {self.base_url} ({exc})"
            ) from exc
        except asyncio.TimeoutError as exc:
            raise AgentServerError(f"{method} {path} timed out") from exc
        except aiohttp.ClientError as exc:
            raise AgentServerError(f"{method} {path} failed: {exc}") from exc

    async def health(self, timeout: float = HEALTH_TIMEOUT) -> bool:
        return await probe_health(self.base_url, timeout=timeout, http=self.http)

    async def create_session(self, directory: str, title: Optional[str] = None) -> str:
        body: Dict[str, Any] = {}
        if title:
            body["title"] = title
        try:
            payload = await self.call("POST", "/session", params={"directory": directory}, body=body)
        except AgentServerError as exc:
            raise SessionCreateFailed(f"Failed to create session: {exc}", status=exc.status) from exc
        session_id = payload.get("id") if isinstance(payload, dict) else None
        if not session_id:
            raise SessionCreateFailed(f"Failed to create session: unexpected result {payload!r}")
        return str(session_id)

    async def prompt_async(
        self,
        session_id: str,
        directory: str,
        parts: List[dict],
        model: Optional[dict] = None,
        agent: Optional[str] = None,
    ) -> None:
        body: Dict[str, Any] = {"parts": parts}
        if model:
            body["model"] = model
        if agent:
            body["agent"] = agent
        try:
            await self.call(
                "POST",
                f"/session/{session_id}/prompt_async",
                params={"directory": directory},
                body=body,
            )
        except AgentServerError as exc:
            raise PromptSendFailed(f"Failed to send prompt: {exc}", status=exc.status) from exc

    async def abort_session(self, session_id: str, timeout: float = 5.0) -> None:
        await self.call("POST", f"/session/{session_id}/abort", timeout=timeout)

    async def list_sessions(self, directory: Optional[str] = None) -> List[dict]:
        payload = await self.call("GET", "/session", params={"directory": directory})
        return payload if isinstance(payload, list) else []

    async def session_messages(self, session_id: str, directory: str) -> List[dict]:
        payload = await self.call(
            "GET", f"/session/{session_id}/message", params={"directory": directory}
        )
        return payload if isinstance(payload, list) else []

    async def providers(self) -> dict:
        payload = await self.call("GET", "/provider")
        return payload if isinstance(payload, dict) else {}

    async def respond_permission(self, session_id: str, permission_id: str, response: str) -> None:
        await self.call(
            "POST",
            f"/session/{session_id}/permissions/{permission_id}",
            body={"response": response},
        )

    async def mcp_status(self) -> dict:
        payload = await self.call("GET", "/mcp")
        return payload if isinstance(payload, dict) else {}
