"""Create or resume agent sessions and send user turns to them."""
from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from agent_errors import SessionCreateFailed
from agent_server_client import AgentServerClient
from event_stream import EventSubscription

logger = logging.getLogger(__name__)

PLAN_AGENT = "plan"


@dataclass
class ModelSelection:
    provider_id: str
    model_id: str

    def as_payload(self) -> Dict[str, str]:
        return {"providerID": self.provider_id, "modelID": self.model_id}


def data_url(media_type: str, data: Union[bytes, str]) -> str:
    if isinstance(data, bytes):
        data = base64.b64encode(data).decode("ascii")
    return f"data:{media_type};base64,{data}"


def build_parts(prompt: str, images: Optional[List[dict]] = None) -> List[dict]:
    """Turn prompt text plus attachments into ordered prompt parts.

    Attachments are ``{"mediaType", "base64Data"}`` (or ``"data"`` bytes)
    dicts, or already-built ``{"mime", "url"}`` entries.
    """
    parts: List[dict] = [{"type": "text", "text": prompt}]
    for image in images or []:
        if image.get("url"):
            mime = image.get("mime") or image.get("mediaType") or "application/octet-stream"
            url = image["url"]
        else:
            mime = image.get("mediaType") or image.get("mime") or "image/png"
            raw = image.get("base64Data") if image.get("base64Data") is not None else image.get("data", b"")
            url = data_url(mime, raw)
        part: Dict[str, Any] = {"type": "file", "mime": mime, "url": url}
        if image.get("filename"):
            part["filename"] = image["filename"]
        parts.append(part)
    return parts


class SessionGateway:
    """Create or resume logical sessions and hand user turns to the server."""

    def __init__(self, client: AgentServerClient) -> None:
        self.client = client

    async def create_or_resume_session(
        self, directory: str, existing_session_id: Optional[str] = None
    ) -> str:
        if existing_session_id:
            logger.debug("resuming session %s", existing_session_id)
            return existing_session_id
        session_id = await self.client.create_session(directory)
        logger.info("created session %s in %s", session_id, directory)
        return session_id

    async def send_prompt(
        self,
        directory: str,
        session_id: str,
        parts: List[dict],
        model_selection: Optional[ModelSelection] = None,
        agent: Optional[str] = None,
    ) -> None:
        if not session_id:
            raise SessionCreateFailed("Failed to create session")
        await self.client.prompt_async(
            session_id,
            directory,
            parts,
            model=model_selection.as_payload() if model_selection else None,
            agent=agent,
        )

    async def start_turn(
        self,
        subscription: EventSubscription,
        directory: str,
        parts: List[dict],
        existing_session_id: Optional[str] = None,
        model_selection: Optional[ModelSelection] = None,
        agent: Optional[str] = None,
        on_session: Optional[Callable[[str, bool], Awaitable[None] | None]] = None,
    ) -> str:
        """Send one user turn once ``subscription`` is confirmed open.

        ``on_session(session_id, created)`` runs before the prompt goes out.
        """
        await subscription.connected
        session_id = await self.create_or_resume_session(directory, existing_session_id)
        if on_session is not None:
            result = on_session(session_id, session_id != existing_session_id)
            if result is not None:
                await result
        await self.send_prompt(directory, session_id, parts, model_selection, agent)
        return session_id
