#!/usr/bin/env python3
"""Core orchestration logic for the lane hub (opencode server, many sub-chat lanes)."""
from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
from collections import deque
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Set

import lane_store
from agent_errors import AgentError
from agent_server_client import AgentServerClient
from chunk_transform import ChunkTransformer, session_id_from_event, transform_session_messages
from event_stream import subscribe
from server_manager import DEFAULT_HOSTNAME, DEFAULT_PORT, START_TIMEOUT, ServerManager, ServerState
from session_gateway import PLAN_AGENT, ModelSelection, SessionGateway, build_parts
from session_registry import SessionRegistry

logger = logging.getLogger(__name__)

SERVER_EVENTS = {"server.connected", "server.heartbeat"}
PERMISSION_RESPONSES = {"once", "always", "reject"}
NOT_RUNNING_TEXT = "Agent server not running. Use :start or restart the hub."
MODES = {"agent", "plan"}

ChunkCallback = Callable[[dict], None]


@dataclass
class Lane:
    sub_chat_id: str
    cwd: str
    session_id: Optional[str] = None
    state: str = "idle"
    title: Optional[str] = None


class _Turn:
    """One in-flight user turn on a lane."""

    def __init__(self, lane: Lane, on_chunk: ChunkCallback) -> None:
        self.lane = lane
        self.on_chunk = on_chunk
        self.transformer = ChunkTransformer()
        self.session_id = lane.session_id
        self.subscription = None
        self.task: Optional[asyncio.Task] = None
        self.cancelled = False
        self.failed = False
        self.done = asyncio.Event()

    def fail(self, message: str) -> None:
        if self.done.is_set():
            return
        self.failed = True
        self.on_chunk({"type": "error", "errorText": message})
        self.done.set()

    def abort(self) -> None:
        self.cancelled = True
        if self.subscription is not None:
            self.subscription.unsubscribe()
        if self.task and not self.task.done():
            self.task.cancel()
        self.done.set()


class Hub:
    def __init__(
        self,
        agent_path: Optional[str] = None,
        hostname: str = DEFAULT_HOSTNAME,
        port: int = DEFAULT_PORT,
        start_timeout: float = START_TIMEOUT,
        default_cwd: Optional[str] = None,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        mode: str = "agent",
        state_dir: Optional[str] = None,
    ) -> None:
        self.default_cwd = default_cwd
        self.repo_path = default_cwd or os.getcwd()
        self.provider = provider
        self.model = model
        self.mode = mode if mode in MODES else "agent"

        self.server = ServerManager(
            binary=agent_path,
            hostname=hostname,
            port=port,
            start_timeout=start_timeout,
        )
        self.server.add_listener(self._on_server_state)
        self.client: Optional[AgentServerClient] = None
        self.gateway: Optional[SessionGateway] = None
        self.registry = SessionRegistry(remote_abort=self._remote_abort)

        self.lanes: Dict[str, Lane] = {}
        self.tasks: Dict[str, asyncio.Task] = {}
        self._stopping = False
        self._subscribers: Set[asyncio.Queue] = set()
        self._sequence = 0
        self._event_log: deque[str] = deque(maxlen=500)
        self.state_dir = state_dir or os.path.join(self.repo_path, ".lanes")
        os.makedirs(self.state_dir, exist_ok=True)
        self._state_file = os.path.join(self.state_dir, "state.jsonl")
        self._session_ids = lane_store.load_session_ids(self.state_dir)

    # ---------- lifecycle ----------

    async def start(self) -> bool:
        """Bring the agent server up; failures are reported, never raised."""
        self._stopping = False
        try:
            await self.server.start(self.repo_path)
        except AgentError as exc:
            self._broadcast({"who": "agent-server", "type": "error", "payload": {"message": str(exc)}})
            return False
        await self._attach_client()
        return True

    async def _attach_client(self) -> None:
        base_url = self.server.base_url
        if not base_url:
            return
        if self.client is not None and self.client.base_url == base_url.rstrip("/"):
            return
        if self.client is not None:
            await self.client.close()
        self.client = AgentServerClient(base_url)
        self.gateway = SessionGateway(self.client)

    async def stop(self) -> None:
        if self._stopping:
            return
        self._stopping = True
        for sub_chat_id in self.registry.active():
            await self.registry.cancel(sub_chat_id)
        for task in list(self.tasks.values()):
            task.cancel()
        if self.tasks:
            await asyncio.gather(*self.tasks.values(), return_exceptions=True)
        self.tasks.clear()
        if self.client is not None:
            await self.client.close()
        self.client = None
        self.gateway = None
        await self.server.shutdown()

    def status(self) -> dict:
        return self.server.state.as_dict()

    def _on_server_state(self, state: ServerState) -> None:
        self._broadcast({"who": "agent-server", "type": "server_state", "payload": state.as_dict()})

    # ---------- feed ----------

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=1000)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)

    def _broadcast(self, payload: Dict[str, Any]) -> None:
        dead: List[asyncio.Queue] = []
        self._sequence += 1
        event = dict(payload)
        event["seq"] = self._sequence
        who = event.get("who") or "?"
        etype = event.get("type") or "?"
        self._event_log.append(f"[{self._sequence:03d}] {who} {etype}")
        try:
            with open(self._state_file, "a", encoding="utf-8") as handle:
                handle.write(json.dumps(event, ensure_ascii=False) + "\n")
        except OSError as exc:
            logger.warning("could not append to %s: %s", self._state_file, exc)
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                dead.append(queue)
        for queue in dead:
            self._subscribers.discard(queue)

    def render_recent(self, count: int = 50) -> List[str]:
        if count <= 0:
            return []
        return list(self._event_log)[-count:]

    # ---------- lanes ----------

    def _lane(self, sub_chat_id: str, cwd: Optional[str] = None) -> Lane:
        lane = self.lanes.get(sub_chat_id)
        if lane is None:
            lane = Lane(
                sub_chat_id=sub_chat_id,
                cwd=os.path.abspath(cwd or self.default_cwd or os.getcwd()),
                session_id=self._session_ids.get(sub_chat_id),
            )
            self.lanes[sub_chat_id] = lane
            self._broadcast({"who": sub_chat_id, "type": "lane_added", "payload": {"lane": sub_chat_id}})
        elif cwd:
            lane.cwd = os.path.abspath(cwd)
        return lane

    def _set_state(self, lane: Lane, state: str) -> None:
        if lane.state == state:
            return
        lane.state = state
        self._broadcast(
            {"who": lane.sub_chat_id, "type": "lane_state", "payload": {"lane": lane.sub_chat_id, "state": state}}
        )

    def _remember_session(self, lane: Lane, session_id: str) -> None:
        if lane.session_id == session_id and self._session_ids.get(lane.sub_chat_id) == session_id:
            return
        lane.session_id = session_id
        self._session_ids[lane.sub_chat_id] = session_id
        try:
            lane_store.update_session_id(self.state_dir, lane.sub_chat_id, session_id, meta={"cwd": lane.cwd})
        except OSError as exc:
            logger.warning("could not persist session for %s: %s", lane.sub_chat_id, exc)

    async def close_lane(self, sub_chat_id: str) -> bool:
        await self.cancel(sub_chat_id)
        lane = self.lanes.pop(sub_chat_id, None)
        task = self.tasks.pop(sub_chat_id, None)
        if task is not None and not task.done():
            task.cancel()
        if lane is None:
            return False
        self._broadcast({"who": sub_chat_id, "type": "lane_removed", "payload": {"lane": sub_chat_id}})
        return True

    # ---------- turns ----------

    async def run_turn(
        self,
        sub_chat_id: str,
        prompt: str,
        on_chunk: ChunkCallback,
        cwd: Optional[str] = None,
        session_id: Optional[str] = None,
        mode: Optional[str] = None,
        provider: Optional[str] = None,
        model: Optional[str] = None,
        images: Optional[List[dict]] = None,
    ) -> None:
        """Run one user turn on a lane, handing each chunk to ``on_chunk``.

        Returns once the turn finished, failed or was cancelled.
        """
        lane = self._lane(sub_chat_id, cwd)
        if session_id:
            lane.session_id = session_id

        if self.registry.is_active(sub_chat_id):
            logger.info("lane %s already has an active turn; cancelling it", sub_chat_id)
            await self.registry.cancel(sub_chat_id)

        if self.client is None or self.gateway is None or not self.server.is_running():
            on_chunk({"type": "error", "errorText": NOT_RUNNING_TEXT})
            return

        provider = provider or self.provider
        model = model or self.model
        selection = ModelSelection(provider, model) if provider and model else None
        agent = PLAN_AGENT if (mode or self.mode) == "plan" else None
        parts = build_parts(prompt, images)

        turn = _Turn(lane, on_chunk)
        self.registry.register(sub_chat_id, turn.abort, lane.session_id)
        self._set_state(lane, "working")
        turn.task = asyncio.create_task(
            self._drive_turn(turn, parts, selection, agent), name=f"turn:{sub_chat_id}"
        )
        try:
            await turn.done.wait()
        finally:
            if turn.subscription is not None:
                turn.subscription.unsubscribe()
            if not turn.task.done():
                turn.task.cancel()
            await asyncio.gather(turn.task, return_exceptions=True)
            self.registry.remove(sub_chat_id, turn.abort)
            if turn.cancelled:
                self._set_state(lane, "cancelled")
            elif turn.failed:
                self._set_state(lane, "error")
            else:
                self._set_state(lane, "idle")

    async def _drive_turn(
        self,
        turn: _Turn,
        parts: List[dict],
        selection: Optional[ModelSelection],
        agent: Optional[str],
    ) -> None:
        lane = turn.lane
        assert self.client is not None and self.gateway is not None
        try:
            turn.subscription = subscribe(
                self.client.http,
                self.client.base_url,
                lane.cwd,
                lambda event: self._handle_event(turn, event),
                lambda exc: self._handle_stream_error(turn, exc),
            )
            await self.gateway.start_turn(
                turn.subscription,
                lane.cwd,
                parts,
                existing_session_id=lane.session_id,
                model_selection=selection,
                agent=agent,
                on_session=lambda sid, created: self._on_session(turn, sid, created),
            )
        except AgentError as exc:
            logger.error("turn on %s failed: %s", lane.sub_chat_id, exc)
            turn.fail(str(exc))

    def _on_session(self, turn: _Turn, session_id: str, created: bool) -> None:
        turn.session_id = session_id
        self.registry.update_session_id(turn.lane.sub_chat_id, session_id)
        if created:
            self._deliver(turn, turn.transformer.session_created(session_id))

    def _handle_event(self, turn: _Turn, event: dict) -> None:
        if turn.done.is_set():
            return
        if event.get("type") in SERVER_EVENTS:
            return
        event_session = session_id_from_event(event)
        if event_session and event_session != turn.session_id:
            return
        self._deliver(turn, turn.transformer.consume(event))
        if turn.transformer.finished:
            turn.done.set()

    def _handle_stream_error(self, turn: _Turn, exc: Exception) -> None:
        if turn.cancelled:
            return
        turn.fail(str(exc))

    def _deliver(self, turn: _Turn, chunks: List[dict]) -> None:
        lane = turn.lane
        for chunk in chunks:
            kind = chunk.get("type")
            if kind == "message-metadata":
                session_id = (chunk.get("messageMetadata") or {}).get("sessionId")
                if session_id:
                    self._remember_session(lane, session_id)
            elif kind == "session-title":
                lane.title = chunk.get("title")
            turn.on_chunk(chunk)

    async def chat(self, sub_chat_id: str, prompt: str, **options: Any) -> AsyncIterator[dict]:
        """Async-iterator form of :meth:`run_turn`."""
        queue: asyncio.Queue = asyncio.Queue()
        end = object()

        async def runner() -> None:
            try:
                await self.run_turn(sub_chat_id, prompt, queue.put_nowait, **options)
            finally:
                queue.put_nowait(end)

        task = asyncio.create_task(runner(), name=f"chat:{sub_chat_id}")
        try:
            while True:
                chunk = await queue.get()
                if chunk is end:
                    break
                yield chunk
            await task
        finally:
            if not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)

    async def send_to_lane(self, sub_chat_id: str, text: str, cwd: Optional[str] = None) -> None:
        """Start a turn in the background and broadcast its chunks to the feed."""
        self._lane(sub_chat_id, cwd)
        self._broadcast({"who": "user", "type": "user_to_lane", "payload": {"lane": sub_chat_id, "text": text}})
        previous = self.tasks.get(sub_chat_id)
        if previous is not None and not previous.done():
            await self.cancel(sub_chat_id)
        self.tasks[sub_chat_id] = asyncio.create_task(
            self._pump_lane(sub_chat_id, text, cwd), name=f"lane:{sub_chat_id}"
        )

    async def _pump_lane(self, sub_chat_id: str, text: str, cwd: Optional[str]) -> None:
        try:
            async for chunk in self.chat(sub_chat_id, text, cwd=cwd):
                self._broadcast({"who": sub_chat_id, "type": "chunk", "payload": chunk})
        except asyncio.CancelledError:
            return
        except Exception as exc:
            logger.exception("lane %s crashed", sub_chat_id)
            self._broadcast({"who": sub_chat_id, "type": "error", "payload": {"message": f"lane failed: {exc}"}})

    async def cancel(self, sub_chat_id: str) -> bool:
        cancelled = await self.registry.cancel(sub_chat_id)
        if cancelled:
            self._broadcast({"who": sub_chat_id, "type": "lane_cancelled", "payload": {"lane": sub_chat_id}})
        return cancelled

    def is_active(self, sub_chat_id: str) -> bool:
        return self.registry.is_active(sub_chat_id)

    async def _remote_abort(self, session_id: str) -> None:
        if self.client is None:
            return
        await self.client.abort_session(session_id)

    # ---------- server queries ----------

    def _require_client(self) -> AgentServerClient:
        if self.client is None or not self.server.is_running():
            raise AgentError("Agent server not running")
        return self.client

    async def respond_permission(self, session_id: str, permission_id: str, response: str) -> None:
        if response not in PERMISSION_RESPONSES:
            raise ValueError(f"response must be one of {sorted(PERMISSION_RESPONSES)}")
        client = self._require_client()
        await client.respond_permission(session_id, permission_id, response)

    async def providers(self) -> dict:
        empty = {"providers": [], "defaults": {}, "connected": []}
        if self.client is None:
            return empty
        try:
            payload = await self.client.providers()
        except AgentError as exc:
            logger.warning("provider listing failed: %s", exc)
            return empty
        connected = list(payload.get("connected") or [])
        providers = [p for p in payload.get("all") or [] if p.get("id") in connected]
        return {"providers": providers, "defaults": payload.get("default") or {}, "connected": connected}

    async def list_sessions(self, directory: Optional[str] = None) -> List[dict]:
        if self.client is None:
            return []
        try:
            return await self.client.list_sessions(directory)
        except AgentError as exc:
            logger.warning("session listing failed: %s", exc)
            return []

    async def mcp_status(self, project_path: str) -> dict:
        if self.client is None:
            return {"mcpServers": [], "projectPath": project_path, "error": "Server not running"}
        try:
            payload = await self.client.mcp_status()
        except AgentError as exc:
            return {"mcpServers": [], "projectPath": project_path, "error": str(exc)}
        servers = [
            {
                "name": name,
                "status": (status or {}).get("status", "pending") if isinstance(status, dict) else "pending",
                "config": {},
            }
            for name, status in payload.items()
        ]
        return {"mcpServers": servers, "projectPath": project_path}

    async def session_messages(self, session_id: str, directory: str) -> dict:
        if self.client is None:
            return {"messages": [], "sessionId": session_id}
        try:
            raw = await self.client.session_messages(session_id, directory)
        except AgentError as exc:
            logger.error("failed to load messages for %s: %s", session_id, exc)
            return {"messages": [], "sessionId": session_id}
        return {"messages": transform_session_messages(raw), "sessionId": session_id}


def install_signal_handlers(loop: asyncio.AbstractEventLoop, set_event: asyncio.Event) -> None:
    def _handler(*_: Any) -> None:
        set_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _handler)
        except NotImplementedError:
            pass
