"""Per-turn subscriptions to the agent server's ``/event`` stream."""
from __future__ import annotations

import asyncio
import codecs
import json
import logging
from typing import Any, Callable, List, Optional, Tuple

import aiohttp

from agent_errors import StreamClosed, StreamConnectFailed, StreamFrameParseError

logger = logging.getLogger(__name__)

FRAME_DELIMITER = "\n\n"
DATA_PREFIX = "data:"

EventCallback = Callable[[dict], None]
ErrorCallback = Callable[[Exception], None]


def split_frames(buffer: str) -> Tuple[List[str], str]:
    """Split ``buffer`` into complete frames and the trailing partial frame."""
    buffer = buffer.replace("\r\n", "\n")
    pieces = buffer.split(FRAME_DELIMITER)
    rest = pieces.pop()
    return [piece for piece in pieces if piece.strip()], rest


def parse_frame(frame: str) -> Optional[Any]:
    """Decode the ``data:`` payload of one frame; None for comment-only frames."""
    data_lines = []
    for line in frame.split("\n"):
        if not line.startswith(DATA_PREFIX):
            continue
        value = line[len(DATA_PREFIX):]
        if value.startswith(" "):
            value = value[1:]
        data_lines.append(value)
    if not data_lines:
        return None
    raw = "\n".join(data_lines)
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise StreamFrameParseError(raw, f"invalid JSON ({exc.msg})") from exc


class EventSubscription:
    """One streaming GET against ``/event`` feeding a single listener.

    ``connected`` resolves as soon as the server answers with a readable
    body, before any event is read, so callers can gate prompt sending on it.
    """

    def __init__(
        self,
        http: aiohttp.ClientSession,
        base_url: str,
        directory: str,
        on_event: EventCallback,
        on_error: Optional[ErrorCallback] = None,
    ) -> None:
        self.http = http
        self.url = f"{base_url.rstrip('/')}/event"
        self.directory = directory
        self.on_event = on_event
        self.on_error = on_error
        self.connected: asyncio.Future = asyncio.get_running_loop().create_future()
        self.cancelled = False
        self._task: Optional[asyncio.Task] = None

    def start(self) -> "EventSubscription":
        logger.info("subscribing to %s for %s", self.url, self.directory)
        self._task = asyncio.create_task(self._run(), name=f"event-stream:{self.directory}")
        return self

    def unsubscribe(self) -> None:
        if self.cancelled:
            return
        logger.info("unsubscribing from event stream for %s", self.directory)
        self.cancelled = True
        if self._task and not self._task.done():
            self._task.cancel()
        if not self.connected.done():
            self.connected.cancel()

    async def wait_closed(self) -> None:
        if self._task:
            await asyncio.gather(self._task, return_exceptions=True)

    async def _run(self) -> None:
        try:
            await self._read()
        except asyncio.CancelledError:
            if not self.cancelled:
                raise
            logger.debug("event stream for %s aborted", self.directory)
        except Exception as exc:
            self._fail(exc)

    async def _read(self) -> None:
        headers = {"Accept": "text/event-stream", "Cache-Control": "no-cache"}
        timeout = aiohttp.ClientTimeout(total=None, sock_read=None)
        try:
            response = await self.http.get(
                self.url,
                params={"directory": self.directory},
                headers=headers,
                timeout=timeout,
            )
        except aiohttp.ClientError as exc:
            raise StreamConnectFailed(f"Event stream connection failed: {exc}") from exc

        async with response:
            if response.status >= 300:
                raise StreamConnectFailed(
                    f"Event stream connection failed: {response.status} {response.reason}"
                )
            logger.info("event stream connected for %s", self.directory)
            if not self.connected.done():
                self.connected.set_result(None)

            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            buffer = ""
            async for data in response.content.iter_any():
                if self.cancelled:
                    return
                buffer += decoder.decode(data)
                frames, buffer = split_frames(buffer)
                for frame in frames:
                    self._dispatch(frame)
                    if self.cancelled:
                        return

        logger.info("event stream for %s ended", self.directory)
        raise StreamClosed("Event stream closed by server")

    def _dispatch(self, frame: str) -> None:
        try:
            payload = parse_frame(frame)
        except StreamFrameParseError as exc:
            logger.warning("dropping event frame: %s", exc)
            return
        if not isinstance(payload, dict):
            if payload is not None:
                logger.warning("dropping non-object event frame: %r", payload)
            return
        logger.debug("event: %s", payload.get("type"))
        try:
            self.on_event(payload)
        except Exception:
            logger.exception("event listener failed for %s", payload.get("type"))

    def _fail(self, exc: Exception) -> None:
        if self.cancelled:
            return
        if isinstance(exc, aiohttp.ClientError):
            exc = StreamConnectFailed(f"Event stream failed: {exc}")
        logger.error("event stream error for %s: %s", self.directory, exc)
        if not self.connected.done():
            self.connected.set_exception(exc)
        if self.on_error:
            self.on_error(exc)


def subscribe(
    http: aiohttp.ClientSession,
    base_url: str,
    directory: str,
    on_event: EventCallback,
    on_error: Optional[ErrorCallback] = None,
) -> EventSubscription:
    return EventSubscription(http, base_url, directory, on_event, on_error).start()
