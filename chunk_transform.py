"""Translate agent server events into the chunk protocol consumed by the UI.

A ``ChunkTransformer`` is built for one conversation turn and thrown away
when that turn's subscription ends. Every chunk is a plain ``dict`` keyed by
``"type"``:

    start, start-step, finish-step, finish
    text-start, text-delta, text-end
    tool-input-start, tool-input-delta, tool-input-available
    tool-output-available, tool-output-error
    message-metadata, session-title, error, auth-error, ask-user-question

Ordering within a turn matters: ``start``/``start-step`` come first, a tool
call's ``tool-input-start`` precedes every other chunk for that call, and
``finish`` is the last chunk of a completed turn.
"""
from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Set

from agent_errors import ABORTED, AUTH_REQUIRED, classify_error, error_message

logger = logging.getLogger(__name__)

TOOL_NAMES = {
    "bash": "Bash",
    "read": "Read",
    "write": "Write",
    "edit": "Edit",
    "glob": "Glob",
    "grep": "Grep",
    "webfetch": "WebFetch",
    "websearch": "WebSearch",
    "task": "Task",
    "question": "AskUserQuestion",
    "todoread": "TodoRead",
    "todowrite": "TodoWrite",
    "lookup_type": "LookupType",
    "list_types": "ListTypes",
    "skill": "Skill",
}

THINKING_TOOL = "Thinking"
UNHANDLED_PARTS = {"file", "snapshot", "patch", "agent", "retry", "compaction", "subtask"}
IGNORED_EVENTS = {
    "server.connected",
    "server.heartbeat",
    "message.removed",
    "message.part.removed",
    "session.created",
    "session.deleted",
    "permission.replied",
    "todo.updated",
}
PLACEHOLDER_TITLE_PREFIX = "New session - "
PERMISSION_OPTIONS = (
    {"label": "Allow", "description": "Allow this action"},
    {"label": "Deny", "description": "Deny this action"},
    {"label": "Always Allow", "description": "Remember this choice"},
)


def map_tool_name(tool: Optional[str]) -> str:
    if not tool:
        return "Tool"
    return TOOL_NAMES.get(tool.lower(), tool)


def parse_tool_output(output: Any) -> Any:
    if not isinstance(output, str):
        return output if output is not None else {"content": ""}
    try:
        return json.loads(output)
    except ValueError:
        return {"content": output}


def session_id_from_event(event: dict) -> Optional[str]:
    """The session an event belongs to, or None for server-wide events."""
    kind = event.get("type")
    props = event.get("properties") or {}
    if kind == "message.updated":
        value = (props.get("info") or {}).get("sessionID")
    elif kind == "message.part.updated":
        value = (props.get("part") or {}).get("sessionID")
    elif kind in {"session.created", "session.updated", "session.deleted"}:
        value = (props.get("info") or {}).get("id")
    elif kind in {
        "message.removed",
        "message.part.removed",
        "session.status",
        "session.idle",
        "session.error",
        "permission.updated",
        "permission.replied",
        "todo.updated",
    }:
        value = props.get("sessionID")
    else:
        value = None
    return str(value) if value else None


@dataclass
class TextPartState:
    started: bool = False
    text: str = ""
    ended: bool = False


class ChunkTransformer:
    """Per-turn state machine from raw server events to protocol chunks."""

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self.started = False
        self.finished = False
        self.start_time: Optional[float] = None
        self.text_parts: Dict[str, TextPartState] = {}
        self.opened_tools: Set[str] = set()
        self.assistant_message_id: Optional[str] = None

    def _duration_ms(self) -> Optional[int]:
        if self.start_time is None:
            return None
        return int((self._clock() - self.start_time) * 1000)

    def _open(self, out: List[dict]) -> None:
        if self.started:
            return
        self.started = True
        self.start_time = self._clock()
        out.append({"type": "start"})
        out.append({"type": "start-step"})

    def session_created(self, session_id: str) -> List[dict]:
        """Announce a freshly created session so the caller can persist it."""
        if self.finished:
            return []
        out: List[dict] = []
        self._open(out)
        out.append({"type": "message-metadata", "messageMetadata": {"sessionId": session_id}})
        return out

    def consume(self, event: dict) -> List[dict]:
        if self.finished:
            return []
        out: List[dict] = []
        self._open(out)

        kind = event.get("type")
        props = event.get("properties") or {}

        if kind == "message.updated":
            self._message_updated(props.get("info") or {}, out)
        elif kind == "message.part.updated":
            self._part_updated(props.get("part") or {}, props.get("delta"), out)
        elif kind == "session.status":
            status = props.get("status") or {}
            if status.get("type") == "retry":
                logger.info(
                    "session %s retrying (attempt %s): %s",
                    props.get("sessionID"),
                    status.get("attempt"),
                    status.get("message") or "",
                )
        elif kind == "session.idle":
            out.append({"type": "finish-step"})
            out.append(
                {
                    "type": "finish",
                    "messageMetadata": {
                        "sessionId": props.get("sessionID"),
                        "durationMs": self._duration_ms(),
                    },
                }
            )
            self.finished = True
        elif kind == "session.error":
            error = props.get("error")
            if error:
                out.append({"type": "error", "errorText": error_message(error)})
        elif kind == "session.updated":
            title = (props.get("info") or {}).get("title")
            if title and not title.startswith(PLACEHOLDER_TITLE_PREFIX):
                out.append({"type": "session-title", "title": title})
        elif kind == "permission.updated":
            out.append(self._permission(props))
        elif kind in IGNORED_EVENTS:
            pass
        else:
            logger.debug("dropping unhandled event %s", kind)
        return out

    def _message_updated(self, info: dict, out: List[dict]) -> None:
        if info.get("role") != "assistant":
            return
        if info.get("id"):
            self.assistant_message_id = info["id"]
        if (info.get("time") or {}).get("completed"):
            tokens = info.get("tokens") or {}
            input_tokens = tokens.get("input") or 0
            output_tokens = tokens.get("output") or 0
            out.append(
                {
                    "type": "message-metadata",
                    "messageMetadata": {
                        "sessionId": info.get("sessionID"),
                        "inputTokens": input_tokens,
                        "outputTokens": output_tokens,
                        "totalTokens": input_tokens + output_tokens,
                        "totalCostUsd": info.get("cost"),
                        "durationMs": self._duration_ms(),
                    },
                }
            )
        if info.get("error"):
            self._error(info["error"], out)

    def _error(self, error: Any, out: List[dict]) -> None:
        kind, message = classify_error(error)
        if kind == ABORTED:
            logger.info("turn aborted: %s", message)
            return
        chunk_type = "auth-error" if kind == AUTH_REQUIRED else "error"
        out.append({"type": chunk_type, "errorText": message})

    def _part_updated(self, part: dict, delta: Optional[str], out: List[dict]) -> None:
        message_id = part.get("messageID")
        if message_id and self.assistant_message_id and message_id != self.assistant_message_id:
            return

        part_type = part.get("type")
        if part_type == "text":
            self._text_part(part, delta, out)
        elif part_type == "reasoning":
            self._reasoning_part(part, delta, out)
        elif part_type == "tool":
            self._tool_part(part, out)
        elif part_type == "step-start":
            out.append({"type": "start-step"})
        elif part_type == "step-finish":
            out.append({"type": "finish-step"})
        elif part_type in UNHANDLED_PARTS:
            logger.debug("ignoring %s part %s", part_type, part.get("id"))
        else:
            logger.debug("ignoring unknown part type %r", part_type)

    def _text_part(self, part: dict, delta: Optional[str], out: List[dict]) -> None:
        part_id = part.get("id")
        state = self.text_parts.setdefault(part_id, TextPartState())
        if not state.started:
            state.started = True
            out.append({"type": "text-start", "id": part_id})

        text = part.get("text")
        if delta:
            state.text += delta
            out.append({"type": "text-delta", "id": part_id, "delta": delta})
        elif text and text != state.text:
            if not text.startswith(state.text):
                logger.warning("text part %s was rewritten; sending only the new tail", part_id)
            suffix = text[len(state.text):]
            if suffix:
                state.text = text
                out.append({"type": "text-delta", "id": part_id, "delta": suffix})

        if (part.get("time") or {}).get("end") and not state.ended:
            state.ended = True
            out.append({"type": "text-end", "id": part_id})

    def _open_tool(self, tool_call_id: str, tool_name: str, out: List[dict]) -> None:
        if tool_call_id in self.opened_tools:
            return
        self.opened_tools.add(tool_call_id)
        out.append({"type": "tool-input-start", "toolCallId": tool_call_id, "toolName": tool_name})

    def _reasoning_part(self, part: dict, delta: Optional[str], out: List[dict]) -> None:
        tool_call_id = f"thinking-{part.get('id')}"
        self._open_tool(tool_call_id, THINKING_TOOL, out)
        if delta:
            out.append(
                {"type": "tool-input-delta", "toolCallId": tool_call_id, "inputTextDelta": delta}
            )
            return
        out.append(
            {
                "type": "tool-input-available",
                "toolCallId": tool_call_id,
                "toolName": THINKING_TOOL,
                "input": {"text": part.get("text") or ""},
            }
        )
        out.append(
            {"type": "tool-output-available", "toolCallId": tool_call_id, "output": {"completed": True}}
        )

    def _tool_part(self, part: dict, out: List[dict]) -> None:
        tool_call_id = part.get("callID") or part.get("id")
        tool_name = map_tool_name(part.get("tool"))
        state = part.get("state") or {}
        status = state.get("status")

        self._open_tool(tool_call_id, tool_name, out)
        if status == "pending":
            return
        if status not in {"running", "completed", "error"}:
            logger.debug("ignoring tool %s in state %r", tool_call_id, status)
            return

        out.append(
            {
                "type": "tool-input-available",
                "toolCallId": tool_call_id,
                "toolName": tool_name,
                "input": state.get("input") or {},
            }
        )
        if status == "completed":
            out.append(
                {
                    "type": "tool-output-available",
                    "toolCallId": tool_call_id,
                    "output": parse_tool_output(state.get("output")),
                }
            )
        elif status == "error":
            out.append(
                {
                    "type": "tool-output-error",
                    "toolCallId": tool_call_id,
                    "errorText": str(state.get("error") or "Tool failed"),
                }
            )

    @staticmethod
    def _permission(permission: dict) -> dict:
        title = permission.get("title") or "Permission requested"
        return {
            "type": "ask-user-question",
            "toolUseId": permission.get("id"),
            "questions": [
                {
                    "question": title,
                    "header": title,
                    "options": [dict(option) for option in PERMISSION_OPTIONS],
                    "multiSelect": False,
                }
            ],
        }


def _history_part(part: dict) -> Optional[dict]:
    part_type = part.get("type")
    if part_type == "text":
        text = part.get("text")
        return {"type": "text", "text": text} if text else None
    if part_type == "reasoning":
        text = part.get("text")
        return {"type": "reasoning", "id": part.get("id"), "text": text} if text else None
    if part_type == "file":
        mime = part.get("mime") or ""
        if mime.startswith("image/") and part.get("url"):
            return {
                "type": "data-image",
                "data": {"url": part["url"], "mediaType": mime, "filename": part.get("filename")},
            }
        return None
    if part_type == "tool":
        tool_name = map_tool_name(part.get("tool"))
        state = part.get("state") or {}
        status = state.get("status")
        output = None
        if status == "completed":
            ui_state = "output-available"
            output = parse_tool_output(state.get("output"))
        elif status == "error":
            ui_state = "output-error"
            output = {"error": state.get("error")}
        else:
            ui_state = "call"
        return {
            "type": f"tool-{tool_name}",
            "toolCallId": part.get("callID") or part.get("id"),
            "toolName": tool_name,
            "state": ui_state,
            "input": state.get("input"),
            "output": output,
        }
    return None


def transform_session_messages(messages: List[dict]) -> List[dict]:
    """Convert stored ``{info, parts}`` session messages into UI messages.

    Messages left without any displayable part are dropped.
    """
    result: List[dict] = []
    for entry in messages:
        info = entry.get("info") or {}
        ui_message: Dict[str, Any] = {"id": info.get("id"), "role": info.get("role"), "parts": []}
        if info.get("role") == "assistant":
            tokens = info.get("tokens") or {}
            ui_message["metadata"] = {
                "sessionId": info.get("sessionID"),
                "inputTokens": tokens.get("input"),
                "outputTokens": tokens.get("output"),
                "totalTokens": (tokens.get("input") or 0) + (tokens.get("output") or 0),
                "cost": info.get("cost"),
            }
        for part in entry.get("parts") or []:
            ui_part = _history_part(part)
            if ui_part:
                ui_message["parts"].append(ui_part)
        if ui_message["parts"]:
            result.append(ui_message)
    return result
