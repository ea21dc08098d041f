#!/usr/bin/env python3
"""Interactive CLI for the lane hub: chat with the opencode agent over many lanes."""
from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
import threading
from typing import Dict, Optional

from agent_errors import AgentError
from lane_hub_core import Hub, install_signal_handlers
from server_manager import DEFAULT_HOSTNAME, DEFAULT_PORT, START_TIMEOUT

DEFAULT_LANE = "main"


class Palette:
    """ANSI colours, or nothing when output is not a terminal."""

    def __init__(self, enabled: bool) -> None:
        self.enabled = enabled
        self.colors = {
            "you": "\x1b[38;5;171m",
            "agent": "\x1b[38;5;39m",
            "tool": "\x1b[38;5;208m",
            "think": "\x1b[38;5;111m",
            "ok": "\x1b[38;5;71m",
            "warn": "\x1b[38;5;178m",
            "err": "\x1b[38;5;203m",
            "muted": "\x1b[38;5;244m",
        }
        self.reset = "\x1b[0m"

    def c(self, key: str) -> str:
        if not self.enabled:
            return ""
        return self.colors.get(key, "")

    def r(self) -> str:
        return self.reset if self.enabled else ""


class StdinBridge:
    """Bridge blocking stdin reads into the asyncio event loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop) -> None:
        self.loop = loop
        self.queue: asyncio.Queue[str] = asyncio.Queue()
        self._stop = threading.Event()
        self._thr = threading.Thread(target=self._run, daemon=True)

    def start(self) -> None:
        self._thr.start()

    def stop(self) -> None:
        self._stop.set()

    def _run(self) -> None:
        while not self._stop.is_set():
            line = sys.stdin.readline()
            if not line:
                self.loop.call_soon_threadsafe(self.queue.put_nowait, ":quit")
                break
            self.loop.call_soon_threadsafe(self.queue.put_nowait, line.rstrip("\n"))


HELP = (
    "Commands (prefix : ; free text goes to the current lane)\n"
    "  :help                       Show this help\n"
    "  :lanes                      List lanes, states and sessions\n"
    "  :lane <id>                  Switch the current lane\n"
    "  :send <id> <text>           Send text to a lane\n"
    "  :cancel [id]                Cancel the active turn of a lane\n"
    "  :close <id>                 Cancel and forget a lane\n"
    "  :status                     Show the agent server state\n"
    "  :start                      Retry starting the agent server\n"
    "  :providers                  List connected providers and default models\n"
    "  :sessions                   List sessions known to the server\n"
    "  :mcp                        Show MCP server status\n"
    "  :history [id]               Show stored messages of a lane's session\n"
    "  :allow|:deny|:always <permission_id> [id]\n"
    "                              Answer a permission request\n"
    "  :stderr [N]                 Show last N agent server stderr lines\n"
    "  :recent [N]                 Show the last N hub events (default 20)\n"
    "  :statefeed on|off           Toggle lane state change events\n"
    "  :quit | :exit               Quit\n"
)

PERMISSION_COMMANDS = {"allow": "once", "deny": "reject", "always": "always"}


class Printer:
    """Pretty-printer for hub feed events and lane chunks."""

    PREFIX_LABEL_WIDTH = 18

    def __init__(self, palette: Palette) -> None:
        self.p = palette
        self.show_state_events = True
        self._text: Dict[str, str] = {}
        self._thinking: Dict[str, str] = {}

    def line(self, seq: int, label: str, text: str, colour: str, system: bool = False) -> None:
        colour_key = "muted" if system else colour
        label = label.strip()[: self.PREFIX_LABEL_WIDTH]
        seq_str = f"{self.p.c('muted')}[{seq:03d}]{self.p.r()}"
        label_str = f"{self.p.c(colour_key)}{label:<{self.PREFIX_LABEL_WIDTH}}{self.p.r()}"
        prefix = f"{seq_str} {label_str}"
        indent = " " * (len(label) + 7 if not self.p.enabled else len(prefix))
        for idx, body in enumerate(text.splitlines() or [""]):
            prefix_out = prefix if idx == 0 else indent
            body_str = f"{self.p.c(colour_key)}{body}{self.p.r()}" if body else ""
            sys.stdout.write(f"{prefix_out} {body_str}\n")
        sys.stdout.flush()

    def flush(self, seq: int, lane: str) -> None:
        """Print partial text left for ``lane`` and drop its buffers."""
        prefix = f"{lane}:"
        for key in [k for k in self._text if k.startswith(prefix)]:
            text = self._text.pop(key)
            if text.strip():
                self.line(seq, f"{lane}→You", text, "agent")
        for key in [k for k in self._thinking if k.startswith(prefix)]:
            del self._thinking[key]

    def event(self, ev: dict) -> None:
        payload = ev.get("payload") or {}
        seq = ev.get("seq")
        who = ev.get("who") or "?"
        etype = ev.get("type")
        if seq is None:
            return

        if etype == "chunk":
            self.chunk(seq, who, payload)
        elif etype == "user_to_lane":
            self.line(seq, f"You→{payload.get('lane', '?')}", payload.get("text", ""), "you")
        elif etype == "error":
            self.line(seq, f"{who} error", payload.get("message") or "Unknown error", "err")
        elif etype == "server_state":
            status = payload.get("status", "?")
            detail = payload.get("base_url") or payload.get("last_error") or ""
            colour = {"running": "ok", "error": "err"}.get(status, "warn")
            self.line(seq, "server", f"{status} {detail}".strip(), colour, system=status != "error")
        elif etype == "lane_state":
            if self.show_state_events:
                self.line(seq, "state", f"{payload.get('lane')} → {payload.get('state')}", "muted", system=True)
        elif etype == "lane_added":
            self.line(seq, "lanes", f"added {payload.get('lane')}", "ok", system=True)
        elif etype == "lane_removed":
            self.line(seq, "lanes", f"removed {payload.get('lane')}", "warn", system=True)
        elif etype == "lane_cancelled":
            self.flush(seq, payload.get("lane") or who)
            self.line(seq, "lanes", f"cancelled {payload.get('lane')}", "warn", system=True)

    def chunk(self, seq: int, lane: str, chunk: dict) -> None:
        kind = chunk.get("type")
        if kind == "text-delta":
            key = f"{lane}:{chunk.get('id')}"
            self._text[key] = self._text.get(key, "") + (chunk.get("delta") or "")
        elif kind == "text-end":
            text = self._text.pop(f"{lane}:{chunk.get('id')}", "")
            if text.strip():
                self.line(seq, f"{lane}→You", text, "agent")
        elif kind == "tool-input-delta":
            key = f"{lane}:{chunk.get('toolCallId')}"
            self._thinking[key] = self._thinking.get(key, "") + (chunk.get("inputTextDelta") or "")
        elif kind == "tool-input-start":
            if chunk.get("toolName") != "Thinking":
                self.line(seq, f"{lane} tool", f"{chunk.get('toolName')} …", "tool", system=True)
        elif kind == "tool-input-available" and chunk.get("toolName") == "Thinking":
            self._thinking.pop(f"{lane}:{chunk.get('toolCallId')}", None)
            text = (chunk.get("input") or {}).get("text") or ""
            if text.strip():
                self.line(seq, f"{lane} thinking", text, "think", system=True)
        elif kind == "tool-output-error":
            self.line(seq, f"{lane} tool", chunk.get("errorText", ""), "err")
        elif kind in {"error", "auth-error"}:
            self.flush(seq, lane)
            label = f"{lane} auth" if kind == "auth-error" else f"{lane} error"
            self.line(seq, label, chunk.get("errorText", ""), "err")
        elif kind == "ask-user-question":
            for question in chunk.get("questions") or []:
                options = " / ".join(opt.get("label", "") for opt in question.get("options") or [])
                body = (
                    f"{question.get('question')}\n[{options}]  "
                    f"answer with :allow|:deny|:always {chunk.get('toolUseId')} {lane}"
                )
                self.line(seq, f"{lane} permission", body, "warn")
        elif kind == "session-title":
            self.line(seq, f"{lane} title", chunk.get("title", ""), "muted", system=True)
        elif kind == "finish":
            self.flush(seq, lane)
            meta = chunk.get("messageMetadata") or {}
            duration = meta.get("durationMs")
            suffix = f" in {duration / 1000:.1f}s" if isinstance(duration, (int, float)) else ""
            self.line(seq, lane, f"turn finished{suffix}", "ok", system=True)


def format_lanes(hub: Hub, current: str) -> str:
    if not hub.lanes:
        return "No lanes yet. Type a message to start the 'main' lane."
    lines = ["Lanes:"]
    for name in sorted(hub.lanes):
        lane = hub.lanes[name]
        marker = "*" if name == current else " "
        active = " active" if hub.is_active(name) else ""
        session = lane.session_id or "-"
        title = f" '{lane.title}'" if lane.title else ""
        lines.append(f" {marker} {name} [{lane.state}{active}] session {session}{title} cwd {lane.cwd}")
    return "\n".join(lines)


class Session:
    """Mutable CLI state shared by command handlers."""

    def __init__(self) -> None:
        self.current_lane = DEFAULT_LANE


async def handle_command(hub: Hub, printer: Printer, session: Session, raw: str) -> bool:
    text = raw.strip()
    if not text:
        return True

    if text[0] not in {":", "/"}:
        await hub.send_to_lane(session.current_lane, text)
        return True

    parts = text[1:].split()
    if not parts:
        return True
    cmd = parts[0].lower()
    args = parts[1:]

    if cmd in {"quit", "exit"}:
        return False

    if cmd in {"help", "?"}:
        print(HELP)
        return True

    if cmd == "lanes":
        print(format_lanes(hub, session.current_lane))
        return True

    if cmd == "lane":
        if len(args) != 1:
            print("Usage: :lane <id>")
            return True
        session.current_lane = args[0]
        print(f"Current lane: {session.current_lane}")
        return True

    if cmd == "send":
        if len(args) < 2:
            print("Usage: :send <id> <text...>")
            return True
        await hub.send_to_lane(args[0], " ".join(args[1:]))
        return True

    if cmd == "cancel":
        target = args[0] if args else session.current_lane
        found = await hub.cancel(target)
        print(f"Cancelled {target}." if found else f"No active turn on '{target}'.")
        return True

    if cmd == "close":
        if len(args) != 1:
            print("Usage: :close <id>")
            return True
        if not await hub.close_lane(args[0]):
            print(f"No such lane '{args[0]}'")
        return True

    if cmd == "status":
        state = hub.status()
        print(
            f"Agent server: {state['status']}"
            + (f" at {state['base_url']}" if state.get("base_url") else "")
            + (" (owned elsewhere)" if hub.server.external else "")
        )
        if state.get("last_error"):
            print(f"Last error: {state['last_error']}")
        return True

    if cmd == "start":
        if await hub.start():
            print(f"Agent server running at {hub.server.base_url}")
        return True

    if cmd == "providers":
        result = await hub.providers()
        if not result["providers"]:
            print("No connected providers.")
            return True
        defaults = result["defaults"]
        for provider in result["providers"]:
            pid = provider.get("id")
            models = provider.get("models") or {}
            names = sorted(models.keys() if isinstance(models, dict) else [m.get("id") for m in models])
            default = defaults.get(pid)
            suffix = f" (default {default})" if default else ""
            print(f"  - {pid}{suffix}: {', '.join(str(n) for n in names)}")
        return True

    if cmd == "sessions":
        sessions = await hub.list_sessions()
        if not sessions:
            print("No sessions.")
            return True
        for item in sessions:
            print(f"  - {item.get('id')} {item.get('title') or ''}".rstrip())
        return True

    if cmd == "mcp":
        result = await hub.mcp_status(hub.repo_path)
        if result.get("error"):
            print(f"MCP status unavailable: {result['error']}")
            return True
        if not result["mcpServers"]:
            print("No MCP servers configured.")
        for server in result["mcpServers"]:
            print(f"  - {server['name']}: {server['status']}")
        return True

    if cmd == "history":
        target = args[0] if args else session.current_lane
        lane = hub.lanes.get(target)
        if lane is None or not lane.session_id:
            print(f"Lane '{target}' has no session yet.")
            return True
        result = await hub.session_messages(lane.session_id, lane.cwd)
        for message in result["messages"]:
            for part in message["parts"]:
                if part["type"] == "text":
                    print(f"{message['role']}: {part['text']}")
                elif part["type"].startswith("tool-"):
                    print(f"{message['role']}: [{part['toolName']} {part['state']}]")
        return True

    if cmd in PERMISSION_COMMANDS:
        if not args:
            print(f"Usage: :{cmd} <permission_id> [lane]")
            return True
        target = args[1] if len(args) > 1 else session.current_lane
        lane = hub.lanes.get(target)
        if lane is None or not lane.session_id:
            print(f"Lane '{target}' has no session yet.")
            return True
        try:
            await hub.respond_permission(lane.session_id, args[0], PERMISSION_COMMANDS[cmd])
        except AgentError as exc:
            print(f"Permission response failed: {exc}")
        return True

    if cmd == "stderr":
        count = int(args[0]) if args and args[0].isdigit() else 100
        lines = list(hub.server.stderr_lines)[-count:]
        if not lines:
            print("No stderr from the agent server")
        else:
            print(f"--- agent server stderr, last {len(lines)} lines ---")
            for line in lines:
                sys.stderr.write(line + "\n")
            sys.stderr.flush()
        return True

    if cmd == "recent":
        count = int(args[0]) if args and args[0].isdigit() else 20
        entries = hub.render_recent(count)
        if not entries:
            print("No hub events yet.")
        for entry in entries:
            print(entry)
        return True

    if cmd == "statefeed":
        if not args or args[0].lower() not in {"on", "off"}:
            print("Usage: :statefeed on|off")
            return True
        printer.show_state_events = args[0].lower() == "on"
        print(f"State change events {'enabled' if printer.show_state_events else 'disabled'}.")
        return True

    print(f"Unknown command: {cmd}. Try :help")
    return True


def configure_logging(level: str, log_file: Optional[str] = None) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        filename=log_file,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="CLI lane hub for the opencode agent server")
    parser.add_argument("--cwd", default=None, help="Default working directory for lanes")
    parser.add_argument("--agent-path", default=None, help="Path to the opencode binary")
    parser.add_argument("--hostname", default=DEFAULT_HOSTNAME, help="Agent server hostname")
    parser.add_argument("--port", type=int, default=DEFAULT_PORT, help="Agent server port")
    parser.add_argument("--start-timeout", type=float, default=START_TIMEOUT, help="Seconds to wait for the server to become ready")
    parser.add_argument("--provider", default=None, help="Provider id for prompts, e.g. anthropic")
    parser.add_argument("--model", default=None, help="Model id for prompts; needs --provider")
    parser.add_argument("--mode", choices=["agent", "plan"], default="agent", help="Agent mode for prompts")
    parser.add_argument("--no-colour", action="store_true", help="Disable ANSI colours")
    parser.add_argument("--script", default=None, help="Run commands from a file and exit")
    parser.add_argument("--log-level", default="WARNING", help="Logging level (DEBUG, INFO, WARNING, ...)")
    parser.add_argument("--log-file", default=None, help="Write logs to this file instead of stderr")
    return parser


async def run_cli(args: argparse.Namespace) -> None:
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()
    install_signal_handlers(loop, stop_event)

    colours_enabled = sys.stdout.isatty() and (not args.no_colour)
    printer = Printer(Palette(enabled=colours_enabled))
    session = Session()

    hub = Hub(
        agent_path=args.agent_path,
        hostname=args.hostname,
        port=args.port,
        start_timeout=args.start_timeout,
        default_cwd=args.cwd,
        provider=args.provider,
        model=args.model,
        mode=args.mode,
    )
    queue = hub.subscribe()
    print(f"Working directory: {hub.repo_path}")
    if not await hub.start():
        print("Agent server unavailable; chat is disabled until :start succeeds.")

    stdin_bridge: Optional[StdinBridge] = None
    script_lines: list[str] = []
    if args.script:
        if not os.path.exists(args.script):
            print(f"Script file not found: {args.script}")
            await hub.stop()
            return
        with open(args.script, "r", encoding="utf-8") as handle:
            script_lines = [line.rstrip("\n") for line in handle]
        script_lines.append(":quit")
    else:
        stdin_bridge = StdinBridge(loop)
        stdin_bridge.start()

    async def pump_events() -> None:
        while True:
            ev = await queue.get()
            printer.event(ev)

    async def pump_input() -> None:
        try:
            if script_lines:
                for line in script_lines:
                    if not await handle_command(hub, printer, session, line):
                        break
                    if not line.startswith((":", "/")):
                        task = hub.tasks.get(session.current_lane)
                        if task is not None:
                            await asyncio.gather(task, return_exceptions=True)
                stop_event.set()
                return
            assert stdin_bridge is not None
            while not stop_event.is_set():
                line = await stdin_bridge.queue.get()
                if not await handle_command(hub, printer, session, line):
                    stop_event.set()
                    return
        except asyncio.CancelledError:
            return

    tasks = [
        asyncio.create_task(pump_events(), name="events"),
        asyncio.create_task(pump_input(), name="input"),
    ]

    await stop_event.wait()

    for task in tasks:
        task.cancel()
    if stdin_bridge:
        stdin_bridge.stop()
    await hub.stop()


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    configure_logging(args.log_level, args.log_file)
    try:
        asyncio.run(run_cli(args))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
