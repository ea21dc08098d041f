# Tests for event_stream.py
import asyncio
import os
import sys
import unittest

import aiohttp
from aiohttp import web
from aiohttp.test_utils import TestServer

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from agent_errors import StreamClosed, StreamConnectFailed, StreamFrameParseError
from event_stream import parse_frame, split_frames, subscribe


class FrameParsingTests(unittest.TestCase):
    def test_split_keeps_partial_tail(self):
        frames, rest = split_frames('data: {"a": 1}\n\ndata: {"b"')
        self.assertEqual(frames, ['data: {"a": 1}'])
        self.assertEqual(rest, 'data: {"b"')

    def test_split_normalizes_crlf(self):
        frames, rest = split_frames("data: 1\r\n\r\ndata: 2\r\n\r\n")
        self.assertEqual(frames, ["data: 1", "data: 2"])
        self.assertEqual(rest, "")

    def test_parse_joins_data_lines(self):
        self.assertEqual(parse_frame('event: message\ndata: {"a":\ndata: 1}'), {"a": 1})

    def test_comment_frame_has_no_payload(self):
        self.assertIsNone(parse_frame(": keep-alive"))

    def test_bad_json_raises(self):
        with self.assertRaises(StreamFrameParseError):
            parse_frame("data: {oops")


class EventSubscriptionTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.frames = []
        self.status = 200
        self.hold = False
        self.release = asyncio.Event()
        self.directories = []

        app = web.Application()
        app.router.add_get("/event", self._events)
        self.server = TestServer(app)
        await self.server.start_server()
        self.base_url = str(self.server.make_url("/"))
        self.http = aiohttp.ClientSession()

    async def asyncTearDown(self):
        self.release.set()
        await self.http.close()
        await self.server.close()

    async def _events(self, request):
        self.directories.append(request.query.get("directory"))
        if self.status != 200:
            return web.Response(status=self.status, text="unavailable")
        resp = web.StreamResponse(headers={"Content-Type": "text/event-stream"})
        await resp.prepare(request)
        for chunk in self.frames:
            await resp.write(chunk)
            await asyncio.sleep(0.01)
        if self.hold:
            await self.release.wait()
        return resp

    async def test_delivers_events_then_reports_close(self):
        self.frames = [
            b'data: {"type": "server.connected", "properties": {}}\n\n',
            b'data: {"type": "session.idle", ',
            b'"properties": {"sessionID": "ses_1"}}\n\n',
            b"data: not json\n\n",
            b"data: [1, 2]\n\n",
            b'data: {"type": "note", "properties": {"text": "caf\xc3',
            b'\xa9"}}\n\n',
        ]
        events, errors = [], []
        closed = asyncio.Event()

        def on_error(exc):
            errors.append(exc)
            closed.set()

        sub = subscribe(self.http, self.base_url, "/work/repo", events.append, on_error)
        await asyncio.wait_for(sub.connected, 2)
        await asyncio.wait_for(closed.wait(), 2)

        self.assertEqual([e["type"] for e in events], ["server.connected", "session.idle", "note"])
        self.assertEqual(events[1]["properties"]["sessionID"], "ses_1")
        self.assertEqual(events[2]["properties"]["text"], "café")
        self.assertEqual(len(errors), 1)
        self.assertIsInstance(errors[0], StreamClosed)
        self.assertEqual(self.directories, ["/work/repo"])

    async def test_bad_status_fails_connected(self):
        self.status = 500
        errors = []
        sub = subscribe(self.http, self.base_url, "/work", lambda event: None, errors.append)

        with self.assertRaises(StreamConnectFailed):
            await asyncio.wait_for(sub.connected, 2)
        await sub.wait_closed()
        self.assertEqual(len(errors), 1)
        self.assertIsInstance(errors[0], StreamConnectFailed)

    async def test_unsubscribe_is_silent_and_idempotent(self):
        self.frames = [b'data: {"type": "server.connected", "properties": {}}\n\n']
        self.hold = True
        events, errors = [], []
        seen = asyncio.Event()

        def on_event(event):
            events.append(event)
            seen.set()

        sub = subscribe(self.http, self.base_url, "/work", on_event, errors.append)
        await asyncio.wait_for(seen.wait(), 2)

        sub.unsubscribe()
        sub.unsubscribe()
        await sub.wait_closed()

        self.assertTrue(sub.cancelled)
        self.assertEqual(len(events), 1)
        self.assertEqual(errors, [])

    async def test_listener_failure_does_not_stop_stream(self):
        self.frames = [
            b'data: {"type": "first", "properties": {}}\n\n',
            b'data: {"type": "second", "properties": {}}\n\n',
        ]
        events = []
        closed = asyncio.Event()

        def on_event(event):
            if event["type"] == "first":
                raise RuntimeError("listener bug")
            events.append(event)

        sub = subscribe(self.http, self.base_url, "/work", on_event, lambda exc: closed.set())
        await asyncio.wait_for(closed.wait(), 2)
        await sub.wait_closed()
        self.assertEqual([e["type"] for e in events], ["second"])


if __name__ == "__main__":
    unittest.main()
