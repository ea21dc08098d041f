# Tests for session_gateway.py
import asyncio
import os
import sys
import unittest
from unittest.mock import AsyncMock, MagicMock

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from agent_errors import SessionCreateFailed, StreamConnectFailed
from session_gateway import ModelSelection, SessionGateway, build_parts


class BuildPartsTests(unittest.TestCase):
    def test_text_then_images(self):
        parts = build_parts(
            "describe these",
            [
                {"mediaType": "image/jpeg", "base64Data": "QUJD", "filename": "a.jpg"},
                {"mediaType": "image/png", "data": b"\x89PNG"},
                {"mime": "image/gif", "url": "https://example.com/x.gif"},
            ],
        )
        self.assertEqual(parts[0], {"type": "text", "text": "describe these"})
        self.assertEqual(
            parts[1],
            {"type": "file", "mime": "image/jpeg", "url": "data:image/jpeg;base64,QUJD", "filename": "a.jpg"},
        )
        self.assertEqual(parts[2]["url"], "data:image/png;base64,iVBORw==")
        self.assertEqual(parts[3], {"type": "file", "mime": "image/gif", "url": "https://example.com/x.gif"})

    def test_plain_prompt(self):
        self.assertEqual(build_parts("hi"), [{"type": "text", "text": "hi"}])


def make_client(session_id="ses_new"):
    client = MagicMock()
    client.create_session = AsyncMock(return_value=session_id)
    client.prompt_async = AsyncMock()
    return client


def connected_subscription():
    sub = MagicMock()
    sub.connected = asyncio.get_running_loop().create_future()
    sub.connected.set_result(None)
    return sub


class SessionGatewayTests(unittest.IsolatedAsyncioTestCase):
    async def test_resume_makes_no_network_call(self):
        client = make_client()
        gateway = SessionGateway(client)
        self.assertEqual(await gateway.create_or_resume_session("/repo", "ses_old"), "ses_old")
        client.create_session.assert_not_awaited()

    async def test_create_when_no_session(self):
        client = make_client("ses_9")
        gateway = SessionGateway(client)
        self.assertEqual(await gateway.create_or_resume_session("/repo"), "ses_9")
        client.create_session.assert_awaited_once_with("/repo")

    async def test_send_prompt_passes_model_and_agent(self):
        client = make_client()
        gateway = SessionGateway(client)
        parts = build_parts("go")
        await gateway.send_prompt("/repo", "ses_1", parts, ModelSelection("anthropic", "claude"), "plan")
        client.prompt_async.assert_awaited_once_with(
            "ses_1",
            "/repo",
            parts,
            model={"providerID": "anthropic", "modelID": "claude"},
            agent="plan",
        )

    async def test_send_prompt_requires_session(self):
        gateway = SessionGateway(make_client())
        with self.assertRaises(SessionCreateFailed):
            await gateway.send_prompt("/repo", "", build_parts("go"))

    async def test_start_turn_orders_session_callback_before_prompt(self):
        client = make_client("ses_new")
        order = []
        client.create_session.side_effect = lambda directory: order.append("create") or "ses_new"
        client.prompt_async.side_effect = lambda *args, **kwargs: order.append("prompt")
        gateway = SessionGateway(client)

        async def on_session(session_id, created):
            order.append(("session", session_id, created))

        session_id = await gateway.start_turn(
            connected_subscription(), "/repo", build_parts("go"), on_session=on_session
        )
        self.assertEqual(session_id, "ses_new")
        self.assertEqual(order, ["create", ("session", "ses_new", True), "prompt"])

    async def test_start_turn_resumed_session_is_not_created(self):
        client = make_client()
        gateway = SessionGateway(client)
        seen = []
        await gateway.start_turn(
            connected_subscription(),
            "/repo",
            build_parts("again"),
            existing_session_id="ses_old",
            on_session=lambda sid, created: seen.append((sid, created)),
        )
        self.assertEqual(seen, [("ses_old", False)])
        client.create_session.assert_not_awaited()
        client.prompt_async.assert_awaited_once()

    async def test_start_turn_waits_for_subscription(self):
        client = make_client()
        gateway = SessionGateway(client)
        sub = MagicMock()
        sub.connected = asyncio.get_running_loop().create_future()

        task = asyncio.create_task(gateway.start_turn(sub, "/repo", build_parts("go")))
        await asyncio.sleep(0.01)
        client.create_session.assert_not_awaited()

        sub.connected.set_exception(StreamConnectFailed("refused"))
        with self.assertRaises(StreamConnectFailed):
            await task
        client.prompt_async.assert_not_awaited()


if __name__ == "__main__":
    unittest.main()
