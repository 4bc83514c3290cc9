import asyncio
import json
import unittest

import httpx

from kimi_gateway.credentials import TokenManager
from kimi_gateway.errors import RequestFailed
from kimi_gateway.sessions import (
    _FAKE_CALLS,
    create_conversation,
    fake_request,
    pending_background_tasks,
    remove_conversation,
    spawn_background,
)
from tests.helpers import install_mock_transport


class _Recorder:
    def __init__(self, chat_response: httpx.Response | None = None) -> None:
        self.chat_response = chat_response or httpx.Response(200, json={"id": "conv1"})
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/auth/token/refresh":
            return httpx.Response(200, json={"access_token": "acc"})
        self.requests.append(request)
        if request.method == "POST" and request.url.path == "/api/chat":
            return self.chat_response
        return httpx.Response(200, json={})


class TestConversations(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.tokens = TokenManager(ttl_seconds=300)

    async def _run(self, recorder: _Recorder, coro_factory):
        client, patcher = install_mock_transport(recorder)
        try:
            with patcher:
                return await coro_factory()
        finally:
            await client.aclose()

    async def test_create_returns_id(self) -> None:
        recorder = _Recorder()
        conv_id = await self._run(recorder, lambda: create_conversation("cmpl-x", "rt", tokens=self.tokens))

        self.assertEqual(conv_id, "conv1")
        self.assertEqual(json.loads(recorder.requests[0].content), {"name": "cmpl-x", "is_example": False})
        self.assertEqual(recorder.requests[0].headers["authorization"], "Bearer acc")

    async def test_create_rejected_raises(self) -> None:
        recorder = _Recorder(httpx.Response(200, json={"error_type": "chat.forbidden", "message": "nope"}))
        with self.assertRaises(RequestFailed) as ctx:
            await self._run(recorder, lambda: create_conversation("cmpl-x", "rt", tokens=self.tokens))
        self.assertIn("nope", ctx.exception.message)
        self.assertIsNotNone(self.tokens.cached("rt"))

    async def test_create_with_invalid_token_evicts(self) -> None:
        recorder = _Recorder(httpx.Response(200, json={"error_type": "auth.token.invalid", "message": "expired"}))
        with self.assertRaises(RequestFailed):
            await self._run(recorder, lambda: create_conversation("cmpl-x", "rt", tokens=self.tokens))
        self.assertIsNone(self.tokens.cached("rt"))

    async def test_create_without_id_raises(self) -> None:
        recorder = _Recorder(httpx.Response(200, json={"name": "cmpl-x"}))
        with self.assertRaises(RequestFailed):
            await self._run(recorder, lambda: create_conversation("cmpl-x", "rt", tokens=self.tokens))

    async def test_remove_sends_delete(self) -> None:
        recorder = _Recorder()
        await self._run(recorder, lambda: remove_conversation("conv1", "rt", tokens=self.tokens))

        self.assertEqual([(r.method, r.url.path) for r in recorder.requests], [("DELETE", "/api/chat/conv1")])
        self.assertTrue(recorder.requests[0].headers["referer"].endswith("/chat/conv1"))

    async def test_fake_request_issues_one_known_call(self) -> None:
        recorder = _Recorder()
        await self._run(recorder, lambda: fake_request("rt", tokens=self.tokens))

        self.assertEqual(len(recorder.requests), 1)
        request = recorder.requests[0]
        known = {(method, path) for method, path, _ in _FAKE_CALLS}
        self.assertIn((request.method, request.url.path), known)
        self.assertEqual(request.headers["authorization"], "Bearer acc")


class TestSpawnBackground(unittest.IsolatedAsyncioTestCase):
    async def test_failure_is_logged(self) -> None:
        async def boom() -> None:
            raise RequestFailed("gone")

        with self.assertLogs("uvicorn.error", level="WARNING") as logs:
            task = spawn_background(boom(), label="[c1] remove conversation")
            self.assertIn(task, pending_background_tasks())
            await asyncio.gather(task, return_exceptions=True)

        self.assertTrue(any("[c1] remove conversation failed: gone" in line for line in logs.output))
        self.assertNotIn(task, pending_background_tasks())


if __name__ == "__main__":
    unittest.main()
