import asyncio

import pytest
from aiohttp import web
from aiohttp import test_utils

from src.core.request_queue import AbortSignal, RequestQueue
from src.providers.opencode import OpenCodeClient, OpenCodeProvider
from src.providers.opencode.errors import (
    OpenCodeHTTPError,
    OpenCodeProtocolError,
    OpenCodeRunError,
)
from src.providers.opencode.provider import build_model_payload
from src.relay import AgentRelay
from src.sessions import SessionManager

ASSISTANT_REPLY = {
    "info": {
        "role": "assistant",
        "modelID": "glm-4.7",
        "cost": 0.25,
        "tokens": {"input": 10, "output": 5, "cache": {"read": 2, "write": 1}},
    },
    "parts": [
        {"type": "text", "text": "Hello "},
        {"type": "tool", "tool": "bash"},
        {"type": "tool", "tool": "bash"},
        {"type": "text", "text": "world"},
    ],
}


class FakeOpenCode:
    """Minimal OpenCode server: health, sessions, messages, abort."""

    def __init__(
        self,
        *,
        block: bool = False,
        block_usage: bool = False,
        fail_status: int | None = None,
    ):
        self.block = block
        self.block_usage = block_usage
        self.fail_status = fail_status
        self.created = 0
        self.aborts = 0
        self.bodies: list[dict] = []
        self.received = asyncio.Event()
        self.aborted = asyncio.Event()
        self.usage_requested = asyncio.Event()
        self.release_usage = asyncio.Event()

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/global/health", self.health)
        app.router.add_post("/session", self.create_session)
        app.router.add_post("/session/{id}/message", self.message)
        app.router.add_get("/session/{id}/message", self.messages)
        app.router.add_post("/session/{id}/abort", self.abort)
        return app

    async def health(self, request):
        return web.json_response({"healthy": True})

    async def create_session(self, request):
        self.created += 1
        return web.json_response({"id": f"ses_{self.created}"})

    async def message(self, request):
        self.bodies.append(await request.json())
        self.received.set()
        if self.fail_status:
            return web.Response(status=self.fail_status, text="model overloaded")
        if self.block:
            await self.aborted.wait()
            return web.json_response(
                {
                    "info": {
                        "role": "assistant",
                        "error": {
                            "name": "MessageAbortedError",
                            "data": {"message": "Aborted"},
                        },
                    },
                    "parts": [],
                }
            )
        return web.json_response(ASSISTANT_REPLY)

    async def messages(self, request):
        self.usage_requested.set()
        if self.block_usage:
            await self.release_usage.wait()
        return web.json_response(
            [
                {"info": {"role": "user"}},
                {"info": {"role": "assistant"}},
                {"info": {"role": "user"}},
                {"info": {"role": "assistant"}},
            ]
        )

    async def abort(self, request):
        self.aborts += 1
        self.aborted.set()
        return web.json_response(True)


async def start(fake: FakeOpenCode) -> test_utils.TestServer:
    server = test_utils.TestServer(fake.app())
    await server.start_server()
    return server


def make_stack(server_url: str, **provider_kwargs):
    sessions = SessionManager()
    queue = RequestQueue(activity=sessions)
    provider = OpenCodeProvider(
        OpenCodeClient(server_url), queue, sessions=sessions, **provider_kwargs
    )
    relay = AgentRelay(queue, provider, sessions, working_dir="/tmp")
    return relay, provider, sessions


def test_build_model_payload():
    assert build_model_payload(None) is None
    assert build_model_payload("openai/gpt-5.2") == {
        "providerID": "openai",
        "modelID": "gpt-5.2",
    }
    assert build_model_payload("openrouter/openai/gpt-5.2") == {
        "providerID": "openrouter",
        "modelID": "openai/gpt-5.2",
    }
    assert build_model_payload("claude-sonnet") == {
        "providerID": "anthropic",
        "modelID": "claude-sonnet",
    }


def test_send_parses_reply_and_caches_state():
    async def scenario():
        fake = FakeOpenCode()
        server = await start(fake)
        try:
            relay, provider, sessions = make_stack(
                str(server.make_url("/")), model="glm_vllm/glm-4.7"
            )
            response = await relay.send("7", "hi there")

            assert response.text == "Hello world"
            assert response.tools_used == ["bash"]
            assert response.usage is not None
            assert response.usage.input_tokens == 10
            assert response.usage.total_tokens == 18
            assert response.usage.total_cost_usd == pytest.approx(0.25)
            assert response.usage.num_turns == 2
            assert response.usage.model == "glm-4.7"
            assert provider.get_cached_usage("7") == response.usage

            assert fake.bodies[0]["model"] == {
                "providerID": "glm_vllm",
                "modelID": "glm-4.7",
            }
            assert fake.bodies[0]["parts"] == [{"type": "text", "text": "hi there"}]
            assert provider.get_remote_session_id("7") == "ses_1"
            assert sessions.get("7").provider_session_id == "ses_1"

            await relay.send("7", "second")
            assert fake.created == 1

            provider.clear_conversation("7")
            assert provider.get_cached_usage("7") is None
            assert provider.get_remote_session_id("7") is None
        finally:
            await server.close()

    asyncio.run(scenario())


def test_cancel_interrupts_remote_session():
    async def scenario():
        fake = FakeOpenCode(block=True)
        server = await start(fake)
        try:
            relay, provider, _ = make_stack(str(server.make_url("/")))
            running = asyncio.create_task(relay.send("1", "long task"))
            await asyncio.wait_for(fake.received.wait(), timeout=5)

            outcome = await relay.cancel("1")
            assert outcome.interrupted
            response = await asyncio.wait_for(running, timeout=5)

            assert response.cancelled
            assert fake.aborts == 1
            # Soft cancel keeps the remote session for the next message.
            assert provider.get_remote_session_id("1") == "ses_1"
            assert not relay.queue.is_processing("1")
        finally:
            await server.close()

    asyncio.run(scenario())


def test_reset_aborts_and_forgets_remote_session():
    async def scenario():
        fake = FakeOpenCode(block=True)
        server = await start(fake)
        try:
            relay, provider, sessions = make_stack(str(server.make_url("/")))
            running = asyncio.create_task(relay.send("1", "long task"))
            await asyncio.wait_for(fake.received.wait(), timeout=5)

            outcome = await relay.reset("1")
            assert outcome.interrupted
            response = await asyncio.wait_for(running, timeout=5)

            assert response.cancelled
            assert fake.aborts >= 1
            assert provider.get_remote_session_id("1") is None
            assert sessions.get("1") is None
        finally:
            await server.close()

    asyncio.run(scenario())


def test_reset_during_usage_lookup_leaves_caches_empty():
    async def scenario():
        fake = FakeOpenCode(block_usage=True)
        server = await start(fake)
        try:
            relay, provider, sessions = make_stack(str(server.make_url("/")))
            running = asyncio.create_task(relay.send("1", "hi"))
            await asyncio.wait_for(fake.usage_requested.wait(), timeout=5)

            outcome = await relay.reset("1")
            assert outcome.interrupted
            response = await asyncio.wait_for(running, timeout=5)

            assert response.cancelled
            assert response.usage is None
            assert provider.get_cached_usage("1") is None
            assert provider.get_remote_session_id("1") is None
            assert sessions.get("1") is None
            assert not relay.queue.is_processing("1")
        finally:
            fake.release_usage.set()
            await server.close()

    asyncio.run(scenario())


def test_signal_during_usage_lookup_skips_usage_cache():
    async def scenario():
        fake = FakeOpenCode(block_usage=True)
        server = await start(fake)
        try:
            queue = RequestQueue()
            provider = OpenCodeProvider(OpenCodeClient(str(server.make_url("/"))), queue)
            signal = AbortSignal()
            progress: list[str] = []

            async def operation():
                return await provider.send_to_agent(
                    "1", "hi", signal=signal, on_progress=progress.append
                )

            running = queue.submit("1", "hi", operation)
            await asyncio.wait_for(fake.usage_requested.wait(), timeout=5)
            assert progress == ["Hello world"]

            signal.abort()
            response = await asyncio.wait_for(running, timeout=5)

            assert response.cancelled
            assert provider.get_cached_usage("1") is None
            # The dropped exchange still stops the remote session.
            assert fake.aborts == 1
        finally:
            fake.release_usage.set()
            await server.close()

    asyncio.run(scenario())


def test_agent_is_sent_with_message():
    async def scenario():
        fake = FakeOpenCode()
        server = await start(fake)
        try:
            relay, _, _ = make_stack(str(server.make_url("/")), agent="build")
            await relay.send("1", "hi")
            assert fake.bodies[0]["agent"] == "build"
        finally:
            await server.close()

    asyncio.run(scenario())


def test_http_error_propagates():
    async def scenario():
        fake = FakeOpenCode(fail_status=503)
        server = await start(fake)
        try:
            relay, _, _ = make_stack(str(server.make_url("/")))
            with pytest.raises(OpenCodeHTTPError) as excinfo:
                await relay.send("1", "hi")
            assert excinfo.value.status == 503
            assert "model overloaded" in str(excinfo.value)
        finally:
            await server.close()

    asyncio.run(scenario())


def test_already_aborted_signal_skips_request():
    async def scenario():
        provider = OpenCodeProvider(
            OpenCodeClient("http://127.0.0.1:9"), RequestQueue()
        )
        signal = AbortSignal()
        signal.abort()
        response = await provider.send_to_agent("1", "hi", signal=signal)
        assert response.cancelled

    asyncio.run(scenario())


def test_non_object_reply_is_protocol_error():
    provider = OpenCodeProvider(OpenCodeClient("http://127.0.0.1:9"), RequestQueue())
    with pytest.raises(OpenCodeProtocolError):
        provider._parse_message(["not", "an", "object"])


def test_error_reply_raises_run_error():
    provider = OpenCodeProvider(OpenCodeClient("http://127.0.0.1:9"), RequestQueue())
    with pytest.raises(OpenCodeRunError) as excinfo:
        provider._parse_message(
            {
                "info": {
                    "error": {
                        "name": "MessageAbortedError",
                        "data": {"message": "Aborted"},
                    }
                }
            }
        )
    assert excinfo.value.aborted
    assert str(excinfo.value) == "OpenCode error: MessageAbortedError: Aborted"

    with pytest.raises(OpenCodeRunError) as excinfo:
        provider._parse_message({"info": {"error": {"name": "ProviderAuthError"}}})
    assert not excinfo.value.aborted
    assert str(excinfo.value) == "OpenCode error: ProviderAuthError"
