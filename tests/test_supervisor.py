import asyncio

import httpx
import pytest

from forkyard.config_loader import SupervisorConfig
from forkyard.errors import ProcessDiedError, SessionCreationError, StartupTimeoutError
from forkyard.supervisor import (
    NO_REPLY,
    DataEnvelope,
    EmptyReply,
    MessageList,
    ProcessSupervisor,
    SingleMessage,
    classify_reply,
    extract_reply_text,
)
from helpers import FakeAgentServer, text_message


def _supervisor(server, spawner, sleeper, **overrides):
    cfg = SupervisorConfig(startup_timeout=1.0, ready_interval=0.2, poll_attempts=3, poll_interval=0.2)
    cfg = cfg.model_copy(update=overrides)
    return ProcessSupervisor(
        config=cfg,
        spawn=spawner,
        allocate_port=lambda host: 41000 + len(spawner.calls),
        transport=server.transport,
        sleep=sleeper,
    )


async def _settle():
    for _ in range(5):
        await asyncio.sleep(0)


# ---------------------------------------------------------------------------
# Reply shapes
# ---------------------------------------------------------------------------

def test_bare_array_reply():
    shape = classify_reply([text_message("hello"), text_message("world")])
    assert isinstance(shape, MessageList)
    assert extract_reply_text(shape) == "hello\nworld"


def test_data_envelope_reply():
    shape = classify_reply({"data": [text_message("hi")]})
    assert isinstance(shape, DataEnvelope)
    assert extract_reply_text(shape) == "hi"


def test_single_message_reply_with_value_parts():
    shape = classify_reply({"info": {}, "parts": [{"type": "tool", "value": "ran"}, {"type": "step-start"}, "junk"]})
    assert isinstance(shape, SingleMessage)
    assert extract_reply_text(shape) == "ran"


@pytest.mark.parametrize("payload", [None, {}, "text", 42, {"data": "nope"}, [], [{"parts": []}]])
def test_replies_without_text(payload):
    shape = classify_reply(payload)
    assert extract_reply_text(shape) is None


def test_unknown_payload_is_empty_shape():
    assert isinstance(classify_reply({"something": "else"}), EmptyReply)


# ---------------------------------------------------------------------------
# Server lifecycle
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_ensure_server_waits_for_readiness(spawner, sleeper):
    server = FakeAgentServer(ready_after=2)
    sup = _supervisor(server, spawner, sleeper)

    remote = await sup.ensure_server("ada-00000001", cwd="/work")

    assert remote.port == 41000
    assert spawner.calls == [(("opencode", "serve", "--port=41000"), "/work")]
    assert server.probes == 3
    assert sleeper.calls == [0.2, 0.2]
    assert sup.describe("ada-00000001").active
    await sup.dispose()


@pytest.mark.asyncio
async def test_ensure_server_reuses_live_process(spawner, sleeper):
    sup = _supervisor(FakeAgentServer(), spawner, sleeper)

    first = await sup.ensure_server("ada-00000001")
    second = await sup.ensure_server("ada-00000001")

    assert first is second
    assert len(spawner.calls) == 1
    await sup.dispose()


@pytest.mark.asyncio
async def test_concurrent_ensure_server_spawns_once(spawner, sleeper):
    sup = _supervisor(FakeAgentServer(ready_after=2), spawner, sleeper)

    a, b = await asyncio.gather(sup.ensure_server("ada-00000001"), sup.ensure_server("ada-00000001"))

    assert a is b
    assert len(spawner.calls) == 1
    assert len(sup.list()) == 1
    await sup.dispose()


@pytest.mark.asyncio
async def test_startup_timeout_kills_and_forgets(spawner, sleeper):
    sup = _supervisor(FakeAgentServer(ready_after=1000), spawner, sleeper)

    with pytest.raises(StartupTimeoutError) as exc:
        await sup.ensure_server("ada-00000001")

    assert exc.value.name == "ada-00000001"
    assert exc.value.port == 41000
    assert len(sleeper.calls) == 4  # 5 probes, 1s / 0.2s
    assert spawner.processes[0].killed
    assert sup.describe("ada-00000001") is None


@pytest.mark.asyncio
async def test_stalled_probe_is_bounded_by_startup_timeout(spawner, sleeper):
    never = asyncio.Event()

    async def stall(request):
        await never.wait()

    sup = ProcessSupervisor(
        config=SupervisorConfig(startup_timeout=0.3, ready_interval=0.1, request_timeout=30.0),
        spawn=spawner,
        allocate_port=lambda host: 41000,
        transport=httpx.MockTransport(stall),
        sleep=sleeper,
    )

    with pytest.raises(StartupTimeoutError):
        await asyncio.wait_for(sup.ensure_server("ada-00000001"), timeout=5)

    assert spawner.processes[0].killed
    assert sup.describe("ada-00000001") is None


@pytest.mark.asyncio
async def test_process_exiting_during_startup(spawner, sleeper):
    server = FakeAgentServer(ready_after=1000)
    sup = _supervisor(server, spawner, sleeper)

    async def die_on_first_sleep(seconds):
        spawner.processes[0].exit(1)

    sup._sleep = die_on_first_sleep

    with pytest.raises(ProcessDiedError):
        await sup.ensure_server("ada-00000001")
    assert sup.describe("ada-00000001") is None


@pytest.mark.asyncio
async def test_dead_process_is_replaced(spawner, sleeper):
    sup = _supervisor(FakeAgentServer(), spawner, sleeper)
    first = await sup.ensure_server("ada-00000001")
    first.process.exit(0)
    await _settle()

    assert sup.describe("ada-00000001") is None
    second = await sup.ensure_server("ada-00000001")

    assert second is not first
    assert len(spawner.calls) == 2
    await sup.dispose()


@pytest.mark.asyncio
async def test_respawn_keeps_working_directory(spawner, sleeper):
    sup = _supervisor(FakeAgentServer(prompt_payload=text_message("back")), spawner, sleeper)
    first = await sup.ensure_server("ada-00000001", cwd="/work/.agent/wt/ada-00000001")
    first.process.exit(1)
    await _settle()

    assert await sup.run_prompt("ada-00000001", "Continue") == "back"
    await sup.queue_input("ada-00000001", "more")

    assert [cwd for _, cwd in spawner.calls] == ["/work/.agent/wt/ada-00000001"] * 2
    assert sup.describe("ada-00000001") is not None
    await sup.dispose()


@pytest.mark.asyncio
async def test_shutdown(spawner, sleeper):
    sup = _supervisor(FakeAgentServer(), spawner, sleeper)
    await sup.ensure_server("ada-00000001")

    assert await sup.shutdown("ada-00000001") is True
    assert spawner.processes[0].killed
    assert sup.describe("ada-00000001") is None
    assert await sup.shutdown("ada-00000001") is False
    assert await sup.shutdown("never-started") is False


# ---------------------------------------------------------------------------
# Sessions and prompts
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_session_id_is_created_once(spawner, sleeper):
    server = FakeAgentServer(session_payload={"data": {"id": "ses_42"}})
    sup = _supervisor(server, spawner, sleeper)

    remote = await sup.ensure_session("ada-00000001")
    again = await sup.ensure_session("ada-00000001")

    assert remote.session_id == again.session_id == "ses_42"
    assert sup.describe("ada-00000001").session_id == "ses_42"
    await sup.dispose()


@pytest.mark.asyncio
async def test_session_without_id_fails(spawner, sleeper):
    sup = _supervisor(FakeAgentServer(session_payload={"title": "no id"}), spawner, sleeper)

    with pytest.raises(SessionCreationError):
        await sup.ensure_session("ada-00000001")
    await sup.dispose()


@pytest.mark.asyncio
async def test_prompt_reply_from_immediate_response(spawner, sleeper):
    server = FakeAgentServer(prompt_payload=text_message("on it"))
    sup = _supervisor(server, spawner, sleeper)

    reply = await sup.run_prompt("ada-00000001", "fix the build")

    assert reply == "on it"
    assert server.prompts == [{"agent": "build", "parts": [{"type": "text", "text": "fix the build"}]}]
    assert server.polls == 0
    await sup.dispose()


@pytest.mark.asyncio
async def test_prompt_reply_from_polling(spawner, sleeper):
    server = FakeAgentServer(messages_payload={"data": [text_message("done")]}, messages_after=1)
    sup = _supervisor(server, spawner, sleeper)

    reply = await sup.run_prompt("ada-00000001", "fix the build", agent="plan")

    assert reply == "done"
    assert server.polls == 2
    assert server.prompts[0]["agent"] == "plan"
    await sup.dispose()


@pytest.mark.asyncio
async def test_prompt_without_reply_returns_sentinel(spawner, sleeper):
    server = FakeAgentServer()
    sup = _supervisor(server, spawner, sleeper)

    assert await sup.run_prompt("ada-00000001", "hello") == NO_REPLY
    assert server.polls == 3
    await sup.dispose()


@pytest.mark.asyncio
async def test_process_death_aborts_polling(spawner, sleeper):
    sup = _supervisor(FakeAgentServer(), spawner, sleeper)
    await sup.ensure_session("ada-00000001")

    async def die(seconds):
        spawner.processes[0].exit(1)

    sup._sleep = die

    with pytest.raises(ProcessDiedError) as exc:
        await sup.run_prompt("ada-00000001", "hello")
    assert exc.value.session_id == "ses_1"


@pytest.mark.asyncio
async def test_input_buffer(spawner, sleeper):
    sup = _supervisor(FakeAgentServer(), spawner, sleeper)

    assert await sup.queue_input("ada-00000001", "first ") == "first "
    assert await sup.queue_input("ada-00000001", "second") == "first second"
    assert await sup.flush_input("ada-00000001") == "first second"
    assert await sup.flush_input("ada-00000001") == ""
    await sup.dispose()
