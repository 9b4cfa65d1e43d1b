"""Unit tests for the session supervisor over an in-memory channel."""

from __future__ import annotations

import asyncio

import pytest
from helpers import FakeChannel, FakeToolchain

from cincout.config import CinCoutConfig
from cincout.runtime.pipeline import JobPipeline
from cincout.session.supervisor import SessionState, SessionSupervisor

HELLO = '#include <stdio.h>\nint main(void) { puts("hi"); return 0; }\n'


@pytest.fixture
def supervisor(cincout_config: CinCoutConfig, pipeline: JobPipeline, fake_toolchain: FakeToolchain) -> SessionSupervisor:
    return SessionSupervisor(cincout_config, pipeline)


async def _open(supervisor: SessionSupervisor, channel: FakeChannel) -> asyncio.Task:
    task = asyncio.create_task(supervisor.serve(channel))
    await channel.wait_for("connected")
    return task


async def _finish(channel: FakeChannel, task: asyncio.Task) -> None:
    channel.disconnect()
    await asyncio.wait_for(task, timeout=5)


def _errors(channel: FakeChannel, code: str) -> list[dict]:
    return [m for m in channel.of_type("error") if m.get("code") == code]


async def _wait_error(channel: FakeChannel, code: str, timeout: float = 5.0) -> dict:
    async def _poll() -> dict:
        while not _errors(channel, code):
            await asyncio.sleep(0.01)
        return _errors(channel, code)[0]

    return await asyncio.wait_for(_poll(), timeout=timeout)


async def test_connected_message_carries_session_id(supervisor: SessionSupervisor, channel: FakeChannel) -> None:
    task = await _open(supervisor, channel)
    connected = channel.of_type("connected")[0]
    assert connected["sessionId"] in supervisor.sessions
    assert isinstance(connected["timestamp"], int)
    await _finish(channel, task)
    assert supervisor.sessions == {}
    assert channel.closed
    assert task.result().state is SessionState.CLOSED


async def test_ping_answered_with_pong(supervisor: SessionSupervisor, channel: FakeChannel) -> None:
    task = await _open(supervisor, channel)
    channel.push({"type": "ping"})
    pong = await channel.wait_for("pong")
    assert "sessionId" in pong
    await _finish(channel, task)


@pytest.mark.parametrize("frame", ["not json", "[1, 2]", '{"data": "no type"}'])
async def test_invalid_frames_rejected(supervisor: SessionSupervisor, channel: FakeChannel, frame: str) -> None:
    task = await _open(supervisor, channel)
    channel.push(frame)
    await _wait_error(channel, "invalid_message")
    assert not task.done()
    await _finish(channel, task)


async def test_unknown_type(supervisor: SessionSupervisor, channel: FakeChannel) -> None:
    task = await _open(supervisor, channel)
    channel.push({"type": "launch_missiles"})
    await _wait_error(channel, "unknown_type")
    await _finish(channel, task)


async def test_compile_streams_output_and_exit(supervisor: SessionSupervisor, channel: FakeChannel, pipeline) -> None:
    task = await _open(supervisor, channel)
    channel.push({"type": "compile", "code": HELLO, "lang": "c"})
    exit_message = await channel.wait_for("exit")
    assert exit_message["outcome"] == {"kind": "completed", "exit_code": 0}
    assert "".join(m["data"] for m in channel.of_type("output")) == "hi\n"
    assert pipeline.workspaces.active() == []
    await _finish(channel, task)


async def test_input_forwarded_to_program(
    supervisor: SessionSupervisor, channel: FakeChannel, fake_toolchain: FakeToolchain
) -> None:
    fake_toolchain.program = 'echo "name?"\nread name\necho "hello $name"'
    task = await _open(supervisor, channel)
    channel.push({"type": "compile", "code": HELLO, "lang": "c"})
    await channel.wait_for("output")
    channel.push({"type": "input", "data": "bob"})
    await channel.wait_for("exit")
    assert "hello bob" in "".join(m["data"] for m in channel.of_type("output"))
    await _finish(channel, task)


async def test_input_without_job(supervisor: SessionSupervisor, channel: FakeChannel) -> None:
    task = await _open(supervisor, channel)
    channel.push({"type": "input", "data": "x"})
    await _wait_error(channel, "not_running")
    await _finish(channel, task)


async def test_compile_error_reported(
    supervisor: SessionSupervisor, channel: FakeChannel, fake_toolchain: FakeToolchain
) -> None:
    fake_toolchain.fail_with = "{cwd}/program.c:2:1: error: expected declaration\n"
    task = await _open(supervisor, channel)
    channel.push({"type": "compile", "code": HELLO, "lang": "c"})
    message = await channel.wait_for("compile_error")
    assert message["report"]["text"] == "2:1: error: expected declaration"
    await _finish(channel, task)


async def test_second_job_rejected_while_busy(
    supervisor: SessionSupervisor, channel: FakeChannel, fake_toolchain: FakeToolchain, pipeline
) -> None:
    fake_toolchain.program = "echo started\nsleep 30"
    task = await _open(supervisor, channel)
    channel.push({"type": "compile", "code": HELLO, "lang": "c"})
    await channel.wait_for("output")
    channel.push({"type": "compile", "code": HELLO, "lang": "c"})
    await _wait_error(channel, "busy")
    assert len(fake_toolchain.calls) == 1

    channel.push({"type": "cancel"})
    cancelled = await channel.wait_for("cancelled")
    assert cancelled["jobId"]
    assert pipeline.workspaces.active() == []
    assert channel.of_type("exit") == []
    await _finish(channel, task)


async def test_cancel_without_job(supervisor: SessionSupervisor, channel: FakeChannel) -> None:
    task = await _open(supervisor, channel)
    channel.push({"type": "cancel"})
    await _wait_error(channel, "not_running")
    await _finish(channel, task)


async def test_rejected_source_never_starts(
    supervisor: SessionSupervisor, channel: FakeChannel, fake_toolchain: FakeToolchain, pipeline
) -> None:
    task = await _open(supervisor, channel)
    channel.push({"type": "compile", "code": "int main(void) { fork(); return 0; }", "lang": "c"})
    error = await _wait_error(channel, "rejected")
    assert "fork" in error["message"]
    assert fake_toolchain.calls == []
    assert pipeline.workspaces.active() == []
    await _finish(channel, task)


async def test_invalid_request(supervisor: SessionSupervisor, channel: FakeChannel) -> None:
    task = await _open(supervisor, channel)
    channel.push({"type": "compile", "lang": "c"})
    await _wait_error(channel, "invalid_request")
    channel.push({"type": "compile", "code": HELLO, "lang": "rust"})
    await asyncio.sleep(0.05)
    assert len(_errors(channel, "invalid_request")) == 2
    await _finish(channel, task)


async def test_one_shot_action_returns_result(supervisor: SessionSupervisor, channel: FakeChannel) -> None:
    task = await _open(supervisor, channel)
    channel.push({"type": "format", "code": "int main(void){return 0;}", "lang": "c"})
    message = await channel.wait_for("result")
    assert message["result"]["report"]["kind"] == "format"
    await _finish(channel, task)


async def test_capacity_reported(supervisor: SessionSupervisor, channel: FakeChannel, pipeline) -> None:
    task = await _open(supervisor, channel)
    async with pipeline.limiter.slot(), pipeline.limiter.slot():
        channel.push({"type": "compile", "code": HELLO, "lang": "c"})
        await _wait_error(channel, "capacity")
    assert pipeline.workspaces.active() == []
    await _finish(channel, task)


async def test_disconnect_kills_job_and_releases_workspace(
    supervisor: SessionSupervisor, channel: FakeChannel, fake_toolchain: FakeToolchain, pipeline
) -> None:
    fake_toolchain.program = "echo started\nsleep 30"
    task = await _open(supervisor, channel)
    channel.push({"type": "compile", "code": HELLO, "lang": "c"})
    await channel.wait_for("output")
    assert len(pipeline.workspaces.active()) == 1
    await _finish(channel, task)
    assert pipeline.workspaces.active() == []
    assert pipeline.limiter.active == 0
    assert task.result().close_reason == "client_disconnected"


async def test_missed_pong_closes_session(
    cincout_config: CinCoutConfig, supervisor: SessionSupervisor, fake_toolchain: FakeToolchain, pipeline
) -> None:
    channel = FakeChannel(auto_pong=False)
    fake_toolchain.program = "echo started\nsleep 30"
    task = await _open(supervisor, channel)
    channel.push({"type": "compile", "code": HELLO, "lang": "c"})
    await channel.wait_for("output")

    cycle = cincout_config.heartbeat_interval_seconds + cincout_config.pong_grace_seconds
    session = await asyncio.wait_for(task, timeout=cycle * 3 + 1)
    assert session.close_reason == "heartbeat_timeout"
    assert channel.closed
    assert pipeline.workspaces.active() == []
    assert supervisor.sessions == {}


async def test_idle_session_closed(cincout_config: CinCoutConfig, pipeline, fake_toolchain: FakeToolchain) -> None:
    config = cincout_config.model_copy(update={"idle_timeout_seconds": 0.1})
    supervisor = SessionSupervisor(config, pipeline)
    channel = FakeChannel()
    task = await _open(supervisor, channel)
    session = await asyncio.wait_for(task, timeout=2)
    assert session.close_reason == "idle_timeout"
    assert _errors(channel, "idle_timeout")


async def test_shutdown_closes_every_session(supervisor: SessionSupervisor) -> None:
    channels = [FakeChannel(), FakeChannel()]
    tasks = [await _open(supervisor, channel) for channel in channels]
    await supervisor.shutdown()
    sessions = await asyncio.wait_for(asyncio.gather(*tasks), timeout=5)
    assert all(s.close_reason == "server_shutdown" for s in sessions)
    assert all(channel.closed for channel in channels)
