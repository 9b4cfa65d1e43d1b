"""Session supervisor — one long-lived channel per client, one job at a time, heartbeat and idle enforcement.

State machine::

    CONNECTING -> IDLE <-> BUSY -> CLOSING -> CLOSED

Client messages (JSON objects, discriminated by ``type``):

* ``compile`` / ``memcheck`` / ``trace`` / ``debug`` / ``assembly`` / ``both`` /
  ``format`` / ``lint``: start a job; the remaining fields follow the job request.
* ``input``: a line for the running program's stdin, or a debugger command.
* ``cancel``: stop the in-flight job.
* ``ping`` / ``pong``: heartbeat.

Every server message carries ``type``, ``sessionId`` and ``timestamp``.
"""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from pydantic import ValidationError

from cincout.config import CinCoutConfig
from cincout.errors import (
    CapacityExceededError,
    ChannelClosedError,
    InputRejectedError,
    SessionBusyError,
    ToolchainUnavailableError,
    WorkspaceError,
)
from cincout.models import Action, Job, JobRequest, Report, Workspace
from cincout.reporting.classifier import scrub_debugger_output
from cincout.runtime.pipeline import JobPipeline, describe_outcome, read_memcheck_report, read_trace_report
from cincout.runtime.supervisor import OutputCallback, SupervisedProcess
from cincout.runtime.toolchain import DEBUGGER_INITIAL_COMMANDS
from cincout.session.channel import Channel
from cincout.utils.logging import bind_job_context, get_logger

logger = get_logger(__name__)

_JOB_TYPES = frozenset(action.value for action in Action)


class SessionState(StrEnum):
    CONNECTING = "connecting"
    IDLE = "idle"
    BUSY = "busy"
    CLOSING = "closing"
    CLOSED = "closed"


def _timestamp() -> int:
    return int(time.time() * 1000)


@dataclass
class Session:
    """Per-client session record. Owns at most one in-flight job."""

    channel: Channel
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    state: SessionState = SessionState.CONNECTING
    last_activity: float = field(default_factory=time.monotonic)
    alive: bool = True
    job: Job | None = None
    job_task: asyncio.Task[None] | None = None
    process: SupervisedProcess | None = None
    workspace: Workspace | None = None
    close_reason: str | None = None
    disconnected: asyncio.Event = field(default_factory=asyncio.Event)
    closed: asyncio.Event = field(default_factory=asyncio.Event)

    def touch(self) -> None:
        self.last_activity = time.monotonic()
        self.alive = True

    @property
    def busy(self) -> bool:
        return self.job_task is not None and not self.job_task.done()

    @property
    def idle_seconds(self) -> float:
        return time.monotonic() - self.last_activity


class SessionSupervisor:
    """Owns every live session and the flows that run jobs on their behalf."""

    def __init__(self, config: CinCoutConfig, pipeline: JobPipeline) -> None:
        """Initialize the supervisor.

        Args:
            config: Configuration providing heartbeat, idle and debug timeouts.
            pipeline: Job pipeline shared with the one-shot endpoints, including its limiter.
        """
        self._config = config
        self._pipeline = pipeline
        self._sessions: dict[str, Session] = {}

    @property
    def sessions(self) -> dict[str, Session]:
        return self._sessions

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def serve(self, channel: Channel) -> Session:
        """Run a session until the client leaves or the session is closed.

        Args:
            channel: An open channel; the supervisor closes it on exit.

        Returns:
            The finished session.
        """
        session = Session(channel=channel)
        self._sessions[session.id] = session
        session.state = SessionState.IDLE
        bind_job_context(session_id=session.id)
        logger.info("session_opened")

        receiver = asyncio.create_task(self._receive_loop(session))
        heartbeat = asyncio.create_task(self._heartbeat_loop(session))
        ended = asyncio.create_task(session.disconnected.wait())
        try:
            await self._send(session, {"type": "connected"})
            await asyncio.wait({receiver, ended}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            await self.close(session, session.close_reason or "client_disconnected")
            # A close started by the heartbeat may still be running
            await session.closed.wait()
            for task in (receiver, heartbeat, ended):
                task.cancel()
            await asyncio.gather(receiver, heartbeat, ended, return_exceptions=True)
        return session

    async def close(self, session: Session, reason: str) -> None:
        """Close a session: stop its job, release its workspace and close the channel. Idempotent."""
        if session.state in (SessionState.CLOSING, SessionState.CLOSED):
            return
        session.state = SessionState.CLOSING
        session.close_reason = reason
        logger.info("session_closing", session_id=session.id, reason=reason)

        try:
            await self._stop_job(session)
            await session.channel.close()
        finally:
            session.state = SessionState.CLOSED
            session.disconnected.set()
            session.closed.set()
            self._sessions.pop(session.id, None)
            logger.info("session_closed", session_id=session.id, reason=reason)

    async def shutdown(self) -> None:
        """Close every live session."""
        for session in list(self._sessions.values()):
            await self.close(session, "server_shutdown")

    async def _stop_job(self, session: Session) -> None:
        task = session.job_task
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)

    # ------------------------------------------------------------------
    # Heartbeat
    # ------------------------------------------------------------------

    async def _heartbeat_loop(self, session: Session) -> None:
        """Ping every interval; close when no pong arrives within the grace window or the idle ceiling passes."""
        interval = self._config.heartbeat_interval_seconds
        grace = self._config.pong_grace_seconds
        while session.state not in (SessionState.CLOSING, SessionState.CLOSED):
            await asyncio.sleep(interval)
            if session.idle_seconds >= self._config.idle_timeout_seconds:
                await self._send_error(session, "Session closed after inactivity", code="idle_timeout")
                await self.close(session, "idle_timeout")
                return
            session.alive = False
            await self._send(session, {"type": "ping"})
            await asyncio.sleep(grace)
            if not session.alive:
                logger.warning("heartbeat_missed", session_id=session.id, grace=grace)
                await self.close(session, "heartbeat_timeout")
                return

    # ------------------------------------------------------------------
    # Messaging
    # ------------------------------------------------------------------

    async def _send(self, session: Session, message: dict[str, Any]) -> None:
        """Push one message. A dead channel closes the session instead of raising."""
        if session.state is SessionState.CLOSED:
            return
        payload = {**message, "sessionId": session.id, "timestamp": _timestamp()}
        try:
            await session.channel.send_json(payload)
        except ChannelClosedError:
            logger.debug("send_on_closed_channel", session_id=session.id, type=message.get("type"))
            session.close_reason = session.close_reason or "client_disconnected"
            session.disconnected.set()

    async def _send_error(self, session: Session, message: str, code: str = "error") -> None:
        await self._send(session, {"type": "error", "code": code, "message": message})

    async def _receive_loop(self, session: Session) -> None:
        while session.state is not SessionState.CLOSED:
            try:
                raw = await session.channel.receive_text()
            except ChannelClosedError:
                return
            session.touch()
            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                await self._send_error(session, "Invalid message format", code="invalid_message")
                continue
            if not isinstance(message, dict) or not isinstance(message.get("type"), str):
                await self._send_error(session, "Invalid message format", code="invalid_message")
                continue
            await self.handle_message(session, message)

    async def handle_message(self, session: Session, message: dict[str, Any]) -> None:
        """Dispatch one decoded client message."""
        kind = message["type"]
        if kind == "pong":
            return
        if kind == "ping":
            await self._send(session, {"type": "pong"})
        elif kind in _JOB_TYPES:
            await self.start_job(session, message)
        elif kind == "input":
            await self._forward_input(session, message)
        elif kind == "cancel":
            await self.cancel_job(session)
        else:
            await self._send_error(session, f"Unknown message type: {kind}", code="unknown_type")

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    async def start_job(self, session: Session, message: dict[str, Any]) -> None:
        """Admit and launch a job. A second job while one is in flight is rejected as busy."""
        if session.busy:
            exc = SessionBusyError("A job is already running in this session")
            logger.info("job_rejected_busy", session_id=session.id)
            await self._send_error(session, str(exc), code="busy")
            return

        try:
            request = JobRequest.model_validate({**message, "action": message["type"]})
        except ValidationError as exc:
            await self._send_error(session, _validation_message(exc), code="invalid_request")
            return

        job = Job.from_request(request, session_id=session.id)
        try:
            self._pipeline.admit(job)
        except InputRejectedError as exc:
            await self._send_error(session, exc.reason, code="rejected")
            return

        session.job = job
        session.state = SessionState.BUSY
        session.job_task = asyncio.create_task(self._run_job(session, job))

    async def cancel_job(self, session: Session) -> None:
        if not session.busy:
            await self._send_error(session, "No job is running", code="not_running")
            return
        job = session.job
        await self._stop_job(session)
        await self._send(session, {"type": "cancelled", "jobId": job.id if job else None})

    async def _forward_input(self, session: Session, message: dict[str, Any]) -> None:
        process = session.process
        if process is None or not process.running:
            await self._send_error(session, "No running program to receive input", code="not_running")
            return
        data = message.get("data", "")
        if not isinstance(data, str):
            await self._send_error(session, "Input must be text", code="invalid_message")
            return
        await process.write(data if data.endswith("\n") else data + "\n")

    async def _run_job(self, session: Session, job: Job) -> None:
        bind_job_context(session_id=session.id, job_id=job.id)
        logger.info("session_job_started", action=job.action.value)
        try:
            async with self._pipeline.limiter.slot():
                with self._pipeline.workspaces.scoped(job.lang, job.code) as workspace:
                    session.workspace = workspace
                    await self._run_flow(session, job, workspace)
        except CapacityExceededError as exc:
            await self._send_error(session, str(exc), code="capacity")
        except ToolchainUnavailableError as exc:
            logger.error("toolchain_unavailable", error=str(exc))
            await self._send_error(session, str(exc), code="toolchain_unavailable")
        except WorkspaceError:
            logger.exception("workspace_failure")
            await self._send_error(session, "Internal server error", code="internal")
        except Exception:  # noqa: BLE001
            logger.exception("session_job_unexpected_error")
            await self._send_error(session, "Internal server error", code="internal")
        finally:
            session.workspace = None
            session.process = None
            session.job = None
            if session.state is SessionState.BUSY:
                session.state = SessionState.IDLE
            logger.info("session_job_finished", action=job.action.value)

    async def _run_flow(self, session: Session, job: Job, workspace: Workspace) -> None:
        """Run the interactive flow for a job inside its workspace."""
        if job.action is Action.COMPILE:
            await self._compile_flow(session, job, workspace)
        elif job.action is Action.MEMCHECK:
            await self._memcheck_flow(session, job, workspace)
        elif job.action is Action.TRACE:
            await self._trace_flow(session, job, workspace)
        elif job.action is Action.DEBUG:
            await self._debug_flow(session, job, workspace)
        else:
            result = await self._pipeline.dispatch(job, workspace)
            await self._send(session, {"type": "result", "jobId": job.id, "result": result.model_dump(mode="json")})

    async def _build_or_report(self, session: Session, job: Job, workspace: Workspace, debug_build: bool) -> bool:
        failure = await self._pipeline.build(job, workspace, debug_build=debug_build)
        if failure is None:
            return True
        await self._send(session, {"type": "compile_error", "jobId": job.id, "report": _dump(failure)})
        return False

    def _output_sender(self, session: Session, job: Job, message_type: str = "output") -> OutputCallback:
        async def _on_output(chunk: str) -> None:
            await self._send(session, {"type": message_type, "jobId": job.id, "data": chunk})

        return _on_output

    async def _compile_flow(self, session: Session, job: Job, workspace: Workspace) -> None:
        if not await self._build_or_report(session, job, workspace, debug_build=False):
            return
        supervisor = self._pipeline.supervisor
        process = await supervisor.start(
            [str(workspace.binary_file)],
            workspace.directory,
            on_output=self._output_sender(session, job),
            interactive=True,
        )
        session.process = process
        outcome = await process.wait()
        report = describe_outcome(outcome, supervisor.limits.wall_timeout_seconds)
        await self._send(
            session,
            {
                "type": "exit",
                "jobId": job.id,
                "outcome": outcome.model_dump(mode="json", exclude={"stdout"}),
                "report": _dump(report),
            },
        )

    async def _memcheck_flow(self, session: Session, job: Job, workspace: Workspace) -> None:
        if not await self._build_or_report(session, job, workspace, debug_build=True):
            return
        supervisor = self._pipeline.supervisor
        process = await supervisor.start(
            self._pipeline.toolchain.memcheck_argv(workspace),
            workspace.directory,
            limits=supervisor.limits.without_memory_ceiling(),
            on_output=self._output_sender(session, job),
            interactive=True,
            label="memcheck",
        )
        session.process = process
        outcome = await process.wait()
        report = read_memcheck_report(workspace)
        await self._send(
            session,
            {
                "type": "memcheck_report",
                "jobId": job.id,
                "outcome": outcome.model_dump(mode="json", exclude={"stdout"}),
                "report": _dump(report),
            },
        )

    async def _trace_flow(self, session: Session, job: Job, workspace: Workspace) -> None:
        if not await self._build_or_report(session, job, workspace, debug_build=True):
            return
        supervisor = self._pipeline.supervisor
        process = await supervisor.start(
            self._pipeline.toolchain.trace_argv(workspace),
            workspace.directory,
            limits=supervisor.limits.without_memory_ceiling(),
            on_output=self._output_sender(session, job),
            interactive=True,
            label="trace",
        )
        session.process = process
        outcome = await process.wait()
        report = read_trace_report(workspace)
        await self._send(
            session,
            {
                "type": "trace_report",
                "jobId": job.id,
                "outcome": outcome.model_dump(mode="json", exclude={"stdout"}),
                "report": _dump(report),
            },
        )

    async def _debug_flow(self, session: Session, job: Job, workspace: Workspace) -> None:
        if not await self._build_or_report(session, job, workspace, debug_build=True):
            return
        supervisor = self._pipeline.supervisor
        limits = supervisor.limits.without_memory_ceiling().model_copy(
            update={"wall_timeout_seconds": self._config.debug_session_timeout_seconds}
        )

        async def _on_output(chunk: str) -> None:
            text = scrub_debugger_output(chunk, workspace.directory)
            if text.strip():
                await self._send(session, {"type": "debug_output", "jobId": job.id, "data": text})

        process = await supervisor.start(
            self._pipeline.toolchain.debugger_argv(workspace),
            workspace.directory,
            limits=limits,
            on_output=_on_output,
            interactive=True,
            label="debugger",
        )
        session.process = process
        for command in DEBUGGER_INITIAL_COMMANDS:
            await process.write(command + "\n")
        outcome = await process.wait()
        await self._send(
            session,
            {"type": "debug_exit", "jobId": job.id, "outcome": outcome.model_dump(mode="json", exclude={"stdout"})},
        )


def _dump(report: Report) -> dict[str, Any]:
    return report.model_dump(mode="json")


def _validation_message(exc: ValidationError) -> str:
    first = exc.errors()[0]
    location = ".".join(str(part) for part in first.get("loc", ()))
    return f"Invalid request field {location}: {first.get('msg', 'invalid value')}"
