"""Job pipeline — pre-filter → workspace → toolchain → supervisor → classifier, for one-shot actions."""

from __future__ import annotations

import asyncio
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from cincout.config import CinCoutConfig
from cincout.errors import CapacityExceededError, InputRejectedError, ToolchainUnavailableError, ToolInvocationError
from cincout.models import (
    Action,
    Completed,
    ExecutionOutcome,
    Job,
    JobResult,
    MemoryExceeded,
    Report,
    ReportKind,
    Signaled,
    TimedOut,
    ToolError,
    Workspace,
)
from cincout.reporting.classifier import NO_TRACE_TEXT, classify, format_diagnostics, format_output
from cincout.runtime.supervisor import ExecutionSupervisor
from cincout.runtime.toolchain import ToolchainInvoker
from cincout.runtime.workspace import WorkspaceManager
from cincout.security.prefilter import StaticPrefilter
from cincout.utils.logging import bind_job_context, clear_job_context, get_logger

logger = get_logger(__name__)


class JobLimiter:
    """Host-wide ceiling on concurrently running jobs, shared by every session and endpoint.

    Jobs never wait for a slot: when the ceiling is reached they fail fast.
    """

    def __init__(self, max_jobs: int) -> None:
        self._max_jobs = max_jobs
        self._semaphore = asyncio.Semaphore(max_jobs)
        self._active = 0

    @property
    def max_jobs(self) -> int:
        return self._max_jobs

    @property
    def active(self) -> int:
        return self._active

    @asynccontextmanager
    async def slot(self) -> AsyncIterator[None]:
        """Hold one job slot for the duration of the block.

        Raises:
            CapacityExceededError: If every slot is taken.
        """
        if self._semaphore.locked():
            logger.warning("capacity_exceeded", max_jobs=self._max_jobs)
            raise CapacityExceededError(f"Server is at capacity ({self._max_jobs} concurrent jobs)")
        await self._semaphore.acquire()
        self._active += 1
        try:
            yield
        finally:
            self._active -= 1
            self._semaphore.release()


def describe_outcome(outcome: ExecutionOutcome, wall_timeout: float) -> Report:
    """Program output report with a notice for every outcome other than a clean exit."""
    if isinstance(outcome, Completed):
        return format_output(outcome.stdout, outcome.exit_code)
    if isinstance(outcome, TimedOut):
        notice = f"[execution timed out after {wall_timeout:g} seconds]"
    elif isinstance(outcome, MemoryExceeded):
        notice = "[memory limit exceeded]"
    elif isinstance(outcome, Signaled):
        notice = f"[terminated by signal {outcome.signal_name or outcome.signal}]"
    else:
        return Report(kind=ReportKind.DIAGNOSTICS, text=outcome.stderr)
    text = f"{outcome.stdout.rstrip()}\n{notice}" if outcome.stdout.strip() else notice
    return Report(kind=ReportKind.OUTPUT, text=text)


class JobPipeline:
    """Runs a job end to end and always releases its workspace."""

    def __init__(
        self,
        config: CinCoutConfig,
        limiter: JobLimiter | None = None,
        workspaces: WorkspaceManager | None = None,
        toolchain: ToolchainInvoker | None = None,
        supervisor: ExecutionSupervisor | None = None,
    ) -> None:
        """Initialize the pipeline.

        Args:
            config: Service configuration.
            limiter: Shared concurrency limiter; a private one is created when omitted.
            workspaces: Workspace manager override.
            toolchain: Toolchain invoker override.
            supervisor: Execution supervisor override.
        """
        self.config = config
        self.prefilter = StaticPrefilter(config)
        self.limiter = limiter or JobLimiter(config.max_concurrent_jobs)
        self.workspaces = workspaces or WorkspaceManager(config)
        self.toolchain = toolchain or ToolchainInvoker(config)
        self.supervisor = supervisor or ExecutionSupervisor(config)

    def admit(self, job: Job) -> None:
        """Run every check that must pass before a workspace exists.

        Raises:
            InputRejectedError: If the source or options are rejected.
        """
        self.prefilter.validate(job.code, job.lang, context=job.id)
        self.toolchain.validate_options(job)

    async def build(self, job: Job, workspace: Workspace, debug_build: bool = False) -> Report | None:
        """Compile the workspace source.

        Returns:
            None on success, or the diagnostics report of a failed compile.
        """
        try:
            await self.toolchain.run(self.toolchain.compile_command(job, workspace, debug_build=debug_build))
        except ToolInvocationError as exc:
            logger.info("compile_failed", job_id=job.id, exit_code=exc.exit_code)
            text = exc.stderr or str(exc)
            return format_diagnostics(text, workspace.directory)
        return None

    async def run(self, job: Job) -> JobResult:
        """Run a one-shot job.

        Args:
            job: The job to run. Debug jobs need an interactive session and are rejected.

        Returns:
            JobResult with the classified report and, for executed programs, the outcome.
            A failed compile or tool run is reported as a ToolError outcome.

        Raises:
            InputRejectedError: If the pre-filter or option validation rejects the job.
            CapacityExceededError: If the host-wide job ceiling is reached.
            ToolchainUnavailableError: If a required tool or log file is missing.
            WorkspaceError: If the workspace cannot be created or removed.
        """
        bind_job_context(job_id=job.id, session_id=job.session_id)
        start = time.monotonic()
        try:
            self.admit(job)
            if job.action is Action.DEBUG:
                raise InputRejectedError("The debug action requires an interactive session")

            async with self.limiter.slot():
                with self.workspaces.scoped(job.lang, job.code) as workspace:
                    result = await self.dispatch(job, workspace)

            logger.info(
                "job_finished",
                action=job.action.value,
                outcome=result.outcome.kind if result.outcome else None,
                elapsed_ms=int((time.monotonic() - start) * 1000),
            )
            return result
        finally:
            clear_job_context("job_id", "session_id")

    async def dispatch(self, job: Job, workspace: Workspace) -> JobResult:
        """Run an admitted job inside an existing workspace. Tool failures become ToolError results."""
        try:
            if job.action is Action.FORMAT:
                return await self._format(job, workspace)
            if job.action is Action.LINT:
                return await self._lint(job, workspace)
            if job.action is Action.ASSEMBLY:
                assembly = await self._assembly(job, workspace)
                return JobResult(job_id=job.id, action=job.action, report=assembly, assembly=assembly.text)
            if job.action is Action.BOTH:
                assembly = await self._assembly(job, workspace)
                result = await self._compile_and_run(job, workspace)
                return result.model_copy(update={"assembly": assembly.text})
            if job.action is Action.MEMCHECK:
                return await self._memcheck(job, workspace)
            if job.action is Action.TRACE:
                return await self._trace(job, workspace)
            return await self._compile_and_run(job, workspace)
        except ToolInvocationError as exc:
            return self._tool_failure(job, workspace, exc)

    def _tool_failure(self, job: Job, workspace: Workspace, exc: ToolInvocationError) -> JobResult:
        report = format_diagnostics(exc.stderr or str(exc), workspace.directory)
        return JobResult(job_id=job.id, action=job.action, report=report, outcome=ToolError(stderr=report.text))

    def _compile_failure(self, job: Job, report: Report) -> JobResult:
        return JobResult(job_id=job.id, action=job.action, report=report, outcome=ToolError(stderr=report.text))

    async def _compile_and_run(self, job: Job, workspace: Workspace) -> JobResult:
        failure = await self.build(job, workspace)
        if failure is not None:
            return self._compile_failure(job, failure)
        outcome = await self.supervisor.execute([str(workspace.binary_file)], workspace.directory)
        report = describe_outcome(outcome, self.supervisor.limits.wall_timeout_seconds)
        return JobResult(job_id=job.id, action=job.action, report=report, outcome=outcome)

    async def _assembly(self, job: Job, workspace: Workspace) -> Report:
        await self.toolchain.run(self.toolchain.assembly_command(job, workspace))
        raw = workspace.assembly_file.read_text(encoding="utf-8", errors="replace")
        return classify(raw, ReportKind.ASSEMBLY, workspace.directory)

    async def _format(self, job: Job, workspace: Workspace) -> JobResult:
        await self.toolchain.run(self.toolchain.format_command(workspace))
        text = workspace.source_file.read_text(encoding="utf-8")
        return JobResult(job_id=job.id, action=job.action, report=classify(text, ReportKind.FORMAT))

    async def _lint(self, job: Job, workspace: Workspace) -> JobResult:
        result = await self.toolchain.run(self.toolchain.lint_command(workspace))
        return JobResult(job_id=job.id, action=job.action, report=classify(result.stdout, ReportKind.LINT))

    async def _memcheck(self, job: Job, workspace: Workspace) -> JobResult:
        failure = await self.build(job, workspace, debug_build=True)
        if failure is not None:
            return self._compile_failure(job, failure)
        outcome = await self.supervisor.execute(
            self.toolchain.memcheck_argv(workspace),
            workspace.directory,
            limits=self.supervisor.limits.without_memory_ceiling(),
            label="memcheck",
        )
        # The leak checker's exit code is not its success signal; the log file is
        return JobResult(
            job_id=job.id,
            action=job.action,
            report=read_memcheck_report(workspace),
            outcome=outcome,
        )

    async def _trace(self, job: Job, workspace: Workspace) -> JobResult:
        failure = await self.build(job, workspace, debug_build=True)
        if failure is not None:
            return self._compile_failure(job, failure)
        outcome = await self.supervisor.execute(
            self.toolchain.trace_argv(workspace),
            workspace.directory,
            limits=self.supervisor.limits.without_memory_ceiling(),
            label="trace",
        )
        return JobResult(
            job_id=job.id,
            action=job.action,
            report=read_trace_report(workspace),
            outcome=outcome,
        )


def read_trace_report(workspace: Workspace) -> Report:
    """Load and classify the syscall log.

    Raises:
        ToolchainUnavailableError: If the tracer wrote nothing.
    """
    raw = ""
    if workspace.strace_log.exists():
        raw = workspace.strace_log.read_text(encoding="utf-8", errors="replace")
    if not raw.strip():
        raise ToolchainUnavailableError(NO_TRACE_TEXT)
    return classify(raw, ReportKind.TRACE, workspace.directory)


def read_memcheck_report(workspace: Workspace) -> Report:
    """Load and classify the leak-checker log.

    Raises:
        ToolchainUnavailableError: If the leak checker wrote no log.
    """
    if not workspace.valgrind_log.exists():
        raise ToolchainUnavailableError("Leak checker did not produce a report")
    raw = workspace.valgrind_log.read_text(encoding="utf-8", errors="replace")
    return classify(raw, ReportKind.MEMCHECK, workspace.directory)
