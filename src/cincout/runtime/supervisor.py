"""Execution supervisor — runs compiled artifacts inside a resource envelope and classifies how they ended.

Every supervised process gets the same envelope, applied in the child before exec:

* RLIMIT_AS / RLIMIT_RSS: virtual and resident memory ceiling
* RLIMIT_CPU: CPU-time ceiling (soft limit raises SIGXCPU, hard limit one second later kills)
* RLIMIT_STACK: stack ceiling
* RLIMIT_CORE: zero, no core files in the workspace

A wall-clock watchdog, strictly longer than the CPU ceiling, covers programs
that block on I/O or sleep. The process runs in its own session so the
watchdog can kill the whole process group. Descendants that leave the group
(setpgid, setsid) are found afterwards by session id or by a working
directory inside the workspace, and killed too.

Under RLIMIT_AS a C allocation loop does not get a memory-specific signal:
malloc returns NULL and the program usually crashes on the next write. The
supervisor samples the address-space size while the program runs so such a
crash near the ceiling can still be classified as memory exhaustion.
"""

from __future__ import annotations

import asyncio
import codecs
import os
import resource
import signal
import time
from collections.abc import Awaitable, Callable
from pathlib import Path

import psutil

from cincout.config import CinCoutConfig
from cincout.errors import ToolchainUnavailableError
from cincout.models import (
    Completed,
    ExecutionOutcome,
    MemoryExceeded,
    ResourceLimits,
    Signaled,
    TimedOut,
)
from cincout.utils.logging import get_logger

logger = get_logger(__name__)

OutputCallback = Callable[[str], Awaitable[None]]

# Allocator-failure markers scanned in captured output
MEMORY_MARKERS: tuple[str, ...] = ("bad_alloc", "out of memory", "Killed")

# 128 + SIGKILL, as reported by a shell wrapper
_SHELL_KILL_EXIT_CODE = 128 + signal.SIGKILL

# Crash signals a failed allocation typically ends in
_ALLOCATION_CRASH_SIGNALS = frozenset({signal.SIGSEGV, signal.SIGBUS, signal.SIGABRT})

# Share of the memory ceiling the sampled peak must reach to blame a crash on memory
MEMORY_EXHAUSTION_RATIO = 0.75

_READ_CHUNK = 4096
_EXIT_POLL_SECONDS = 0.01
_DRAIN_GRACE_SECONDS = 0.5
_SWEEP_PASSES = 3


def build_limits(config: CinCoutConfig) -> ResourceLimits:
    """Derive the default resource envelope from configuration."""
    return ResourceLimits(
        memory_bytes=config.memory_limit_mb * 1024 * 1024,
        cpu_seconds=config.cpu_time_limit_seconds,
        stack_bytes=config.stack_limit_mb * 1024 * 1024,
        wall_timeout_seconds=config.wall_timeout_seconds,
    )


def _make_preexec(limits: ResourceLimits) -> Callable[[], None]:
    """Build the pre-exec hook applying limits in the forked child."""

    def _preexec() -> None:
        if limits.memory_bytes is not None:
            resource.setrlimit(resource.RLIMIT_AS, (limits.memory_bytes, limits.memory_bytes))
            resource.setrlimit(resource.RLIMIT_RSS, (limits.memory_bytes, limits.memory_bytes))
        resource.setrlimit(resource.RLIMIT_CPU, (limits.cpu_seconds, limits.cpu_seconds + 1))
        resource.setrlimit(resource.RLIMIT_STACK, (limits.stack_bytes, limits.stack_bytes))
        resource.setrlimit(resource.RLIMIT_CORE, (0, 0))

    return _preexec


def has_memory_marker(output: str) -> bool:
    return any(marker in output for marker in MEMORY_MARKERS)


def near_memory_ceiling(peak_bytes: int, limit_bytes: int | None) -> bool:
    """True when a sampled peak came close enough to the ceiling to explain a crash."""
    if not limit_bytes:
        return False
    return peak_bytes >= limit_bytes * MEMORY_EXHAUSTION_RATIO


def classify_exit(
    returncode: int,
    stdout: str,
    timed_out: bool = False,
    cpu_exhausted: bool = False,
    memory_exhausted: bool = False,
) -> ExecutionOutcome:
    """Classify a finished process. Pure: depends only on its arguments.

    Priority order:

    1. Killed by the wall-clock watchdog: TimedOut.
    2. SIGXCPU, or SIGKILL after the CPU ceiling was used up: TimedOut.
    3. SIGKILL (or exit code 137 from a shell wrapper), an allocator-failure
       marker in the output, or SIGSEGV / SIGBUS / SIGABRT while the address
       space was near the ceiling: MemoryExceeded.
    4. Any other terminating signal: Signaled.
    5. Otherwise Completed with the exit code, zero or not.

    Args:
        returncode: Process return code; negative values are terminating signals.
        stdout: Captured output (stderr merged in).
        timed_out: True when the watchdog killed the process.
        cpu_exhausted: True when the run lasted at least as long as the CPU ceiling.
        memory_exhausted: True when the sampled peak address space was near the memory ceiling.

    Returns:
        Exactly one ExecutionOutcome variant.
    """
    if timed_out:
        return TimedOut(stdout=stdout)

    signum = -returncode if returncode < 0 else None

    if signum == signal.SIGXCPU or (signum == signal.SIGKILL and cpu_exhausted):
        return TimedOut(stdout=stdout)

    if signum == signal.SIGKILL or returncode == _SHELL_KILL_EXIT_CODE or has_memory_marker(stdout):
        return MemoryExceeded(stdout=stdout)

    if memory_exhausted and signum in _ALLOCATION_CRASH_SIGNALS:
        return MemoryExceeded(stdout=stdout)

    if signum is not None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = f"SIG{signum}"
        return Signaled(signal=signum, signal_name=name, stdout=stdout)

    return Completed(exit_code=returncode, stdout=stdout)


def _leftover_processes(session_id: int, workspace: Path | None) -> list[psutil.Process]:
    """Processes still in the run's session, or running from or inside its workspace."""
    own_pid = os.getpid()
    found: list[psutil.Process] = []
    for proc in psutil.process_iter(["cwd", "exe", "status"]):
        if proc.pid == own_pid or proc.info.get("status") == psutil.STATUS_ZOMBIE:
            continue
        if workspace is not None and any(
            path and Path(path).is_relative_to(workspace) for path in (proc.info.get("cwd"), proc.info.get("exe"))
        ):
            found.append(proc)
            continue
        try:
            if os.getsid(proc.pid) == session_id:
                found.append(proc)
        except OSError:
            continue
    return found


def kill_leftovers(session_id: int, workspace: Path | None) -> int:
    """SIGKILL whatever a finished run left behind, including escapees from its process group.

    Returns:
        Number of processes killed.
    """
    killed = 0
    # Repeat while something is found, a dying parent can still have forked
    for _ in range(_SWEEP_PASSES):
        leftovers = _leftover_processes(session_id, workspace)
        if not leftovers:
            break
        for proc in leftovers:
            try:
                proc.kill()
                killed += 1
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
    return killed


class SupervisedProcess:
    """A running process under the envelope, with streaming output and a watchdog.

    Output (stdout and stderr merged) is read in chunks, forwarded to the
    optional callback and accumulated up to the configured cap.
    """

    def __init__(
        self,
        proc: asyncio.subprocess.Process,
        limits: ResourceLimits,
        max_output_bytes: int,
        on_output: OutputCallback | None = None,
        label: str = "program",
        workspace: Path | None = None,
    ) -> None:
        self._proc = proc
        self._limits = limits
        self._max_output_bytes = max_output_bytes
        self._on_output = on_output
        self._label = label
        self._workspace = workspace.resolve() if workspace is not None else None
        self._chunks: list[str] = []
        self._captured = 0
        self._truncated = False
        self._timed_out = False
        self._peak_memory = 0
        self._started = time.monotonic()
        self._outcome: ExecutionOutcome | None = None
        try:
            self._ps: psutil.Process | None = psutil.Process(proc.pid)
        except psutil.NoSuchProcess:
            self._ps = None
        self._pump = asyncio.create_task(self._pump_output())

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def running(self) -> bool:
        return self._proc.returncode is None

    @property
    def peak_memory_bytes(self) -> int:
        """Largest address-space size sampled while the process ran."""
        return self._peak_memory

    @property
    def output(self) -> str:
        text = "".join(self._chunks)
        if self._truncated:
            text += f"\n[output truncated at {self._max_output_bytes:,} bytes]"
        return text

    async def _pump_output(self) -> None:
        assert self._proc.stdout is not None
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            data = await self._proc.stdout.read(_READ_CHUNK)
            if not data:
                tail = decoder.decode(b"", final=True)
                if tail:
                    await self._emit(tail)
                return
            if self._truncated:
                # Keep draining so the child never blocks on a full pipe
                continue
            room = self._max_output_bytes - self._captured
            if len(data) > room:
                data = data[:room]
                self._truncated = True
            self._captured += len(data)
            text = decoder.decode(data)
            if text:
                await self._emit(text)

    async def _emit(self, text: str) -> None:
        self._chunks.append(text)
        if self._on_output is not None:
            await self._on_output(text)

    async def write(self, data: str) -> None:
        """Forward text to the process's stdin. Ignored once the process has exited."""
        stdin = self._proc.stdin
        if stdin is None or stdin.is_closing() or not self.running:
            return
        try:
            stdin.write(data.encode("utf-8"))
            await stdin.drain()
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("stdin_closed", label=self._label)

    def close_stdin(self) -> None:
        stdin = self._proc.stdin
        if stdin is not None and not stdin.is_closing():
            stdin.close()

    def kill(self) -> None:
        """SIGKILL the whole process group, including children left behind by the leader. Safe after exit."""
        try:
            os.killpg(self._proc.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            pass

    def _sample_memory(self) -> None:
        if self._ps is None:
            return
        try:
            size = self._ps.memory_info().vms
        except psutil.Error:
            return
        if size > self._peak_memory:
            self._peak_memory = size

    async def _exited(self) -> None:
        # Process.wait() also waits for the output pipe to close, which a
        # backgrounded child can hold open; the return code is set on reap.
        while self._proc.returncode is None:
            self._sample_memory()
            await asyncio.sleep(_EXIT_POLL_SECONDS)

    def _kill_leftovers(self) -> None:
        self.kill()
        killed = kill_leftovers(self._proc.pid, self._workspace)
        if killed:
            logger.warning("leftover_processes_killed", label=self._label, count=killed)

    async def _drain(self) -> None:
        """Collect the rest of the output, giving up after a short grace period."""
        try:
            await asyncio.wait_for(self._pump, timeout=_DRAIN_GRACE_SECONDS)
        except asyncio.TimeoutError:
            # The pump is cancelled; whatever was captured so far is kept
            logger.warning("output_drain_abandoned", label=self._label, grace=_DRAIN_GRACE_SECONDS)

    async def wait(self) -> ExecutionOutcome:
        """Wait for exit under the wall-clock watchdog and classify the result."""
        if self._outcome is not None:
            return self._outcome
        try:
            try:
                await asyncio.wait_for(self._exited(), timeout=self._limits.wall_timeout_seconds)
            except asyncio.TimeoutError:
                self._timed_out = True
                logger.info("watchdog_kill", label=self._label, timeout=self._limits.wall_timeout_seconds)
                self.kill()
                try:
                    await asyncio.wait_for(self._exited(), timeout=_DRAIN_GRACE_SECONDS)
                except asyncio.TimeoutError:
                    logger.warning("process_not_reaped", label=self._label, pid=self._proc.pid)
            # Stragglers, inside the group or escaped from it, would keep the output pipe open
            self._kill_leftovers()
            await self._drain()
        except asyncio.CancelledError:
            self._kill_leftovers()
            self._pump.cancel()
            raise

        elapsed = time.monotonic() - self._started
        returncode = self._proc.returncode if self._proc.returncode is not None else -signal.SIGKILL
        self._outcome = classify_exit(
            returncode,
            self.output,
            timed_out=self._timed_out,
            cpu_exhausted=elapsed >= self._limits.cpu_seconds,
            memory_exhausted=near_memory_ceiling(self._peak_memory, self._limits.memory_bytes),
        )
        logger.info(
            "process_finished",
            label=self._label,
            outcome=self._outcome.kind,
            returncode=returncode,
            elapsed_ms=int(elapsed * 1000),
            peak_memory_bytes=self._peak_memory,
        )
        return self._outcome


class ExecutionSupervisor:
    """Spawns processes under the resource envelope."""

    def __init__(self, config: CinCoutConfig) -> None:
        """Initialize the supervisor.

        Args:
            config: Configuration providing the envelope and the output cap.
        """
        self._limits = build_limits(config)
        self._max_output_bytes = config.max_output_bytes

    @property
    def limits(self) -> ResourceLimits:
        return self._limits

    async def start(
        self,
        argv: list[str],
        cwd: Path,
        limits: ResourceLimits | None = None,
        on_output: OutputCallback | None = None,
        interactive: bool = False,
        label: str = "program",
    ) -> SupervisedProcess:
        """Spawn a process and return a handle without waiting for it.

        Args:
            argv: Command line; the first element is the program to run.
            cwd: Working directory, normally the job workspace.
            limits: Envelope override; defaults to the configured envelope.
            on_output: Async callback receiving decoded output chunks.
            interactive: Open a stdin pipe instead of /dev/null.
            label: Name used in log events.

        Returns:
            A SupervisedProcess handle.

        Raises:
            ToolchainUnavailableError: If the program or wrapping tool does not exist.
        """
        limits = limits or self._limits
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(cwd),
                stdin=asyncio.subprocess.PIPE if interactive else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                preexec_fn=_make_preexec(limits),
                start_new_session=True,
            )
        except FileNotFoundError as exc:
            logger.error("program_missing", program=Path(argv[0]).name, label=label)
            raise ToolchainUnavailableError(f"Cannot start {Path(argv[0]).name}: not found") from exc

        logger.debug("process_started", label=label, pid=proc.pid)
        return SupervisedProcess(
            proc, limits, self._max_output_bytes, on_output=on_output, label=label, workspace=cwd
        )

    async def execute(
        self,
        argv: list[str],
        cwd: Path,
        limits: ResourceLimits | None = None,
        label: str = "program",
    ) -> ExecutionOutcome:
        """Run a process to completion under the envelope and classify it."""
        process = await self.start(argv, cwd, limits=limits, label=label)
        try:
            return await process.wait()
        finally:
            process.kill()
