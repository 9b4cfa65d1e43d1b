"""Toolchain invoker — builds validated command lines and runs them with an absolute timeout."""

from __future__ import annotations

import asyncio
import os
import shutil
import signal

from cincout.config import CinCoutConfig
from cincout.errors import (
    InputRejectedError,
    ToolchainUnavailableError,
    ToolInvocationError,
    ToolTimeoutError,
)
from cincout.models import CommandSpec, Compiler, Job, Language, ToolResult, Workspace
from cincout.utils.logging import get_logger

logger = get_logger(__name__)

_COMPILERS: dict[tuple[Compiler, Language], str] = {
    (Compiler.GCC, Language.C): "gcc",
    (Compiler.GCC, Language.CPP): "g++",
    (Compiler.CLANG, Language.C): "clang",
    (Compiler.CLANG, Language.CPP): "clang++",
}

_ASSEMBLY_FLAGS = ["-S", "-masm=intel", "-fno-asynchronous-unwind-tables"]

_CPPCHECK_FLAGS = [
    "--enable=all",
    "--suppress=missingInclude",
    "--suppress=missingIncludeSystem",
    "--suppress=unmatchedSuppression",
    "--suppress=checkersReport",
    "--inline-suppr",
    "--verbose",
]

_VALGRIND_FLAGS = [
    "--tool=memcheck",
    "--leak-check=full",
    "--show-leak-kinds=all",
    "--track-origins=yes",
]

# Sent to the debugger right after it starts
DEBUGGER_INITIAL_COMMANDS: tuple[str, ...] = (
    "set print pretty on",
    "set pagination off",
    "list",
    "break main",
)


class ToolchainInvoker:
    """Maps validated job options onto external tool command lines and runs them.

    Only the language, compiler choice and optimization flag influence the
    argv, each through a fixed table. Source text is only ever written to the
    workspace's source file.
    """

    def __init__(self, config: CinCoutConfig) -> None:
        """Initialize the invoker.

        Args:
            config: Configuration providing standards, format style, allowed flags and timeouts.
        """
        self._config = config
        self._allowed_optimizations = frozenset(config.allowed_optimizations)

    # ------------------------------------------------------------------
    # Option validation
    # ------------------------------------------------------------------

    def validate_options(self, job: Job) -> None:
        """Reject job options outside the fixed tables.

        Raises:
            InputRejectedError: If the optimization flag is not allowed.
        """
        if job.optimization not in self._allowed_optimizations:
            raise InputRejectedError(f"Unsupported optimization level: {job.optimization!r}")

    def compiler_binary(self, job: Job) -> str:
        return _COMPILERS[(job.compiler, job.lang)]

    def standard_flag(self, lang: Language) -> str:
        standard = self._config.cpp_standard if lang is Language.CPP else self._config.c_standard
        return f"-std={standard}"

    # ------------------------------------------------------------------
    # Command builders
    # ------------------------------------------------------------------

    def compile_command(self, job: Job, workspace: Workspace, debug_build: bool = False) -> CommandSpec:
        """Build the compile command for a job.

        Args:
            job: Job whose options select compiler, standard and optimization.
            workspace: Workspace holding the source file.
            debug_build: Add debug info and force -O0 (leak-checker, tracer and debugger builds).

        Returns:
            CommandSpec producing workspace.binary_file.
        """
        self.validate_options(job)
        argv = [self.compiler_binary(job), self.standard_flag(job.lang)]
        if debug_build:
            argv += ["-g", "-O0"]
        else:
            argv.append(job.optimization)
        argv += [str(workspace.source_file), "-o", str(workspace.binary_file)]
        return CommandSpec(
            argv=argv,
            cwd=workspace.directory,
            timeout=self._config.tool_timeout_seconds,
            label="compile",
        )

    def assembly_command(self, job: Job, workspace: Workspace) -> CommandSpec:
        self.validate_options(job)
        argv = [
            self.compiler_binary(job),
            *_ASSEMBLY_FLAGS,
            self.standard_flag(job.lang),
            job.optimization,
            str(workspace.source_file),
            "-o",
            str(workspace.assembly_file),
        ]
        return CommandSpec(
            argv=argv,
            cwd=workspace.directory,
            timeout=self._config.tool_timeout_seconds,
            label="assembly",
        )

    def format_command(self, workspace: Workspace) -> CommandSpec:
        """clang-format rewrites the source file in place."""
        return CommandSpec(
            argv=["clang-format", f"-style={self._config.format_style}", "-i", str(workspace.source_file)],
            cwd=workspace.directory,
            timeout=self._config.tool_timeout_seconds,
            label="format",
        )

    def lint_command(self, workspace: Workspace) -> CommandSpec:
        """cppcheck reports findings on stderr and may exit non-zero; both streams are kept."""
        return CommandSpec(
            argv=["cppcheck", *_CPPCHECK_FLAGS, str(workspace.source_file)],
            cwd=workspace.directory,
            timeout=self._config.tool_timeout_seconds,
            allow_nonzero=True,
            merge_stderr=True,
            label="lint",
        )

    def memcheck_argv(self, workspace: Workspace) -> list[str]:
        self.require("valgrind")
        return ["valgrind", *_VALGRIND_FLAGS, f"--log-file={workspace.valgrind_log}", str(workspace.binary_file)]

    def trace_argv(self, workspace: Workspace) -> list[str]:
        self.require("strace")
        return ["strace", "-f", "-o", str(workspace.strace_log), str(workspace.binary_file)]

    def debugger_argv(self, workspace: Workspace) -> list[str]:
        self.require("gdb")
        return ["gdb", "-q", "-ex", "set disable-randomization off", str(workspace.binary_file)]

    @staticmethod
    def require(binary: str) -> str:
        """Resolve a tool binary on PATH.

        Raises:
            ToolchainUnavailableError: If the binary is not installed.
        """
        path = shutil.which(binary)
        if path is None:
            raise ToolchainUnavailableError(f"Required tool is not installed: {binary}")
        return path

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def run(self, spec: CommandSpec) -> ToolResult:
        """Run one external command to completion.

        Args:
            spec: The command to run.

        Returns:
            ToolResult with decoded stdout, stderr and exit code.

        Raises:
            ToolchainUnavailableError: If the binary does not exist.
            ToolTimeoutError: If the command exceeds its timeout. The process group is killed.
            ToolInvocationError: If the command exits non-zero and spec.allow_nonzero is False.
        """
        timeout = spec.timeout if spec.timeout is not None else self._config.tool_timeout_seconds
        try:
            proc = await asyncio.create_subprocess_exec(
                *spec.argv,
                cwd=str(spec.cwd),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT if spec.merge_stderr else asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except FileNotFoundError as exc:
            logger.error("tool_missing", tool=spec.argv[0], label=spec.label)
            raise ToolchainUnavailableError(f"Required tool is not installed: {spec.argv[0]}") from exc

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            _kill_group(proc.pid)
            await proc.wait()
            logger.warning("tool_timeout", tool=spec.argv[0], label=spec.label, timeout=timeout)
            raise ToolTimeoutError(f"{spec.label or spec.argv[0]} timed out after {timeout:g}s", exit_code=-1)
        except asyncio.CancelledError:
            _kill_group(proc.pid)
            await proc.wait()
            raise

        result = ToolResult(
            stdout=stdout.decode("utf-8", errors="replace") if stdout else "",
            stderr=stderr.decode("utf-8", errors="replace") if stderr else "",
            exit_code=proc.returncode if proc.returncode is not None else -1,
        )
        logger.debug("tool_finished", tool=spec.argv[0], label=spec.label, exit_code=result.exit_code)

        if result.exit_code != 0 and not spec.allow_nonzero:
            raise ToolInvocationError(
                f"{spec.label or spec.argv[0]} failed with exit code {result.exit_code}",
                stderr=result.stderr or result.stdout,
                exit_code=result.exit_code,
            )
        return result


def _kill_group(pid: int) -> None:
    """SIGKILL a whole process group started with start_new_session."""
    try:
        os.killpg(pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError):
        pass
