"""cincout FastMCP server — exposes the one-shot job actions as MCP tools."""

from __future__ import annotations

from fastmcp import FastMCP

from cincout.config import CinCoutConfig
from cincout.errors import (
    CapacityExceededError,
    InputRejectedError,
    ToolchainUnavailableError,
    WorkspaceError,
)
from cincout.models import Action, Compiler, Job, Language
from cincout.runtime.pipeline import JobPipeline
from cincout.utils.logging import get_logger

logger = get_logger(__name__)


def create_server(config: CinCoutConfig, pipeline: JobPipeline | None = None) -> FastMCP:
    """Create and configure the cincout FastMCP server.

    Args:
        config: cincout configuration instance.
        pipeline: Job pipeline to share with other front ends; created when omitted.

    Returns:
        Configured FastMCP server ready to run.
    """
    mcp: FastMCP = FastMCP(
        name="cincout",
        instructions=(
            "cincout compiles and runs short C and C++ snippets in a disposable workspace "
            "under CPU, memory and wall-clock limits. Use run_code to compile and run, "
            "show_assembly for Intel-syntax assembly, format_code and lint_code for style, "
            "check_memory for a leak report and trace_syscalls for a system call log."
        ),
    )
    pipeline = pipeline or JobPipeline(config)

    async def _run(code: str, action: Action, lang: str, compiler: str, optimization: str) -> dict:
        try:
            job = Job(
                code=code,
                lang=Language(lang),
                compiler=Compiler(compiler),
                optimization=optimization,
                action=action,
            )
        except ValueError as exc:
            return {"success": False, "error": f"Invalid option: {exc}", "error_type": "input_rejected"}

        try:
            result = await pipeline.run(job)
            outcome = result.outcome.kind if result.outcome else None
            logger.info("tool_called", action=action.value, outcome=outcome)
            return {"success": outcome in (None, "completed"), **result.model_dump(mode="json")}
        except InputRejectedError as exc:
            return {"success": False, "error": exc.reason, "error_type": "input_rejected"}
        except CapacityExceededError as exc:
            return {"success": False, "error": str(exc), "error_type": "capacity"}
        except ToolchainUnavailableError as exc:
            return {"success": False, "error": str(exc), "error_type": "toolchain_unavailable"}
        except WorkspaceError:
            logger.exception("tool_workspace_failure", action=action.value)
            return {"success": False, "error": "Internal error occurred", "error_type": "internal"}
        except Exception:  # noqa: BLE001
            logger.exception("tool_unexpected_error", action=action.value)
            return {"success": False, "error": "Internal error occurred", "error_type": "internal"}

    @mcp.tool()
    async def run_code(code: str, lang: str = "c", compiler: str = "gcc", optimization: str = "-O0") -> dict:  # type: ignore[return]
        """Compile a C/C++ snippet and run it under resource limits.

        Args:
            code: Complete C or C++ source with a main function.
            lang: "c" or "cpp".
            compiler: "gcc" or "clang".
            optimization: One of -O0, -O1, -O2, -O3, -Os, -Og, -Ofast.

        Returns the program output and the classified outcome: completed (with exit code),
        timed_out, memory_exceeded, signaled, or tool_error with compiler diagnostics.
        """
        return await _run(code, Action.COMPILE, lang, compiler, optimization)

    @mcp.tool()
    async def show_assembly(code: str, lang: str = "c", compiler: str = "gcc", optimization: str = "-O0") -> dict:  # type: ignore[return]
        """Generate Intel-syntax assembly for a snippet without running it."""
        return await _run(code, Action.ASSEMBLY, lang, compiler, optimization)

    @mcp.tool()
    async def format_code(code: str, lang: str = "c") -> dict:  # type: ignore[return]
        """Reformat a snippet with clang-format and return the new text."""
        return await _run(code, Action.FORMAT, lang, "gcc", "-O0")

    @mcp.tool()
    async def lint_code(code: str, lang: str = "c") -> dict:  # type: ignore[return]
        """Run cppcheck on a snippet. A clean result sets report.no_issues."""
        return await _run(code, Action.LINT, lang, "gcc", "-O0")

    @mcp.tool()
    async def check_memory(code: str, lang: str = "c", compiler: str = "gcc") -> dict:  # type: ignore[return]
        """Build with debug info and run under valgrind; returns the leak report with file paths removed."""
        return await _run(code, Action.MEMCHECK, lang, compiler, "-O0")

    @mcp.tool()
    async def trace_syscalls(code: str, lang: str = "c", compiler: str = "gcc") -> dict:  # type: ignore[return]
        """Run a snippet under strace and return the system call log."""
        return await _run(code, Action.TRACE, lang, compiler, "-O0")

    return mcp
