"""Pydantic models for cincout — jobs, workspaces, tool runs, execution outcomes and reports."""

from __future__ import annotations

import uuid
from enum import StrEnum
from pathlib import Path
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field


# ---------------------------------------------------------------------------
# Job models
# ---------------------------------------------------------------------------


class Language(StrEnum):
    C = "c"
    CPP = "cpp"

    @property
    def extension(self) -> str:
        return "cpp" if self is Language.CPP else "c"


class Compiler(StrEnum):
    GCC = "gcc"
    CLANG = "clang"


class Action(StrEnum):
    COMPILE = "compile"
    ASSEMBLY = "assembly"
    BOTH = "both"
    FORMAT = "format"
    LINT = "lint"
    MEMCHECK = "memcheck"
    DEBUG = "debug"
    TRACE = "trace"


class JobRequest(BaseModel):
    """A client job request as received over HTTP or a session channel."""

    code: str
    lang: Language = Language.C
    compiler: Compiler = Compiler.GCC
    optimization: str = "-O0"
    action: Action = Action.COMPILE


class Job(BaseModel):
    """One dispatched unit of work. Immutable once created."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    lang: Language
    code: str
    compiler: Compiler = Compiler.GCC
    optimization: str = "-O0"
    action: Action = Action.COMPILE
    session_id: str | None = None

    @classmethod
    def from_request(cls, request: JobRequest, session_id: str | None = None) -> Job:
        return cls(
            lang=request.lang,
            code=request.code,
            compiler=request.compiler,
            optimization=request.optimization,
            action=request.action,
            session_id=session_id,
        )


class FilterVerdict(BaseModel):
    """Static pre-filter decision: accepted, or rejected with a reason."""

    accepted: bool
    reason: str | None = None

    @classmethod
    def accept(cls) -> FilterVerdict:
        return cls(accepted=True)

    @classmethod
    def reject(cls, reason: str) -> FilterVerdict:
        return cls(accepted=False, reason=reason)


# ---------------------------------------------------------------------------
# Workspace model
# ---------------------------------------------------------------------------


class Workspace(BaseModel):
    """Disposable directory backing exactly one job, plus every path inside it."""

    model_config = ConfigDict(frozen=True)

    directory: Path
    source_file: Path
    binary_file: Path
    assembly_file: Path
    valgrind_log: Path
    strace_log: Path

    @classmethod
    def layout(cls, directory: Path, lang: Language) -> Workspace:
        return cls(
            directory=directory,
            source_file=directory / f"program.{lang.extension}",
            binary_file=directory / "program.out",
            assembly_file=directory / "program.s",
            valgrind_log=directory / "valgrind.log",
            strace_log=directory / "strace.log",
        )


# ---------------------------------------------------------------------------
# Tool invocation models
# ---------------------------------------------------------------------------


class CommandSpec(BaseModel):
    """A fully built external command line. Never contains user text."""

    argv: list[str]
    cwd: Path
    timeout: float | None = None
    allow_nonzero: bool = False
    merge_stderr: bool = False
    label: str = ""


class ToolResult(BaseModel):
    """Captured result of one external tool invocation."""

    stdout: str = ""
    stderr: str = ""
    exit_code: int = 0


class ResourceLimits(BaseModel):
    """Resource envelope applied to a supervised process before exec."""

    memory_bytes: int | None
    cpu_seconds: int
    stack_bytes: int
    wall_timeout_seconds: float

    def without_memory_ceiling(self) -> ResourceLimits:
        """Copy for tool-wrapped runs; valgrind reserves far more address space than the program."""
        return self.model_copy(update={"memory_bytes": None})


# ---------------------------------------------------------------------------
# Execution outcome variants
# ---------------------------------------------------------------------------


class Completed(BaseModel):
    kind: Literal["completed"] = "completed"
    exit_code: int
    stdout: str = ""


class TimedOut(BaseModel):
    kind: Literal["timed_out"] = "timed_out"
    stdout: str = ""


class MemoryExceeded(BaseModel):
    kind: Literal["memory_exceeded"] = "memory_exceeded"
    stdout: str = ""


class Signaled(BaseModel):
    kind: Literal["signaled"] = "signaled"
    signal: int
    signal_name: str = ""
    stdout: str = ""


class ToolError(BaseModel):
    kind: Literal["tool_error"] = "tool_error"
    stderr: str = ""


ExecutionOutcome = Annotated[
    Completed | TimedOut | MemoryExceeded | Signaled | ToolError,
    Field(discriminator="kind"),
]


# ---------------------------------------------------------------------------
# Report models
# ---------------------------------------------------------------------------


class SpanKind(StrEnum):
    ERROR = "error"
    WARNING = "warning"
    LOCATION = "location"
    LINE_REF = "line_ref"
    LEAK = "leak"
    SUMMARY_OK = "summary_ok"
    SUMMARY_FAIL = "summary_fail"


class Span(BaseModel):
    """A tagged region of one report line, for downstream highlighting."""

    kind: SpanKind
    line_index: int
    start: int
    end: int
    line: int | None = None
    column: int | None = None
    block_lines: int = 1


class ReportKind(StrEnum):
    DIAGNOSTICS = "diagnostics"
    MEMCHECK = "memcheck"
    LINT = "lint"
    ASSEMBLY = "assembly"
    FORMAT = "format"
    TRACE = "trace"
    OUTPUT = "output"


class Report(BaseModel):
    """Normalized, path-free text handed back to the client."""

    kind: ReportKind
    text: str
    spans: list[Span] = Field(default_factory=list)
    no_issues: bool = False

    @property
    def lines(self) -> list[str]:
        return self.text.split("\n") if self.text else []


class JobResult(BaseModel):
    """Final result of a one-shot job."""

    job_id: str
    action: Action
    report: Report
    outcome: ExecutionOutcome | None = None
    assembly: str | None = None
