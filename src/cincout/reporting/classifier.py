"""Result classifier — turns raw tool output into path-free, span-tagged reports."""

from __future__ import annotations

import re
from pathlib import Path

from cincout.models import Report, ReportKind, Span, SpanKind
from cincout.reporting.memcheck import format_memcheck

# Source file references such as "program.c:" or "/usr/include/stdio.h:"
_SOURCE_PATH_RE = re.compile(r"[^:\s]+\.(?:cpp|c|h|hpp):")
_ERROR_RE = re.compile(r"error:", re.IGNORECASE)
_WARNING_RE = re.compile(r"warning:", re.IGNORECASE)
_LOCATION_RE = re.compile(r"(\d+):(\d+):")

LINT_NOISE: tuple[str, ...] = ("[checkersReport]", "missingIncludeSystem", "unmatchedSuppression", "missingInclude")
NO_ISSUES_TEXT = "No issues found"
NO_TRACE_TEXT = "No system call information captured. The program may have failed to start under the tracer."

_DEBUGGER_BANNER = "Reading symbols from"


def scrub_paths(text: str, workspace_dir: Path | None = None) -> str:
    """Remove source-file path prefixes and any reference to the workspace directory."""
    if workspace_dir is not None:
        directory = str(workspace_dir)
        text = text.replace(directory + "/", "").replace(directory, "")
    return _SOURCE_PATH_RE.sub("", text)


def tag_spans(lines: list[str]) -> list[Span]:
    """Tag error/warning markers and line:column pairs in each line."""
    spans: list[Span] = []
    for index, line in enumerate(lines):
        for match in _ERROR_RE.finditer(line):
            spans.append(Span(kind=SpanKind.ERROR, line_index=index, start=match.start(), end=match.end()))
        for match in _WARNING_RE.finditer(line):
            spans.append(Span(kind=SpanKind.WARNING, line_index=index, start=match.start(), end=match.end()))
        for match in _LOCATION_RE.finditer(line):
            spans.append(
                Span(
                    kind=SpanKind.LOCATION,
                    line_index=index,
                    start=match.start(),
                    end=match.end(),
                    line=int(match.group(1)),
                    column=int(match.group(2)),
                )
            )
    return spans


def format_diagnostics(raw: str, workspace_dir: Path | None = None) -> Report:
    """Compiler stderr to a diagnostics report."""
    text = scrub_paths(raw, workspace_dir).strip("\n")
    return Report(kind=ReportKind.DIAGNOSTICS, text=text, spans=tag_spans(text.split("\n")) if text else [])


def format_lint(raw: str) -> Report:
    """cppcheck output to a lint report.

    Only diagnostic lines (``file:line:col: severity: message``) survive, with the
    file part dropped. Noisy categories are removed first. When nothing is left the
    report says so explicitly and sets ``no_issues``.
    """
    kept: list[str] = []
    for line in raw.splitlines():
        if any(noise in line for noise in LINT_NOISE):
            continue
        parts = line.split(":")
        if len(parts) < 4:
            continue
        kept.append(scrub_paths(f"{parts[1]}:{parts[2]}:{':'.join(parts[3:])}"))

    if not kept:
        return Report(kind=ReportKind.LINT, text=NO_ISSUES_TEXT, no_issues=True)
    return Report(kind=ReportKind.LINT, text="\n".join(kept), spans=tag_spans(kept))


def format_trace(raw: str, workspace_dir: Path | None = None) -> Report:
    """strace log to a trace report. The binary path in execve() is reduced to its name."""
    text = scrub_paths(raw, workspace_dir).strip("\n")
    return Report(kind=ReportKind.TRACE, text=text)


def format_assembly(raw: str, workspace_dir: Path | None = None) -> Report:
    # .file directives carry the source name
    text = raw.replace(str(workspace_dir) + "/", "") if workspace_dir is not None else raw
    return Report(kind=ReportKind.ASSEMBLY, text=text)


def format_output(stdout: str, exit_code: int | None = None) -> Report:
    """Program output; a non-zero exit code is prefixed as a notice."""
    text = stdout
    if exit_code:
        text = f"[exit code {exit_code}]\n{stdout}" if stdout else f"[exit code {exit_code}]"
    return Report(kind=ReportKind.OUTPUT, text=text)


def scrub_debugger_output(chunk: str, workspace_dir: Path | None = None) -> str:
    """Drop the debugger's symbol-loading banner and strip workspace paths from a live chunk."""
    lines = [line for line in chunk.split("\n") if _DEBUGGER_BANNER not in line]
    text = "\n".join(lines)
    if workspace_dir is not None:
        directory = str(workspace_dir)
        text = text.replace(directory + "/", "").replace(directory, "")
    return text


def classify(raw: str, source_kind: ReportKind, workspace_dir: Path | None = None) -> Report:
    """Normalize raw tool output into a Report.

    Args:
        raw: Raw text captured from the tool (stderr, log file contents or stdout).
        source_kind: Which tool produced it.
        workspace_dir: Job workspace, scrubbed from the text when given.

    Returns:
        A Report that never contains the workspace path.
    """
    if source_kind is ReportKind.MEMCHECK:
        return format_memcheck(raw)
    if source_kind is ReportKind.LINT:
        return format_lint(raw)
    if source_kind is ReportKind.TRACE:
        return format_trace(raw, workspace_dir)
    if source_kind is ReportKind.ASSEMBLY:
        return format_assembly(raw, workspace_dir)
    if source_kind is ReportKind.OUTPUT:
        return format_output(raw)
    if source_kind is ReportKind.FORMAT:
        return Report(kind=ReportKind.FORMAT, text=raw)
    return format_diagnostics(raw, workspace_dir)
