"""Leak-checker report pipeline.

The valgrind log is processed in three stages instead of chained substitutions:

1. tokenize: keep the block from the heap summary marker to the end, strip the
   ``==PID==`` prefixes, drop blank lines and the "For lists of" hint.
2. classify: decide the shape of each line. Stack frames come in five shapes:

   * SOURCE_FRAME: ``(program.c:12)`` becomes ``(line: 12)``
   * WORKSPACE_FRAME: ``(/tmp/cincout-1f2e/program.c:12)`` becomes ``(line: 12)``
   * LIBRARY_FRAME: ``(in /usr/lib/x86_64-linux-gnu/libc.so.6)`` becomes ``(in libc.so.6)``
   * EXTERNAL_FRAME: ``(/build/valgrind/vg_replace_malloc.c:431)`` becomes ``(vg_replace_malloc.c:431)``
   * UNRESOLVED_FRAME: no source location, e.g. ``by 0x4005E4: ???``, kept as is

   Anything else is text: a definite-leak header, the error summary, or plain prose.
3. emit: rebuild each line and attach spans. A definite-leak header and the
   frames under it form one leak block.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import StrEnum

from cincout.models import Report, ReportKind, Span, SpanKind

HEAP_SUMMARY_MARKER = "HEAP SUMMARY:"

_PID_PREFIX_RE = re.compile(r"==\d+== ?")
_FROM_RE = re.compile(r"\s+from\s+")
_FRAME_RE = re.compile(r"^(?P<indent>\s*)(?P<verb>at|by) (?P<addr>0x[0-9A-Fa-f]+): (?P<func>.*?)(?: \((?P<loc>[^()]*)\))?$")
_SOURCE_LOC_RE = re.compile(r"^(?P<path>[^:]+\.(?:c|cpp|cc|cxx|h|hpp)):(?P<line>\d+)$")
_USER_SOURCE_RE = re.compile(r"^program\.(?:c|cpp)$")
_LEAK_RE = re.compile(r"\d+(?:,\d+)* bytes? in \d+(?:,\d+)* blocks? are definitely lost")
_ERROR_SUMMARY_RE = re.compile(r"ERROR SUMMARY: (?P<count>\d+(?:,\d+)*) errors?")
_NO_LEAKS = "All heap blocks were freed -- no leaks are possible"


class LineShape(StrEnum):
    SOURCE_FRAME = "source_frame"
    WORKSPACE_FRAME = "workspace_frame"
    LIBRARY_FRAME = "library_frame"
    EXTERNAL_FRAME = "external_frame"
    UNRESOLVED_FRAME = "unresolved_frame"
    LEAK_HEADER = "leak_header"
    ERROR_SUMMARY = "error_summary"
    TEXT = "text"


_FRAME_SHAPES = frozenset(
    {
        LineShape.SOURCE_FRAME,
        LineShape.WORKSPACE_FRAME,
        LineShape.LIBRARY_FRAME,
        LineShape.EXTERNAL_FRAME,
        LineShape.UNRESOLVED_FRAME,
    }
)


@dataclass(frozen=True)
class ClassifiedLine:
    shape: LineShape
    text: str
    frame: re.Match[str] | None = None
    location: re.Match[str] | None = None


def tokenize(log_text: str) -> list[str]:
    """Cut the log down to the report block and strip valgrind's line prefixes."""
    lines: list[str] = []
    reading = False
    for raw in log_text.splitlines():
        if HEAP_SUMMARY_MARKER in raw:
            reading = True
        if not reading:
            continue
        line = _PID_PREFIX_RE.sub("", raw).rstrip()
        if not line.strip() or "For lists of" in line:
            continue
        lines.append(line)
    return lines


def classify_line(line: str) -> ClassifiedLine:
    """Decide the shape of one tokenized line."""
    frame = _FRAME_RE.match(line)
    if frame is not None:
        loc = frame.group("loc")
        if loc is None:
            return ClassifiedLine(LineShape.UNRESOLVED_FRAME, line, frame)
        if loc.startswith("in "):
            return ClassifiedLine(LineShape.LIBRARY_FRAME, line, frame)
        source = _SOURCE_LOC_RE.match(loc)
        if source is None:
            return ClassifiedLine(LineShape.UNRESOLVED_FRAME, line, frame)
        path = source.group("path")
        basename = path.rsplit("/", 1)[-1]
        if _USER_SOURCE_RE.match(basename):
            shape = LineShape.WORKSPACE_FRAME if "/" in path else LineShape.SOURCE_FRAME
            return ClassifiedLine(shape, line, frame, source)
        return ClassifiedLine(LineShape.EXTERNAL_FRAME, line, frame, source)

    if _LEAK_RE.search(line):
        return ClassifiedLine(LineShape.LEAK_HEADER, line)
    if _ERROR_SUMMARY_RE.search(line) or _NO_LEAKS in line:
        return ClassifiedLine(LineShape.ERROR_SUMMARY, line)
    return ClassifiedLine(LineShape.TEXT, line)


def _rewrite_frame(item: ClassifiedLine) -> tuple[str, int | None]:
    """Rebuild a frame line without paths. Returns the text and the user source line, if any."""
    frame = item.frame
    assert frame is not None
    head = f"{frame.group('indent')}{frame.group('verb')} {frame.group('addr')}: {frame.group('func')}"

    if item.shape in (LineShape.SOURCE_FRAME, LineShape.WORKSPACE_FRAME):
        assert item.location is not None
        line_no = int(item.location.group("line"))
        return f"{head} (line: {line_no})", line_no
    if item.shape is LineShape.LIBRARY_FRAME:
        library = frame.group("loc")[3:].rsplit("/", 1)[-1]
        return f"{head} (in {library})", None
    if item.shape is LineShape.EXTERNAL_FRAME:
        assert item.location is not None
        basename = item.location.group("path").rsplit("/", 1)[-1]
        return f"{head} ({basename}:{item.location.group('line')})", None
    loc = frame.group("loc")
    if loc is not None:
        return f"{head} ({loc.rsplit('/', 1)[-1]})", None
    return item.text, None


def emit(items: list[ClassifiedLine]) -> Report:
    """Rebuild the report text and its spans from classified lines."""
    out: list[str] = []
    spans: list[Span] = []
    leak_span: Span | None = None

    for item in items:
        index = len(out)

        if item.shape in _FRAME_SHAPES:
            text, line_no = _rewrite_frame(item)
            out.append(text)
            if line_no is not None:
                marker = f"(line: {line_no})"
                start = text.rfind(marker)
                spans.append(
                    Span(kind=SpanKind.LINE_REF, line_index=index, start=start, end=start + len(marker), line=line_no)
                )
            if leak_span is not None:
                leak_span.block_lines += 1
            continue

        leak_span = None
        text = _FROM_RE.sub(" from ", item.text)
        out.append(text)

        if item.shape is LineShape.LEAK_HEADER:
            match = _LEAK_RE.search(text)
            assert match is not None
            leak_span = Span(kind=SpanKind.LEAK, line_index=index, start=match.start(), end=len(text))
            spans.append(leak_span)
        elif item.shape is LineShape.ERROR_SUMMARY:
            summary = _ERROR_SUMMARY_RE.search(text)
            clean = summary is None or int(summary.group("count").replace(",", "")) == 0
            spans.append(
                Span(
                    kind=SpanKind.SUMMARY_OK if clean else SpanKind.SUMMARY_FAIL,
                    line_index=index,
                    start=0,
                    end=len(text),
                )
            )

    return Report(kind=ReportKind.MEMCHECK, text="\n".join(out), spans=spans)


def format_memcheck(log_text: str) -> Report:
    """Turn a raw valgrind log into a path-free memcheck report."""
    return emit([classify_line(line) for line in tokenize(log_text)])
