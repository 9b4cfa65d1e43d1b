"""Unit tests for the one-shot job pipeline, with the toolchain replaced by shell scripts."""

from __future__ import annotations

import pytest
from helpers import FakeToolchain

from cincout.errors import (
    CapacityExceededError,
    InputRejectedError,
    ToolchainUnavailableError,
)
from cincout.models import (
    Action,
    Completed,
    Job,
    Language,
    ReportKind,
    TimedOut,
    ToolError,
)
from cincout.runtime.pipeline import JobLimiter, JobPipeline, read_memcheck_report, read_trace_report

HELLO = '#include <stdio.h>\nint main(void) { puts("hi"); return 0; }\n'


async def test_compile_and_run(pipeline: JobPipeline, fake_toolchain: FakeToolchain) -> None:
    result = await pipeline.run(Job(code=HELLO, lang=Language.C))
    assert result.outcome == Completed(exit_code=0, stdout="hi\n")
    assert result.report.kind is ReportKind.OUTPUT
    assert result.report.text == "hi\n"
    assert [spec.label for spec in fake_toolchain.calls] == ["compile"]
    assert pipeline.workspaces.active() == []


async def test_nonzero_exit_gets_notice(pipeline: JobPipeline, fake_toolchain: FakeToolchain) -> None:
    fake_toolchain.program = "echo partial\nexit 2"
    result = await pipeline.run(Job(code=HELLO, lang=Language.C))
    assert result.outcome.exit_code == 2
    assert result.report.text.startswith("[exit code 2]")


async def test_timeout_notice(pipeline: JobPipeline, fake_toolchain: FakeToolchain) -> None:
    fake_toolchain.program = "sleep 30"
    result = await pipeline.run(Job(code=HELLO, lang=Language.C))
    assert isinstance(result.outcome, TimedOut)
    assert result.report.text == "[execution timed out after 2 seconds]"
    assert pipeline.workspaces.active() == []


async def test_rejected_source_never_reaches_toolchain(pipeline: JobPipeline, fake_toolchain: FakeToolchain) -> None:
    code = '#include <stdlib.h>\nint main(void) { system("ls"); return 0; }\n'
    with pytest.raises(InputRejectedError):
        await pipeline.run(Job(code=code, lang=Language.C))
    assert fake_toolchain.calls == []
    assert not pipeline.workspaces.root.exists() or pipeline.workspaces.active() == []


async def test_bad_optimization_rejected_before_workspace(pipeline: JobPipeline, fake_toolchain: FakeToolchain) -> None:
    with pytest.raises(InputRejectedError):
        await pipeline.run(Job(code=HELLO, lang=Language.C, optimization="-O7"))
    assert fake_toolchain.calls == []
    assert pipeline.workspaces.active() == []


async def test_debug_needs_session(pipeline: JobPipeline, fake_toolchain: FakeToolchain) -> None:
    with pytest.raises(InputRejectedError, match="interactive session"):
        await pipeline.run(Job(code=HELLO, lang=Language.C, action=Action.DEBUG))
    assert fake_toolchain.calls == []


async def test_compile_failure_is_path_free_tool_error(pipeline: JobPipeline, fake_toolchain: FakeToolchain) -> None:
    fake_toolchain.fail_with = "{cwd}/program.c:1:20: error: expected ';' before '}}' token\n"
    result = await pipeline.run(Job(code=HELLO, lang=Language.C))
    assert isinstance(result.outcome, ToolError)
    assert result.report.kind is ReportKind.DIAGNOSTICS
    assert result.report.text.startswith("1:20: error:")
    assert "cincout-" not in result.report.text
    assert pipeline.workspaces.active() == []


async def test_unexpected_failure_still_releases_workspace(pipeline: JobPipeline, fake_toolchain: FakeToolchain) -> None:
    fake_toolchain.raise_error = RuntimeError("boom")
    with pytest.raises(RuntimeError):
        await pipeline.run(Job(code=HELLO, lang=Language.C))
    assert pipeline.workspaces.active() == []
    assert pipeline.limiter.active == 0


async def test_missing_compiler_propagates(pipeline: JobPipeline, fake_toolchain: FakeToolchain) -> None:
    fake_toolchain.raise_error = ToolchainUnavailableError("Required tool is not installed: gcc")
    with pytest.raises(ToolchainUnavailableError):
        await pipeline.run(Job(code=HELLO, lang=Language.C))
    assert pipeline.workspaces.active() == []


async def test_assembly_and_run(pipeline: JobPipeline, fake_toolchain: FakeToolchain) -> None:
    result = await pipeline.run(Job(code=HELLO, lang=Language.C, action=Action.BOTH))
    assert isinstance(result.outcome, Completed)
    assert result.assembly is not None
    assert "main:" in result.assembly
    assert "cincout-" not in result.assembly
    assert [spec.label for spec in fake_toolchain.calls] == ["assembly", "compile"]


async def test_assembly_only_does_not_run(pipeline: JobPipeline, fake_toolchain: FakeToolchain) -> None:
    result = await pipeline.run(Job(code=HELLO, lang=Language.C, action=Action.ASSEMBLY))
    assert result.outcome is None
    assert result.report.kind is ReportKind.ASSEMBLY


async def test_format_returns_rewritten_source(pipeline: JobPipeline, fake_toolchain: FakeToolchain) -> None:
    result = await pipeline.run(Job(code="int main(void){return 0;}", lang=Language.C, action=Action.FORMAT))
    assert result.report.kind is ReportKind.FORMAT
    assert result.report.text == "int main(void)\n{\n    return 0;\n}\n"


async def test_lint_report(pipeline: JobPipeline, fake_toolchain: FakeToolchain) -> None:
    result = await pipeline.run(Job(code="int f(void) { return 1; }", lang=Language.C, action=Action.LINT))
    assert result.report.lines == ["1:5: style: The function 'f' is never used. [unusedFunction]"]


async def test_capacity_is_fail_fast(cincout_config, monkeypatch: pytest.MonkeyPatch) -> None:
    pipeline = JobPipeline(cincout_config, limiter=JobLimiter(1))
    monkeypatch.setattr(pipeline.toolchain, "run", FakeToolchain().run)
    async with pipeline.limiter.slot():
        with pytest.raises(CapacityExceededError):
            await pipeline.run(Job(code=HELLO, lang=Language.C))
    assert pipeline.workspaces.active() == []
    result = await pipeline.run(Job(code=HELLO, lang=Language.C))
    assert isinstance(result.outcome, Completed)


def test_missing_tool_logs(pipeline: JobPipeline) -> None:
    with pipeline.workspaces.scoped(Language.C) as workspace:
        with pytest.raises(ToolchainUnavailableError):
            read_memcheck_report(workspace)
        with pytest.raises(ToolchainUnavailableError):
            read_trace_report(workspace)
        workspace.strace_log.write_text("")
        with pytest.raises(ToolchainUnavailableError):
            read_trace_report(workspace)
        workspace.strace_log.write_text('100 write(1, "hi\\n", 3) = 3\n')
        assert "write(1" in read_trace_report(workspace).text
