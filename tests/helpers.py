"""Test helpers shared across the unit and integration suites."""

from __future__ import annotations

import asyncio
import json
import shutil
from pathlib import Path
from typing import Any

import pytest

from cincout.errors import ChannelClosedError, ToolInvocationError
from cincout.models import CommandSpec, ToolResult


def requires_tools(*tools: str) -> pytest.MarkDecorator:
    """Skip a test unless every named binary is on PATH."""
    missing = [tool for tool in tools if shutil.which(tool) is None]
    return pytest.mark.skipif(bool(missing), reason=f"missing tools: {', '.join(missing)}")


def write_script(path: Path, body: str) -> None:
    """Write an executable shell script, standing in for a compiled binary."""
    path.write_text(f"#!/bin/sh\n{body}\n", encoding="utf-8")
    path.chmod(0o755)


class FakeChannel:
    """In-memory session channel. Tests push client frames and inspect server messages."""

    def __init__(self, auto_pong: bool = True) -> None:
        self.auto_pong = auto_pong
        self.sent: list[dict[str, Any]] = []
        self.closed = False
        self._incoming: asyncio.Queue[str | None] = asyncio.Queue()
        self._new_message = asyncio.Event()

    async def send_json(self, message: dict[str, Any]) -> None:
        if self.closed:
            raise ChannelClosedError("closed")
        self.sent.append(message)
        self._new_message.set()
        if self.auto_pong and message.get("type") == "ping":
            self.push({"type": "pong"})

    async def receive_text(self) -> str:
        frame = await self._incoming.get()
        if frame is None:
            raise ChannelClosedError("closed")
        return frame

    async def close(self, code: int = 1000) -> None:
        self.closed = True
        self._incoming.put_nowait(None)

    def push(self, message: dict[str, Any] | str) -> None:
        self._incoming.put_nowait(message if isinstance(message, str) else json.dumps(message))

    def disconnect(self) -> None:
        self._incoming.put_nowait(None)

    def of_type(self, kind: str) -> list[dict[str, Any]]:
        return [m for m in self.sent if m.get("type") == kind]

    async def wait_for(self, kind: str, timeout: float = 5.0) -> dict[str, Any]:
        """Wait until a message of the given type has been sent and return the first one."""

        async def _wait() -> dict[str, Any]:
            while True:
                found = self.of_type(kind)
                if found:
                    return found[0]
                self._new_message.clear()
                await self._new_message.wait()

        return await asyncio.wait_for(_wait(), timeout=timeout)


class FakeToolchain:
    """Stands in for ToolchainInvoker.run: records every command and plays the part of the compiler.

    A compile writes ``program`` as a shell script at the binary path.
    """

    def __init__(self, program: str = "echo hi") -> None:
        self.program = program
        self.fail_with: str | None = None
        self.raise_error: Exception | None = None
        self.calls: list[CommandSpec] = []

    async def run(self, spec: CommandSpec) -> ToolResult:
        self.calls.append(spec)
        if self.raise_error is not None:
            raise self.raise_error
        if self.fail_with is not None:
            raise ToolInvocationError("compile failed", stderr=self.fail_with.format(cwd=spec.cwd), exit_code=1)
        if spec.label == "compile":
            write_script(spec.cwd / "program.out", self.program)
        elif spec.label == "assembly":
            (spec.cwd / "program.s").write_text(f'\t.file\t"{spec.cwd}/program.c"\nmain:\n\tret\n', encoding="utf-8")
        elif spec.label == "format":
            Path(spec.argv[-1]).write_text("int main(void)\n{\n    return 0;\n}\n", encoding="utf-8")
        elif spec.label == "lint":
            return ToolResult(stdout="program.c:1:5: style: The function 'f' is never used. [unusedFunction]\n")
        return ToolResult()
