"""Demo script running every one-shot cincout action against a small C snippet."""

from __future__ import annotations

import asyncio

# ---------------------------------------------------------------------------
# Needs gcc, clang-format, cppcheck, valgrind and strace on PATH.
# Missing tools are reported and skipped.
# ---------------------------------------------------------------------------

LEAKY_PROGRAM = """#include <stdio.h>
#include <stdlib.h>

int main(void) {
    int *values = malloc(10 * sizeof(int));
    for (int i = 0; i < 10; i++) values[i] = i * i;
    printf("last square: %d\\n", values[9]);
    return 0;
}
"""


async def demo() -> None:
    """Run a scripted cincout workflow demonstration."""
    from cincout.config import load_config
    from cincout.errors import CinCoutError
    from cincout.models import Action, Job, Language
    from cincout.runtime.pipeline import JobPipeline
    from cincout.utils.logging import setup_logging

    setup_logging("WARNING")
    pipeline = JobPipeline(load_config())

    print("=" * 60)
    print("cincout Demo Flow")
    print("=" * 60)

    steps = [Action.COMPILE, Action.ASSEMBLY, Action.FORMAT, Action.LINT, Action.MEMCHECK, Action.TRACE]
    for number, action in enumerate(steps, start=1):
        print(f"\n[{number}] {action.value}")
        job = Job(code=LEAKY_PROGRAM, lang=Language.C, action=action)
        try:
            result = await pipeline.run(job)
        except CinCoutError as exc:
            print(f"  skipped: {exc}")
            continue
        outcome = result.outcome.kind if result.outcome else "n/a"
        print(f"  outcome: {outcome}")
        for line in result.report.lines[:12]:
            print(f"  {line}")
        if len(result.report.lines) > 12:
            print(f"  ... ({len(result.report.lines) - 12} more lines)")

    print("\n" + "=" * 60)
    print("Demo complete. Start the server with: cincout serve")
    print("=" * 60)


if __name__ == "__main__":
    asyncio.run(demo())
