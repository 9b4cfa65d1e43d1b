"""cincout CLI entry point — supports `serve`, `mcp`, and one-shot `run` commands."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

from cincout.config import load_config
from cincout.errors import CinCoutError
from cincout.models import Action, Compiler, Job, Language
from cincout.utils.logging import get_logger, setup_logging


def _build_parser() -> argparse.ArgumentParser:
    """Build the CLI argument parser.

    Returns:
        Configured ArgumentParser instance.
    """
    parser = argparse.ArgumentParser(
        prog="cincout",
        description="cincout: compile, run and inspect C/C++ snippets inside a resource sandbox",
    )
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # serve subcommand
    serve_parser = subparsers.add_parser("serve", help="Start the HTTP/WebSocket server")
    serve_parser.add_argument("--host", default=None, help="Override bind host")
    serve_parser.add_argument("--port", type=int, default=None, help="Override bind port")

    # mcp subcommand
    mcp_parser = subparsers.add_parser("mcp", help="Start the MCP server")
    mcp_parser.add_argument(
        "--transport",
        choices=["stdio", "http"],
        default="stdio",
        help="MCP transport mode (default: stdio)",
    )

    # run subcommand
    run_parser = subparsers.add_parser("run", help="Run one job against a source file and print the result")
    run_parser.add_argument("file", type=Path, help="C or C++ source file")
    run_parser.add_argument(
        "--action",
        choices=[a.value for a in Action if a is not Action.DEBUG],
        default="compile",
        help="Job action (default: compile)",
    )
    run_parser.add_argument("--compiler", choices=["gcc", "clang"], default="gcc")
    run_parser.add_argument("-O", dest="optimization", default="0", help="Optimization level, e.g. 0, 2, s")
    run_parser.add_argument("--json", action="store_true", help="Print the full JSON result")

    return parser


async def _cmd_serve(args: argparse.Namespace) -> int:
    """Start the HTTP/WebSocket server.

    Args:
        args: Parsed CLI arguments.

    Returns:
        Exit code.
    """
    import uvicorn  # noqa: PLC0415

    from cincout.api import create_app  # noqa: PLC0415

    config = load_config()
    if args.host:
        config.host = args.host
    if args.port:
        config.port = args.port

    server = uvicorn.Server(
        uvicorn.Config(create_app(config), host=config.host, port=config.port, log_config=None, ws="auto")
    )
    await server.serve()
    return 0


def _cmd_mcp(args: argparse.Namespace) -> int:
    """Start the MCP server. FastMCP owns the event loop."""
    from cincout.server import create_server  # noqa: PLC0415

    config = load_config()
    logger = get_logger(__name__)
    logger.info("cincout_mcp_starting", transport=args.transport, host=config.host, port=config.port)

    mcp = create_server(config)
    if args.transport == "stdio":
        mcp.run(transport="stdio")
    else:
        mcp.run(transport="http", host=config.host, port=config.port)
    return 0


async def _cmd_run(args: argparse.Namespace) -> int:
    """Run one job and print its report.

    Args:
        args: Parsed CLI arguments.

    Returns:
        Exit code: 0 when the program completed with exit code 0, 1 otherwise.
    """
    from cincout.runtime.pipeline import JobPipeline  # noqa: PLC0415

    config = load_config()
    lang = Language.CPP if args.file.suffix in (".cpp", ".cc", ".cxx") else Language.C
    code = args.file.read_text(encoding="utf-8")

    job = Job(
        code=code,
        lang=lang,
        compiler=Compiler(args.compiler),
        optimization=f"-O{args.optimization}",
        action=Action(args.action),
    )
    try:
        result = await JobPipeline(config).run(job)
    except CinCoutError as exc:
        print(f"❌ {type(exc).__name__}: {exc}", file=sys.stderr)
        return 2

    if args.json:
        print(json.dumps(result.model_dump(mode="json"), indent=2))
    else:
        if result.assembly is not None and result.report.text != result.assembly:
            print(result.assembly)
        print(result.report.text)

    outcome = result.outcome
    if outcome is None:
        return 0
    return 0 if outcome.kind == "completed" and outcome.exit_code == 0 else 1


def main() -> None:
    """CLI entry point invoked by `cincout` script or `python -m cincout`."""
    parser = _build_parser()
    args = parser.parse_args()

    # Load config early for log level
    try:
        config = load_config()
        setup_logging(config.log_level, config.log_format)
    except CinCoutError:
        setup_logging("INFO")

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    if args.command == "mcp":
        sys.exit(_cmd_mcp(args))

    command_map = {
        "serve": _cmd_serve,
        "run": _cmd_run,
    }

    handler = command_map.get(args.command)
    if handler is None:
        parser.print_help()
        sys.exit(1)

    exit_code = asyncio.run(handler(args))
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
