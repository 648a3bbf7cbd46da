import argparse
import os

import uvicorn

from threadqa import config


def _apply_overrides(args: argparse.Namespace) -> None:
    """Push CLI overrides into config, and into the environment for --reload workers."""
    if args.runtime_url:
        config.RUNTIME_URL = args.runtime_url
        os.environ["THREADQA_RUNTIME_URL"] = args.runtime_url
    if args.db:
        config.DB_PATH = args.db
        os.environ["THREADQA_DB"] = args.db
    if args.spawn_runtime:
        config.SPAWN_RUNTIME = True
        config.REPO_DIR = args.spawn_runtime
        os.environ["THREADQA_SPAWN_RUNTIME"] = "true"
        os.environ["THREADQA_REPO_DIR"] = args.spawn_runtime


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        description="Run the ThreadQA HTTP server: read-only codebase Q&A backed by an agent runtime"
    )
    parser.add_argument("--host", default=config.HOST, help="Bind host")
    parser.add_argument("--port", type=int, default=config.PORT, help="Bind port")
    parser.add_argument(
        "--runtime-url",
        help=f"Agent runtime base URL (default: {config.RUNTIME_URL})",
    )
    parser.add_argument(
        "--db",
        help=f"Session store SQLite file (default: {config.DB_PATH})",
    )
    parser.add_argument(
        "--spawn-runtime",
        metavar="REPO_DIR",
        help="Start and supervise the agent runtime in REPO_DIR instead of connecting to a running one",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Enable auto-reload for development",
    )
    args = parser.parse_args(argv)
    _apply_overrides(args)

    uvicorn.run(
        "threadqa.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level="info",
        timeout_graceful_shutdown=3,
    )


if __name__ == "__main__":
    main()
