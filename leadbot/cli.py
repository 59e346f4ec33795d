# leadbot/cli.py
"""
Operator commands: create tables, check dependencies, try the code extractor,
run the server.
"""
from __future__ import annotations

import argparse
import asyncio
import os
import sys
from typing import Callable, Dict, Optional

import aiohttp


def _supports_color() -> bool:
    return hasattr(sys.stdout, "isatty") and sys.stdout.isatty()


SUPPORTS_COLOR = _supports_color()

GREEN = "\033[92m" if SUPPORTS_COLOR else ""
RED = "\033[91m" if SUPPORTS_COLOR else ""
BLUE = "\033[94m" if SUPPORTS_COLOR else ""
RESET = "\033[0m" if SUPPORTS_COLOR else ""


def print_success(message: str):
    print(f"{GREEN}[✓]{RESET} {message}")


def print_error(message: str):
    print(f"{RED}[✗]{RESET} {message}")


def print_info(message: str):
    print(f"{BLUE}[i]{RESET} {message}")


async def cmd_init_db(args: argparse.Namespace) -> int:
    """Create every table that does not exist yet."""
    from leadbot import models  # noqa: F401  registers the mapped tables
    from leadbot.db.base import Base
    from leadbot.db.session import create_database_engine, dispose_engine

    engine = create_database_engine()
    try:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    finally:
        await dispose_engine()

    print_success(f"Created {len(Base.metadata.tables)} tables")
    return 0


async def cmd_health(args: argparse.Namespace) -> int:
    """Check PostgreSQL and Redis directly."""
    from leadbot.db.session import dispose_engine, health_check as database_health_check
    from leadbot.services.redis import close_redis_pool, health_check as redis_health_check, init_redis_pool

    exit_code = 0

    database = await database_health_check()
    await dispose_engine()
    if database["status"] == "healthy":
        print_success(f"database: PostgreSQL {database.get('version')}")
    else:
        print_error(f"database: {database.get('error')}")
        exit_code = 1

    try:
        await init_redis_pool()
        redis_status = await redis_health_check()
    except Exception as e:
        redis_status = {"status": "unhealthy", "error": str(e)}
    finally:
        await close_redis_pool()

    if redis_status["status"] == "healthy":
        print_success(f"redis: {redis_status.get('version')}")
    else:
        print_error(f"redis: {redis_status.get('error')}")
        exit_code = 1

    return exit_code


async def cmd_check_api(args: argparse.Namespace) -> int:
    """Call the health endpoint of a running server."""
    url = f"{args.api_url.rstrip('/')}/api/health"
    try:
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=10)) as session:
            async with session.get(url) as response:
                body = await response.json(content_type=None)
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        print_error(f"{url}: {e}")
        return 1

    status = body.get("status") if isinstance(body, dict) else None
    if status == "healthy":
        print_success(f"{url}: healthy")
        return 0

    print_error(f"{url}: {status or response.status}")
    return 1


async def cmd_extract_code(args: argparse.Namespace) -> int:
    from leadbot.services.code_extractor import extract_code

    code = extract_code(args.text, fallback=not args.strict)
    if code is None:
        print_error("No code found")
        return 1

    print_success(code)
    return 0


def cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    from leadbot.core.config import settings

    uvicorn.run(
        "leadbot.main:app",
        host=args.host or settings.api_host,
        port=args.port or settings.api_port,
        reload=args.reload,
    )
    return 0


COMMANDS: Dict[str, Callable] = {
    "init-db": cmd_init_db,
    "health": cmd_health,
    "check-api": cmd_check_api,
    "extract-code": cmd_extract_code,
}


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="leadbot", description="Leadbot operator commands")
    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    subparsers.add_parser("init-db", help="Create database tables")
    subparsers.add_parser("health", help="Check PostgreSQL and Redis")

    api_parser = subparsers.add_parser("check-api", help="Check a running server")
    api_parser.add_argument("--api-url", default="http://localhost:8000", help="API URL")

    code_parser = subparsers.add_parser("extract-code", help="Extract the promotional code from a message")
    code_parser.add_argument("text", help="Message text")
    code_parser.add_argument("--strict", action="store_true", help="Only accept labelled codes")

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP server")
    serve_parser.add_argument("--host", default=None)
    serve_parser.add_argument("--port", type=int, default=None)
    serve_parser.add_argument("--reload", action="store_true")

    return parser


def main(args: Optional[list] = None) -> int:
    parser = create_parser()
    parsed_args = parser.parse_args(args)

    if not parsed_args.command:
        parser.print_help()
        return 1

    if parsed_args.command == "serve":
        return cmd_serve(parsed_args)

    command_func = COMMANDS.get(parsed_args.command)
    if command_func is None:
        print_error(f"Unknown command: {parsed_args.command}")
        parser.print_help()
        return 1

    try:
        return asyncio.run(command_func(parsed_args))
    except KeyboardInterrupt:
        print_error("Interrupted by user")
        return 130
    except Exception as e:
        print_error(f"Error executing command: {e}")
        if os.getenv("DEBUG"):
            import traceback

            traceback.print_exc()
        return 1


if __name__ == "__main__":
    sys.exit(main())
