"""Running async engine operations from synchronous commands"""

import asyncio
import json
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import typer

from jobs_engine.config.logging import setup_logging
from jobs_engine.config.settings import Settings
from jobs_engine.engine import Engine, build_engine
from jobs_engine.v1.core.exceptions import JobsEngineException

from .formatting import print_error

T = TypeVar("T")


def load_settings() -> Settings:
    """Settings from the environment, read when a command runs"""
    return Settings()


def run_with_engine(operation: Callable[[Engine], Awaitable[T]]) -> T:
    """Build an engine, run ``operation`` on it and close the database."""

    app_settings = load_settings()

    async def _main() -> T:
        engine = build_engine(app_settings)
        try:
            return await operation(engine)
        finally:
            await engine.database.close()

    setup_logging(app_settings)
    try:
        return asyncio.run(_main())
    except JobsEngineException as e:
        print_error(e.message)
        raise typer.Exit(1) from None


def parse_json_option(value: str | None, option: str) -> Any:
    """Parse a JSON command-line option, exiting with an error if malformed"""
    if value is None:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError as e:
        print_error(f"{option} is not valid JSON: {e}")
        raise typer.Exit(1) from None
