"""Shared helpers for CLI commands."""

import asyncio
from typing import Any, Awaitable, Callable, TypeVar

import click

from ..db import close_all_connections
from ..models import Vocabulary

T = TypeVar("T")

VOCABULARY_CHOICE = click.Choice([v.value for v in Vocabulary])


def run_async(func: Callable[[], Awaitable[T]]) -> T:
    """Run a coroutine function, disposing the engine afterwards."""

    async def _wrapped() -> T:
        try:
            return await func()
        finally:
            await close_all_connections()

    return asyncio.run(_wrapped())


def rule(width: int = 70) -> None:
    click.echo("=" * width)


def echo_field(name: str, value: Any) -> None:
    click.echo(f"  {name}: {value}")
