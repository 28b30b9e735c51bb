"""CLI entry point for the invoicing runtime."""

from __future__ import annotations

import asyncio
import json
import logging

import click

from .core.config import Settings, load_settings
from .core.enums import TransportKind

logger = logging.getLogger(__name__)


def _load(config: str | None, transport: str | None) -> Settings:
    overrides: dict = {}
    if transport:
        overrides["event_bus"] = {"transport": transport}
    settings = load_settings(config_path=config, overrides=overrides)
    _setup_observability(settings)
    return settings


def _setup_observability(settings: Settings) -> None:
    """Configure structured logging and, if enabled, the metrics server."""
    from .observability.logger import setup_logging
    from .observability.metrics import start_metrics_server

    setup_logging(
        level=settings.observability.log_level,
        format=settings.observability.log_format,
        service=settings.service_name,
    )
    if settings.observability.metrics_enabled:
        start_metrics_server(settings.observability.metrics_port, settings.service_name)


@click.group()
def main() -> None:
    """Invoicing runtime: events, commands and scheduled jobs."""


@main.command()
@click.argument("name")
@click.argument("payload_json")
@click.option("--config", default=None, help="Config file path")
@click.option("--source", default=None, help="Event source label")
@click.option(
    "--transport",
    type=click.Choice([t.value for t in TransportKind]),
    default=None,
    help="Transport override",
)
def send(
    name: str,
    payload_json: str,
    config: str | None,
    source: str | None,
    transport: str | None,
) -> None:
    """Publish one event NAME with the JSON object PAYLOAD_JSON."""
    from .bootstrap import build_runtime

    try:
        payload = json.loads(payload_json)
    except json.JSONDecodeError as exc:
        raise click.BadParameter(f"invalid JSON: {exc}", param_hint="PAYLOAD_JSON")
    if not isinstance(payload, dict):
        raise click.BadParameter("must be a JSON object", param_hint="PAYLOAD_JSON")

    settings = _load(config, transport)

    async def _send() -> str:
        runtime = build_runtime(settings)
        # Publish only; a consumer process delivers the event
        await runtime.init(consume=False)
        try:
            return await runtime.events.send(name, payload, source=source)
        finally:
            await runtime.dispose()

    event_id = asyncio.run(_send())
    click.echo(event_id)


@main.command()
def handlers() -> None:
    """List the event handler import table."""
    from .bootstrap import DEFAULT_EVENT_HANDLERS

    for name in sorted(DEFAULT_EVENT_HANDLERS):
        click.echo(f"{name:20s} {DEFAULT_EVENT_HANDLERS[name].__qualname__}")


@main.command()
@click.option("--config", default=None, help="Config file path")
def consume(config: str | None) -> None:
    """Consume events from Redis Streams until interrupted."""
    from .bootstrap import build_runtime
    from .events.redis_streams import RedisStreamsTransport

    settings = _load(config, TransportKind.REDIS.value)

    async def _consume() -> None:
        runtime = build_runtime(settings)
        await runtime.init()
        transport = runtime.transport
        assert isinstance(transport, RedisStreamsTransport)
        logger.info("Consuming stream %s", transport.stream)
        try:
            await transport.run_forever()
        finally:
            await runtime.dispose()

    try:
        asyncio.run(_consume())
    except KeyboardInterrupt:
        logger.info("Shutting down (keyboard interrupt)")


if __name__ == "__main__":
    main()
