# Simple CLI for the Dhan feed client
import asyncio
import json
import click

from core.config.settings import Settings
from core.logging import configure_logging
from services.market_feed.error_codes import (
    CRITICAL_DATA_API_CODES,
    CRITICAL_TRADING_API_CODES,
    DATA_API_ERROR_MESSAGES,
    RATE_LIMIT_PENALTIES,
    TRADING_API_ERROR_MESSAGES,
)
from services.market_feed.models import FeedRequestCode, Instrument
from services.market_feed.service import DhanFeed

VARIANTS = ["live", "multi", "depth20", "depth200"]


def _build_feed(dhan_feed: DhanFeed, variant: str):
    if variant == "live":
        return dhan_feed.live_feed
    if variant == "multi":
        return dhan_feed.multi_connection_live_feed
    return dhan_feed.market_depth_feed(20 if variant == "depth20" else 200)


async def _stream(variant: str, instruments, request_code, duration: float):
    settings = Settings()
    configure_logging(settings)
    dhan_feed = DhanFeed(settings=settings)
    feed = _build_feed(dhan_feed, variant)

    def print_packet(event):
        click.echo(json.dumps({"connection_id": event.connection_id, **event.data.model_dump(mode="json")}))

    def print_error(event):
        click.echo(f"error on connection {event.connection_id}: {event.error}", err=True)

    feed.on("message", print_packet)
    feed.on("error", print_error)
    feed.on("disconnection", lambda e: click.echo(f"disconnected: {e.reason} ({e.error_code})", err=True))

    try:
        await feed.subscribe(instruments, request_code)
        await asyncio.sleep(duration)
    finally:
        await dhan_feed.close()
        click.echo(json.dumps(await dhan_feed.get_metrics(), default=str), err=True)


@click.group()
def cli():
    """Dhan Feed CLI"""
    pass


@cli.command()
@click.option("--variant", type=click.Choice(VARIANTS), default="multi", show_default=True,
              help="Feed flavour to connect")
@click.option("--instrument", "instruments", multiple=True, required=True,
              help="SEGMENT:SECURITY_ID, e.g. NSE_EQ:1333 (repeatable)")
@click.option("--request-code", type=int, default=None,
              help="Subscribe request code (defaults to ticker, or depth for depth feeds)")
@click.option("--duration", type=float, default=30.0, show_default=True,
              help="Seconds to stream before closing")
def stream(variant, instruments, request_code, duration):
    """Stream packets for instruments as JSON lines"""
    try:
        parsed = [Instrument.parse(item) for item in instruments]
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--instrument")
    click.echo(f"Streaming {len(parsed)} instruments from the {variant} feed for {duration:.0f}s...", err=True)
    asyncio.run(_stream(variant, parsed, request_code, duration))


@cli.command()
def codes():
    """Print request codes and the API error taxonomy"""
    click.echo("Request codes:")
    for code in FeedRequestCode:
        click.echo(f"  {code.value:>3}  {code.name}")

    click.echo("\nData API errors:")
    for code, message in sorted(DATA_API_ERROR_MESSAGES.items()):
        flags = _flags(code in CRITICAL_DATA_API_CODES, RATE_LIMIT_PENALTIES.get(code, 0))
        click.echo(f"  {int(code)}  {message}{flags}")

    click.echo("\nTrading API errors:")
    for code, message in sorted(TRADING_API_ERROR_MESSAGES.items()):
        flags = _flags(code in CRITICAL_TRADING_API_CODES, RATE_LIMIT_PENALTIES.get(code, 0))
        click.echo(f"  {getattr(code, 'value', code)}  {message}{flags}")


def _flags(critical: bool, penalty: int) -> str:
    if critical:
        return "  [critical]"
    if penalty:
        return f"  [rate limit, +{penalty} attempts]"
    return ""


if __name__ == "__main__":
    cli()
