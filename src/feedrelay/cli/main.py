"""Feed relay CLI — run the server, watch a feed, check health.

Usage:
    feedrelay serve                           # Run the relay (uvicorn)
    feedrelay watch                           # Subscribe to feed 6 and print updates
    feedrelay watch -f 6 -f 7 --count 10      # Several feeds, stop after 10 frames
    feedrelay health                          # GET /api/v1/health
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import json
import os
import sys
from typing import Optional

import click
import httpx
import websockets

# ---------------------------------------------------------------------------
# Config
# ---------------------------------------------------------------------------

DEFAULT_WS_URL = "ws://localhost:8080/"
DEFAULT_API_URL = "http://localhost:8080"
DEFAULT_FEED_ID = 6


def _ws_url(url: Optional[str]) -> str:
    return url or os.environ.get("FEEDRELAY_WS_URL", DEFAULT_WS_URL)


def _api_url(url: Optional[str]) -> str:
    return (url or os.environ.get("FEEDRELAY_API_URL", DEFAULT_API_URL)).rstrip("/")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _run(coro):
    """Run an async coroutine from synchronous Click handler.

    Handles nested event loops (e.g. when invoked via Click CliRunner
    inside an existing async context like tests) by offloading to a thread.
    """
    try:
        asyncio.get_running_loop()
    except RuntimeError:
        return asyncio.run(coro)
    else:
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            return pool.submit(asyncio.run, coro).result()


def _pretty_json(data: dict | list) -> str:
    return json.dumps(data, indent=2, default=str)


def _message_color(message_type: str) -> str:
    colors = {
        "connected": "green",
        "subscribed": "green",
        "unsubscribed": "yellow",
        "priceUpdate": "cyan",
        "pong": "white",
        "error": "red",
    }
    return colors.get(message_type, "white")


# ---------------------------------------------------------------------------
# CLI group
# ---------------------------------------------------------------------------


@click.group()
@click.version_option(version="0.1.0", prog_name="feedrelay")
def main():
    """Feed relay — WebSocket price feed publish/subscribe server."""


# ---------------------------------------------------------------------------
# feedrelay serve
# ---------------------------------------------------------------------------


@main.command()
@click.option("--host", default=None, help="Bind address (default: FEEDRELAY_HOST)")
@click.option("--port", type=int, default=None, help="Port (default: FEEDRELAY_PORT)")
@click.option("--reload", is_flag=True, help="Auto-reload on code changes")
def serve(host: Optional[str], port: Optional[int], reload: bool):
    """Run the relay server."""
    import uvicorn

    from feedrelay.config import settings

    uvicorn.run(
        "feedrelay.main:app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
        log_level=settings.log_level.lower(),
    )


# ---------------------------------------------------------------------------
# feedrelay watch
# ---------------------------------------------------------------------------


@main.command()
@click.option("--url", "-u", help=f"WebSocket URL (default: {DEFAULT_WS_URL})")
@click.option("--feed", "-f", "feeds", type=int, multiple=True,
              help=f"Feed id to subscribe to (repeatable, default: {DEFAULT_FEED_ID})")
@click.option("--count", "-n", type=int, default=None,
              help="Stop after this many frames")
def watch(url: Optional[str], feeds: tuple[int, ...], count: Optional[int]):
    """Subscribe to feeds and print every frame the server sends."""
    _run(_watch_impl(_ws_url(url), list(feeds) or [DEFAULT_FEED_ID], count))


async def _watch_impl(url: str, feeds: list[int], count: Optional[int]):
    try:
        async with websockets.connect(url) as ws:
            click.secho(f"Connected to {url}", fg="green")
            await ws.send(json.dumps({
                "type": "subscribe",
                "subscriptions": [{"feedId": f} for f in feeds],
            }))
            click.echo(f"Sent subscription request for feeds: {', '.join(map(str, feeds))}")

            received = 0
            async for raw in ws:
                try:
                    message = json.loads(raw)
                except json.JSONDecodeError:
                    click.secho(f"Unparseable frame: {raw!r}", fg="red", err=True)
                    continue
                click.secho(_pretty_json(message), fg=_message_color(message.get("type", "")))
                received += 1
                if count is not None and received >= count:
                    break
    except websockets.exceptions.ConnectionClosed as e:
        click.secho(f"Disconnected: {e}", fg="yellow")
    except OSError as e:
        click.secho(f"Could not connect to {url}: {e}", fg="red", err=True)
        sys.exit(1)


# ---------------------------------------------------------------------------
# feedrelay health
# ---------------------------------------------------------------------------


@main.command()
@click.option("--url", "-u", help=f"API base URL (default: {DEFAULT_API_URL})")
def health(url: Optional[str]):
    """Show server health, connection count and latest prices."""
    _run(_health_impl(_api_url(url)))


async def _health_impl(base_url: str, transport: Optional[httpx.AsyncBaseTransport] = None):
    async with httpx.AsyncClient(base_url=base_url, timeout=10.0, transport=transport) as c:
        try:
            r = await c.get("/api/v1/health")
            r.raise_for_status()
        except httpx.HTTPError as e:
            click.secho(f"Health check failed: {e}", fg="red", err=True)
            sys.exit(1)
        data = r.json()

    status_color = "green" if data.get("status") == "healthy" else "yellow"
    click.secho(f"Status:      {data.get('status')}", fg=status_color, bold=True)
    click.echo(f"Version:     {data.get('version')}")
    click.echo(f"Connections: {data.get('connections')}")
    feeds = data.get("feeds") or {}
    if feeds:
        click.echo("Feeds:")
        for feed_id, price in feeds.items():
            click.echo(f"  {feed_id:>6}  {price}")
    else:
        click.echo("Feeds:       (none published yet)")


if __name__ == "__main__":
    main()
