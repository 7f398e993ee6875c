"""Health check endpoint.

Learn: Simple GET endpoint that reports the server is running plus a
summary of relay state: how many clients are connected and the latest
price of every feed that has been published so far.
"""

from fastapi import APIRouter, Request

from feedrelay import __version__
from feedrelay.realtime import protocol

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """Check server health and report relay counters."""
    registry = request.app.state.registry
    dispatcher = request.app.state.dispatcher

    feeds = {
        str(feed_id): protocol.format_price(state.value)
        for feed_id, state in sorted(dispatcher.feeds.snapshot().items())
    }

    return {
        "status": "healthy",
        "server": "ok",
        "version": __version__,
        "connections": registry.connection_count(),
        "feeds": feeds,
        "published": dispatcher.stats.published,
        "delivered": dispatcher.stats.delivered,
        "pruned": dispatcher.stats.pruned,
    }
