"""QueryService: Read-only HTTP endpoint for APR values.

Routes:
    GET /apy        Fresh current and SMA APR, fetched per request.
    GET /published  Last APR confirmed on-chain by the sync loop.
    GET /health     Liveness probe.

/apy never fails the request because the provider failed: it answers with
whatever was fetched plus an "error" message for the missing part.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

from fastapi import FastAPI

if TYPE_CHECKING:
    from .AprSource import AprSnapshot, AprSource
    from .PublishedState import PublishedState

logger = logging.getLogger(__name__)


def snapshot_to_body(snapshot: AprSnapshot) -> dict[str, Any]:
    """Render a snapshot as the /apy response body.

    :param snapshot: Combined fetch result.
    :returns: JSON-serializable dict.
    """
    body: dict[str, Any] = {}
    if snapshot.current.success:
        body["current_apr"] = snapshot.current.value
    if snapshot.sma.success:
        body["sma_apr"] = snapshot.sma.value

    if snapshot.total_failure:
        body["error"] = "Failed to fetch both APR values."
    elif not snapshot.current.success:
        body["error"] = "Failed to fetch current APR."
    elif not snapshot.sma.success:
        body["error"] = "Failed to fetch SMA APR."
    return body


def create_app(source: AprSource, state: PublishedState | None = None) -> FastAPI:
    """Build the query application.

    :param source: APR source queried on every /apy request.
    :param state: Published state to expose on /published, if any.
    :returns: FastAPI application.
    """
    app = FastAPI(title="APR Oracle Relay", docs_url=None, redoc_url=None)

    @app.get("/apy")
    async def apy() -> dict[str, Any]:
        snapshot = await source.fetch_all()
        if not snapshot.complete:
            logger.warning(
                f"/apy partial response: current={snapshot.current.error}, "
                f"sma={snapshot.sma.error}"
            )
        return snapshot_to_body(snapshot)

    @app.get("/published")
    async def published() -> dict[str, Any]:
        if state is None:
            return {"error": "Published state not available."}
        current = await state.snapshot()
        return {
            "published_apr": current.value,
            "updated_at": current.updated_at or None,
            "tx_hash": current.receipt.tx_hash if current.receipt else None,
        }

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    return app
