"""
opsdash.api.routes.metrics — Telemetry endpoints
=================================================

    GET /api/metrics            latest snapshot (samples on first use)
    GET /api/metrics/history    recent snapshots, oldest first
    GET /api/system             platform / runtime description
"""

from __future__ import annotations

import asyncio
import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Query

from opsdash.api.deps import CurrentClaims, get_metrics
from opsdash.services.metrics_source import MetricsSource, system_info

logger = logging.getLogger(__name__)
router = APIRouter(tags=["metrics"])

Metrics = Annotated[MetricsSource, Depends(get_metrics)]


@router.get("/metrics")
async def latest_metrics(claims: CurrentClaims, metrics: Metrics):
    snapshot = metrics.latest() or await metrics.sample()
    return snapshot.to_dict()


@router.get("/metrics/history")
async def metrics_history(
    claims: CurrentClaims,
    metrics: Metrics,
    limit: Annotated[int | None, Query(ge=1, le=1000)] = None,
):
    return [s.to_dict() for s in metrics.recent(limit)]


@router.get("/system")
async def system(claims: CurrentClaims):
    return await asyncio.to_thread(system_info)
