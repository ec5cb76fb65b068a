"""
Health check endpoint.
"""

import time
from typing import Optional, Dict, List

from fastapi import APIRouter
from pydantic import BaseModel

from study_buddy.api.dependencies import PipelineDep

router = APIRouter(tags=["health"])

# Track startup time for uptime
_start_time: Optional[float] = None


def set_start_time(t: float):
    """Set application start time."""
    global _start_time
    _start_time = t


class HealthResponse(BaseModel):
    """Health check response model."""

    status: str
    store_connected: bool
    stages: Dict[str, bool]
    providers: Dict[str, bool]
    active_sessions: int
    recommendations: List[str]
    uptime_seconds: float


@router.get("/health", response_model=HealthResponse)
async def health_check(pipeline: PipelineDep):
    """
    Service health check.
    Returns overall stage health, store connectivity, provider status and uptime.
    """
    report = await pipeline.health()
    stats = pipeline.monitor.get_monitoring_statistics()

    uptime_seconds = 0.0
    if _start_time:
        uptime_seconds = round(time.time() - _start_time, 2)

    return HealthResponse(
        status=report["status"],
        store_connected=await pipeline.store.ping(),
        stages=report["stages"],
        providers=report["providers"],
        active_sessions=stats.active_sessions,
        recommendations=report["recommendations"],
        uptime_seconds=uptime_seconds,
    )
