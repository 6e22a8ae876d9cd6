"""Health endpoint for load balancers and uptime checks."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from naffles_bot.bot.services.container import BotServices
from naffles_bot.web.api.dependencies import get_services

router = APIRouter(tags=["health"])


@router.get("/health")
async def health(services: BotServices = Depends(get_services)) -> JSONResponse:
    """Last health-check results plus process counters.

    Returns 503 while any service is degraded.
    """
    report: dict[str, Any] = services.health.get_health_status()
    report["commands_processed"] = services.commands_processed
    report["error_rate"] = round(services.error_rate, 4)
    report["uptime_hours"] = round(services.uptime_hours, 2)
    report["fallback"] = services.fallback.get_stats()
    degraded = any(status["status"] == "degraded" for status in report["services"].values())
    return JSONResponse(jsonable_encoder(report), status_code=503 if degraded else 200)


@router.get("/health/sync")
async def sync_metrics(services: BotServices = Depends(get_services)) -> dict:
    """Webhook sync counters; the webhook router only serves signed Platform pushes."""
    return services.sync.get_metrics()
