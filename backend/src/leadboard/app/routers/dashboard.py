# backend/src/leadboard/app/routers/dashboard.py
"""Router del Dashboard.

Los handlers son delgados: parsean parámetros, delegan en
:class:`~leadboard.dashboard.service.DashboardService` (que vive en
``app.state``) y serializan. Toda la lógica de merge/agregación/cache vive en
``leadboard.dashboard``.

Notas
-----
- ``hours`` acepta solo los presets (0, 1, 6, 12, 24, 48, 72, 168). Cualquier
  otro valor, incluido uno no numérico, colapsa a ``0`` (todo el histórico)
  en vez de responder 422.
- Un fallo del pipeline sin dato en cache responde 500 con un mensaje
  genérico; el detalle queda en el log con el correlation id.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Optional

import pandas as pd
from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response

from leadboard.app.schemas.dashboard import (
    DashboardResponse,
    DashboardStatus,
    LatestLead,
    LeadEvents,
    LeadJourneyEntry,
)
from leadboard.config import coerce_hours
from leadboard.dashboard.service import DashboardService

logger = logging.getLogger(__name__)

router = APIRouter()

CACHE_CONTROL = "public, max-age=60, stale-while-revalidate=30"
GENERIC_ERROR = "Failed to fetch dashboard data"


def get_service(request: Request) -> DashboardService:
    """Dependencia: servicio creado en el lifespan (override en tests)."""
    service = getattr(request.app.state, "dashboard_service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Dashboard service not initialized")
    return service


def _parse_hours(raw: Optional[str]) -> int:
    if raw is None:
        return 0
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return 0
    return coerce_hours(value)


@router.get("", response_model=DashboardResponse)
async def dashboard(
    response: Response,
    hours: Optional[str] = Query(None, description="Ventana en horas (preset); inválida = todo."),
    service: DashboardService = Depends(get_service),
) -> dict:
    """Bundle completo de agregaciones para la ventana pedida."""
    window = _parse_hours(hours)
    try:
        bundle = await service.get_dashboard(window)
    except Exception:
        logger.exception("Fallo construyendo dashboard hours=%d", window)
        raise HTTPException(status_code=500, detail=GENERIC_ERROR)

    response.headers["Cache-Control"] = CACHE_CONTROL
    return {
        **bundle,
        "hours": window,
        "fetched_at": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/latest-leads", response_model=List[LatestLead])
async def latest_leads(
    response: Response,
    limit: int = Query(100, ge=1, le=100),
    service: DashboardService = Depends(get_service),
) -> list:
    try:
        leads = await service.get_latest_leads(limit)
    except Exception:
        logger.exception("Fallo obteniendo latest leads")
        raise HTTPException(status_code=500, detail=GENERIC_ERROR)
    response.headers["Cache-Control"] = CACHE_CONTROL
    return leads


@router.get("/journey", response_model=List[LeadJourneyEntry])
async def lead_journey(service: DashboardService = Depends(get_service)) -> list:
    """Leads de las últimas 72 h (sin cache)."""
    try:
        return await service.get_lead_journey()
    except Exception:
        logger.exception("Fallo obteniendo lead journey")
        raise HTTPException(status_code=500, detail=GENERIC_ERROR)


@router.get("/leads/{email_hash}", response_model=LeadEvents)
async def lead_events(email_hash: str, service: DashboardService = Depends(get_service)) -> dict:
    try:
        result = await service.get_lead_events(email_hash)
    except Exception:
        logger.exception("Fallo obteniendo eventos de %s", email_hash[:16])
        raise HTTPException(status_code=500, detail=GENERIC_ERROR)
    if not result["events"]:
        raise HTTPException(status_code=404, detail="Lead not found")
    return result


@router.get("/rejections.csv")
async def rejections_csv(
    hours: Optional[str] = Query(None),
    service: DashboardService = Depends(get_service),
) -> Response:
    """Conteos crudos por categoría de rechazo (sin lista de exclusión)."""
    window = _parse_hours(hours)
    try:
        counts = await service.get_rejection_counts(window)
    except Exception:
        logger.exception("Fallo exportando rechazos hours=%d", window)
        raise HTTPException(status_code=500, detail=GENERIC_ERROR)

    df = pd.DataFrame(counts, columns=["reason", "count", "percentage"])
    return Response(
        content=df.to_csv(index=False),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="rejections_{window}h.csv"'},
    )


@router.get("/status", response_model=DashboardStatus)
async def status(service: DashboardService = Depends(get_service)) -> dict:
    """Estado del cache por preset, contadores de eventos (p.ej. batches saltados) y filas en el store."""
    body = service.status()
    body["store_totals"] = await service.event_totals()
    return body
