"""
Módulo principal de la API del dashboard de leads.

Responsabilidades:
- Instanciación de FastAPI con lifespan (construye y cierra el servicio)
- Registro de routers
- Endpoint global mínimo (/health)
- CORS para el frontend (LB_ALLOWED_ORIGINS)
- Middleware de Correlation-Id (X-Correlation-Id) para trazabilidad
- Wiring del destino de observabilidad (eventos del dashboard -> logging)
"""

from __future__ import annotations

import os
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from leadboard.app.logging_config import setup_logging
from leadboard.config import load_settings
from leadboard.dashboard.participants import build_snapshot_provider
from leadboard.dashboard.service import DashboardService
from leadboard.dashboard.store import build_event_store
from leadboard.observability.bus_eventos import BUS
from leadboard.observability.logging_context import install_logrecord_factory
from leadboard.observability.middleware_correlation import CorrelationIdMiddleware

from .routers import dashboard

log = logging.getLogger("leadboard")


def _wire_observability_safe() -> None:
    """
    Conecta el handler de logging a los eventos del dashboard.
    Un fallo aquí no debe impedir que la API arranque.
    """
    try:
        from leadboard.observability.destinos.log_handler import wire_logging_destination

        wire_logging_destination(BUS)
    except Exception as e:
        log.warning("Fallo conectando observabilidad (se ignora para no bloquear): %s", e)


def build_service() -> DashboardService:
    """Servicio con store, proveedor de snapshot y cache según el entorno."""
    settings = load_settings()
    store = build_event_store(settings, bus=BUS)
    provider = build_snapshot_provider(settings.snapshot_cmd, settings.snapshot_timeout_s)
    return DashboardService(store, provider, settings=settings, bus=BUS)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    - Configura logging (dictConfig con filtro cid) y la LogRecordFactory
    - Conecta el destino de logging del bus
    - Crea el DashboardService (salvo que un test ya haya puesto uno)
    """
    setup_logging()
    install_logrecord_factory()
    _wire_observability_safe()

    owned = getattr(app.state, "dashboard_service", None) is None
    if owned:
        app.state.dashboard_service = build_service()
        log.info("Dashboard service inicializado")

    yield

    if owned:
        service = app.state.dashboard_service
        app.state.dashboard_service = None
        await service.aclose()
        log.info("Dashboard service cerrado")


app = FastAPI(
    title="Leadboard API",
    version=os.getenv("API_VERSION", "0.1.0"),
    lifespan=lifespan,
)

# ---------------------------------------------------------------------------
# CORS: LB_ALLOWED_ORIGINS (coma-separados) o defaults locales
# ---------------------------------------------------------------------------
ALLOWED_ORIGINS = list(load_settings().allowed_origins)

app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "OPTIONS"],
    allow_headers=["*"],
    expose_headers=["X-Correlation-Id"],
    max_age=600,
)

# --- Correlation-Id Middleware (trazabilidad end-to-end) ---
app.add_middleware(CorrelationIdMiddleware)


@app.get("/health")
def health() -> dict:
    """Endpoint de salud: permite saber si la API está arriba."""
    return {"status": "ok"}


app.include_router(dashboard.router, prefix="/dashboard", tags=["dashboard"])
