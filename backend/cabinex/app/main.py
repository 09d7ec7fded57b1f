"""
=============================================================================
CABINEX - Punto de Entrada Principal (FastAPI)
=============================================================================
Backend del libro de saldos e intercambio de órdenes entre cabinetes.

Integra:
- FastAPI para la REST API
- SQLAlchemy async (PostgreSQL / SQLite) con una sesión por request
- Barrido periódico de sesiones inactivas
- Notificaciones de Telegram
- Middleware de seguridad y CORS
=============================================================================
"""

import asyncio
import contextlib
import logging
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from .. import __version__
from ..config import Settings, get_settings
from ..database import build_engine, build_session_factory, init_models
from ..exceptions import CabinexError, StoreError, ValidationError
from . import admin, api
from .ledger import initialize_balances
from .security import run_session_sweeper
from .telegram import TelegramNotifier

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


# =============================================================================
# LIFECYCLE
# =============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Gestiona el ciclo de vida de la aplicación."""
    settings: Settings = app.state.settings

    # Startup
    logger.info("[CABINEX] Iniciando servidor...")
    if settings.auto_create_schema:
        await init_models(app.state.engine)
        async with app.state.session_factory() as db:
            await initialize_balances(db, settings.cabinets)

    if not app.state.notifier.enabled:
        logger.warning("[CABINEX] Telegram no configurado, notificaciones desactivadas")

    sweeper = asyncio.create_task(run_session_sweeper(
        app.state.session_factory,
        settings.session_sweep_interval_seconds,
        settings.session_idle_timeout_seconds,
    ))
    yield

    # Shutdown
    logger.info("[CABINEX] Cerrando servidor...")
    sweeper.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await sweeper
    await app.state.engine.dispose()


# =============================================================================
# MANEJO DE ERRORES
# =============================================================================

async def cabinex_error_handler(request: Request, exc: CabinexError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("[API] %s %s: %s %s", request.method, request.url.path, exc.code, exc.details)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def store_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.error("[API] Error de base de datos en %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content=StoreError().to_dict())


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = exc.errors()
    if errors:
        first = errors[0]
        field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{field}: {first.get('msg')}" if field else str(first.get("msg"))
    else:
        message = "Datos de entrada inválidos"
    return JSONResponse(status_code=400, content=ValidationError(message).to_dict())


# =============================================================================
# APLICACIÓN FASTAPI
# =============================================================================

def create_app(
    settings: Optional[Settings] = None,
    notifier: Optional[TelegramNotifier] = None,
) -> FastAPI:
    settings = settings or get_settings()
    logging.basicConfig(level=settings.log_level.upper(), format=LOG_FORMAT)

    app = FastAPI(
        title="Cabinex API",
        description="""
        ## Libro de saldos e intercambio de órdenes entre cabinetes

        ### Características:
        - **Saldos por par**: una fila dirigida por par de cabinetes
        - **Liquidación única**: pagar una orden o confirmar un retiro ajusta el saldo una sola vez
        - **Sesión única**: un cabinet no puede tener dos sesiones activas
        - **Auditoría**: cada ajuste manual queda en admin_logs

        ### Estados:
        1. Orden: pending → completed | cancelled
        2. Retiro: pending → completed
        """,
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    engine = build_engine(settings.database_url)
    app.state.settings = settings
    app.state.engine = engine
    app.state.session_factory = build_session_factory(engine)
    app.state.notifier = notifier or TelegramNotifier.from_settings(settings)

    # =========================================================================
    # MIDDLEWARE
    # =========================================================================

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):
        """Agrega headers de seguridad a las respuestas."""
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response

    app.add_exception_handler(CabinexError, cabinex_error_handler)
    app.add_exception_handler(SQLAlchemyError, store_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)

    # =========================================================================
    # ENDPOINTS - HEALTH
    # =========================================================================

    @app.get("/health")
    async def health_check():
        """Endpoint de health check para Docker y load balancers."""
        return {
            "status": "healthy",
            "service": "cabinex-backend",
            "version": __version__,
            "timestamp": time.time(),
        }

    # =========================================================================
    # ROUTERS
    # =========================================================================

    app.include_router(api.auth_router)
    app.include_router(admin.keys_router)
    app.include_router(api.balances_router)
    app.include_router(api.orders_router)
    app.include_router(api.order_requests_router)
    app.include_router(api.withdrawals_router)
    app.include_router(api.history_router)
    app.include_router(api.telegram_router)
    app.include_router(admin.router)

    return app


app = create_app()
