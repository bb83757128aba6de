"""
app.py: FastAPI application factory and startup lifecycle.

This is the ASGI application object imported by uvicorn.
It wires the repository, the allocation engine and its side-effect
collaborators, registers routers, and runs startup initialization.

Usage (via launcher):
    python main.py

Usage (direct uvicorn):
    uvicorn app:app --reload
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from parking_backend.controllers.admin_controller import router as admin_router
from parking_backend.controllers.request_controller import router as request_router
from parking_backend.controllers.vehicle_controller import router as vehicle_router
from parking_backend.repository.data_repository import DataRepository
from parking_backend.services.allocation_service import AllocationEngine
from parking_backend.services.audit_service import RepositoryAuditLogger
from parking_backend.services.auth_service import AuthService
from parking_backend.services.notification_service import build_notification_gateway
from parking_backend.services.request_service import SlotRequestService
from parking_backend.services.slot_service import SlotAdministrationService
from parking_backend.services.vehicle_service import VehicleService
from parking_backend.utils.config import Settings, get_settings
from parking_backend.utils.logger import get_logger


logger = get_logger(__name__)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build and wire the FastAPI application.

    Every collaborator is created here and exposed through app.state;
    controllers resolve them with Depends providers.
    """
    settings = settings or get_settings()

    # --- Repository (per-call SQLite connections) ---
    repository = DataRepository(settings)

    # --- Best-effort side effects ---
    audit_logger = RepositoryAuditLogger(repository=repository, settings=settings)
    notifier = build_notification_gateway(settings)

    # --- Services ---
    allocation_engine = AllocationEngine(
        store=repository,
        notifier=notifier,
        audit_logger=audit_logger,
        settings=settings,
    )
    request_service = SlotRequestService(
        audit_logger=audit_logger,
        repository=repository,
        settings=settings,
    )
    slot_service = SlotAdministrationService(
        audit_logger=audit_logger,
        repository=repository,
        settings=settings,
    )
    vehicle_service = VehicleService(
        audit_logger=audit_logger,
        repository=repository,
        settings=settings,
    )
    auth_service = AuthService(settings=settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Run startup initialization before accepting requests."""
        _startup(app, settings)
        yield

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        lifespan=lifespan,
    )

    # --- Routers ---
    app.include_router(request_router)
    app.include_router(vehicle_router)
    app.include_router(admin_router)

    # --- Inject services into app.state for dependency resolution ---
    app.state.repository = repository
    app.state.audit_logger = audit_logger
    app.state.notifier = notifier
    app.state.allocation_engine = allocation_engine
    app.state.request_service = request_service
    app.state.slot_service = slot_service
    app.state.vehicle_service = vehicle_service
    app.state.auth_service = auth_service

    return app


def _startup(app: FastAPI, settings: Settings) -> None:
    """
    Idempotent startup sequence. Safe to re-run on server restarts.

    Schema must exist before the optional demo seed, which only runs on an
    empty users table.
    """
    repository: DataRepository = app.state.repository

    logger.info("Startup: initializing database schema")
    repository.initialize_database()

    if settings.seed_demo_data:
        logger.info("Startup: seeding demo users, vehicles, slots and requests")
        repository.seed_demo_data()

    if not settings.admin_token:
        logger.warning("Startup: ADMIN_TOKEN is not set; admin login is disabled")

    logger.info("Startup complete, system ready")


# Module-level app object for uvicorn
app = create_app()
