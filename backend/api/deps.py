"""
SizeOps API Dependencies

Dependency injection for the session factory, tenant context and the
long-lived engine services. Services live on app.state so the summary
cache and in-process cancellation survive across requests.
"""

from collections.abc import AsyncGenerator
from functools import lru_cache

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.config import get_settings
from core.types import TenantId
from db.models import Tenant
from db.session import AsyncSessionLocal
from engine.notifier import SnapshotNotifier
from engine.orchestrator import SizeEngineOrchestrator
from query.aggregation import SizeIntelligenceQueryService

settings = get_settings()


def get_session_factory() -> async_sessionmaker:
    """Session factory used by services; overridden in tests."""
    return AsyncSessionLocal


async def get_db(
    session_factory: async_sessionmaker = Depends(get_session_factory),
) -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session."""
    async with session_factory() as session:
        try:
            yield session
        finally:
            await session.close()


@lru_cache
def get_notifier() -> SnapshotNotifier:
    return SnapshotNotifier(redis_url=settings.redis_url if settings.snapshot_publish_redis else None)


async def get_tenant_id(tenant_id: str, db: AsyncSession = Depends(get_db)) -> TenantId:
    """Resolve the path tenant; unknown or churned tenants are 404."""
    tenant = (await db.execute(select(Tenant).where(Tenant.tenant_id == tenant_id))).scalar_one_or_none()
    if tenant is None or tenant.status not in ("active", "trial"):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Tenant not found")
    return TenantId(tenant_id)


def get_query_service(
    request: Request,
    session_factory: async_sessionmaker = Depends(get_session_factory),
) -> SizeIntelligenceQueryService:
    service = getattr(request.app.state, "query_service", None)
    if service is None or service.session_factory is not session_factory:
        service = SizeIntelligenceQueryService(session_factory, settings, notifier=get_notifier())
        request.app.state.query_service = service
    return service


def get_orchestrator(
    request: Request,
    session_factory: async_sessionmaker = Depends(get_session_factory),
) -> SizeEngineOrchestrator:
    orchestrator = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None or orchestrator.session_factory is not session_factory:
        orchestrator = SizeEngineOrchestrator(session_factory, settings, notifier=get_notifier())
        request.app.state.orchestrator = orchestrator
    return orchestrator
