from fastapi import APIRouter

from vidrelay.config.settings import config
from vidrelay.core.state import state
from vidrelay.i18n import i18n
from vidrelay.models.response import ServiceInfo

router = APIRouter()


@router.get("/", response_model=ServiceInfo)
async def root():
    """Root endpoint"""
    return ServiceInfo(
        status=i18n.get("response.status_running"),
        service=config.api.title,
        version=config.api.version,
        extractor_version=state.extractor_version,
        redis_enabled=state.redis is not None,
    )


@router.get("/health")
async def health_check():
    """Lightweight health check"""
    return {"status": i18n.get("health.status")}
