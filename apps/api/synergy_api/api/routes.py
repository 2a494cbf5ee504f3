from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from synergy_api.core.auth import Caller, get_current_caller
from synergy_api.core.config import get_settings
from synergy_api.crm.api import (
    companies_router,
    contacts_router,
    deals_router,
    diagnostics_router,
    relationships_router,
    synergies_router,
)
from synergy_api.metrics import generate_metrics_payload, metrics_content_type

router = APIRouter()
router.include_router(contacts_router)
router.include_router(companies_router)
router.include_router(deals_router)
router.include_router(relationships_router)
router.include_router(synergies_router)
router.include_router(diagnostics_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str]:
    settings = get_settings()
    return {
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
    }


@router.get("/me", tags=["auth"])
async def me(caller: Caller = Depends(get_current_caller)) -> dict[str, str | bool]:
    return {"sub": caller.sub, "authenticated": caller.authenticated}


@router.get("/metrics", tags=["system"])
def metrics() -> Response:
    if not get_settings().metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
