from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import Response

from autopilot.automation.api import admin_router, webhook_router
from autopilot.core.auth import METRICS_ROLE, AuthUser, get_current_user
from autopilot.core.config import get_settings
from autopilot.metrics import generate_metrics_payload, metrics_content_type

router = APIRouter()
router.include_router(webhook_router)
router.include_router(admin_router)


@router.get("/health", tags=["system"])
def health() -> dict[str, str | bool]:
    settings = get_settings()
    return {
        "ok": True,
        "status": "ok",
        "service": settings.app_name,
        "environment": settings.app_env,
        "dry_run": settings.dry_run,
    }


@router.get("/me", tags=["auth"])
async def me(user: AuthUser = Depends(get_current_user)) -> dict[str, str | list[str]]:
    return {
        "sub": user.sub,
        "roles": user.roles,
    }


@router.get("/metrics", tags=["system"])
def metrics(user: AuthUser = Depends(get_current_user)) -> Response:
    settings = get_settings()
    if not settings.metrics_enabled:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="not found")
    if METRICS_ROLE not in user.roles:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {METRICS_ROLE}")
    return Response(content=generate_metrics_payload(), media_type=metrics_content_type())
