from fastapi import APIRouter
from runengine.core.config import get_settings

router = APIRouter(tags=["health"])


@router.get("/health")
def health():
    s = get_settings()
    return {
        "status": "ok",
        "app": s.APP_NAME,
        "env": s.ENV,
        "backend": s.BACKEND_BASE_URL,
    }
