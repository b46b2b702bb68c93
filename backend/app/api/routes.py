from fastapi import APIRouter

from app.api.calls import router as calls_router
from app.api.config import router as config_router
from app.api.presence import router as presence_router

router = APIRouter()

router.include_router(config_router)
router.include_router(calls_router)
router.include_router(presence_router)


@router.get("/", tags=["root"])
def read_root() -> dict[str, str]:
    return {"message": "Welcome to the FreeTalk realtime API"}
