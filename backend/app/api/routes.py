from fastapi import APIRouter

from app.api.calls import router as calls_router
from app.api.consultations import router as consultations_router
from app.api.messages import router as messages_router
from app.api.payments import router as payments_router
from app.api.presence import router as presence_router

router = APIRouter()

router.include_router(messages_router)
router.include_router(consultations_router)
router.include_router(calls_router)
router.include_router(payments_router)
router.include_router(presence_router)


@router.get("/", tags=["root"])
def read_root() -> dict[str, str]:
    return {"message": "Welcome to the LexLine realtime API"}
