from fastapi import APIRouter

from app.api.links.routes import router as links_router
from app.api.scheduler.routes import router as scheduler_router

router = APIRouter()
router.include_router(links_router)
router.include_router(scheduler_router)
