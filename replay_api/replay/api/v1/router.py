from fastapi import APIRouter

from .tracks import router as tracks_router
from .uploads import router as uploads_router
from .stream import router as stream_router
from .transcriptions import router as transcriptions_router

api_router = APIRouter(prefix="/api/v1")
api_router.include_router(uploads_router)
api_router.include_router(tracks_router)
api_router.include_router(stream_router)
api_router.include_router(transcriptions_router)
