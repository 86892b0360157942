from fastapi import APIRouter
from ..config import settings

router = APIRouter(tags=["health"])

@router.get("/health")
def health():
    return {
        "status": "ok",
        "backend": settings.vector_backend,
        "measure": settings.distance_measure,
        "strategy": settings.retrieval_strategy,
    }
