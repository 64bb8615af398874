"""Health check router."""

from fastapi import APIRouter, Depends

from ..services.runtime import SandboxRuntime, get_runtime

router = APIRouter()


@router.get("/health")
async def health_check(runtime: SandboxRuntime = Depends(get_runtime)):
    """Health check endpoint."""
    return {
        "status": "ok",
        "service": "gains-sandbox",
        "version": "1.0.0",
        "workers_running": runtime.pool.is_running,
        "queue_depth": await runtime.queue.depth(),
    }
