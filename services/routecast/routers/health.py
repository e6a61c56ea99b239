"""Health check endpoint. Never rate limited."""

from fastapi import APIRouter, Request

router = APIRouter()


@router.get("/health")
async def health_check(request: Request) -> dict:
    state = request.app.state
    return {
        "success": True,
        "data": {
            "status": "healthy",
            "version": state.settings.app_version,
            "cache": "redis" if getattr(state, "redis", None) is not None else "memory",
            "providers": [p.value for p in state.weather_manager.available_providers()],
        },
        "requestId": request.state.request_id,
    }
