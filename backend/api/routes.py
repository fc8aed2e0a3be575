"""REST API routes for the Passdrop relay."""

import logging

from fastapi import APIRouter, HTTPException

from config import APP_ID

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")
# Path used by the original browser client
compat_router = APIRouter()

# Injected by main.py at startup
_registry = None
_relay_hub = None


def init_routes(registry, relay_hub) -> None:
    """Inject service dependencies into the routes module."""
    global _registry, _relay_hub
    _registry = registry
    _relay_hub = relay_hub


@router.post("/passcode")
@compat_router.post("/connections/generate-passcode")
async def generate_passcode():
    """Issue a fresh passcode for a new pairing."""
    passcode = await _registry.issue()
    return {"passcode": passcode}


@router.get("/sessions/{passcode}")
async def get_session(passcode: str):
    """Return the pairing state of a passcode."""
    handle = _registry.get(passcode.strip().upper())
    if handle is None:
        raise HTTPException(status_code=404, detail="Unknown passcode")
    return handle.model_dump()


@router.get("/health")
async def health():
    return {
        "app": APP_ID,
        "status": "ok",
        "sessions": _registry.session_count,
        "connections": _relay_hub.connection_count,
    }
