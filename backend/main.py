"""
Passdrop relay — FastAPI application entry point.

Serves the passcode API and the WebSocket relay that pairs two clients by
passcode and forwards transfer frames between them.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from api.routes import compat_router, init_routes, router
from api.websocket import RelayHub
from config import API_HOST, API_PORT, MAX_FRAME_SIZE, SWEEP_INTERVAL
from errors import ProtocolViolation
from pairing.registry import SessionRegistry
from transfer.models import ErrorMessage, decode_frame

# --- Logging ---
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# --- Service singletons ---
registry = SessionRegistry()
relay_hub = RelayHub(registry)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start/stop background services."""
    logger.info("Starting Passdrop relay...")
    try:
        await registry.start(interval=SWEEP_INTERVAL)
        logger.info(f"Passdrop relay ready on {API_HOST}:{API_PORT}")
        yield
    except Exception as e:
        logger.error(f"Startup failed: {e}", exc_info=True)
        raise
    finally:
        logger.info("Shutting down Passdrop relay...")
        await registry.stop()


# --- FastAPI app ---
app = FastAPI(
    title="Passdrop",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:5173", "http://127.0.0.1:5173",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

init_routes(registry, relay_hub)
app.include_router(router)
app.include_router(compat_router)


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    conn = await relay_hub.connect(websocket)
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                break
            try:
                if message.get("text") is None:
                    raise ProtocolViolation("Binary frames are not supported, send JSON text")
                data = decode_frame(message["text"])
            except ProtocolViolation as e:
                await conn.send_json(ErrorMessage(message=str(e), code=e.code).to_wire())
                continue
            await relay_hub.handle_frame(conn, data)
    except WebSocketDisconnect:
        pass
    finally:
        await relay_hub.disconnect(conn)


def run() -> None:
    import uvicorn

    uvicorn.run(
        app,
        host=API_HOST,
        port=API_PORT,
        log_level="info",
        ws_max_size=MAX_FRAME_SIZE,
    )


if __name__ == "__main__":
    run()
