"""
AirShare device agent — FastAPI application entry point.

Connects to the relay on startup, serves the local REST API and streams
events to UI clients over ``/ws``.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from api.routes import init_routes, router
from api.websocket import ConnectionManager
from config import (
    AGENT_HOST,
    AGENT_PORT,
    APP_NAME,
    APP_VERSION,
    DEFAULT_SAVE_DIR,
    DEVICE_NAME,
    RELAY_URL,
)
from signaling.client import SignalingClient
from transfer.manager import TransferManager
from transfer.storage import DirectorySink

# --- Logging ---
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# --- Service singletons ---
signaling_client = SignalingClient(url=RELAY_URL, device_name=DEVICE_NAME)
transfer_manager = TransferManager(signaling_client, DirectorySink(DEFAULT_SAVE_DIR))


def _current_state() -> list[tuple[str, dict]]:
    """Events that bring a freshly connected UI up to date."""
    events = [
        ("status", {"connected": signaling_client.connected}),
        ("devices", transfer_manager.devices_payload()),
        ("ui_state", transfer_manager.ui_state_payload()),
    ]
    info = transfer_manager.get_transfer()
    if info:
        events.append(("transfer_state", info.model_dump()))
    return events


ws_manager = ConnectionManager(snapshot=_current_state)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start/stop the relay connection."""
    logger.info(f"Starting {APP_NAME} agent...")

    try:
        # Wire up event broadcasting
        transfer_manager.on_event(ws_manager.handle_event)

        await signaling_client.start()

        logger.info(
            f"{APP_NAME} agent ready — "
            f"API: {AGENT_HOST}:{AGENT_PORT}, "
            f"Relay: {RELAY_URL}, "
            f"Saving to: {transfer_manager.save_dir}"
        )

        yield

    except Exception as e:
        logger.error(f"Startup failed: {e}", exc_info=True)
        raise
    finally:
        logger.info(f"Shutting down {APP_NAME} agent...")
        await transfer_manager.cancel()
        await signaling_client.stop()


# --- FastAPI app ---
app = FastAPI(
    title=f"{APP_NAME} Agent",
    version=APP_VERSION,
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

# Inject services into routes
init_routes(transfer_manager)
app.include_router(router)


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await ws_manager.connect(websocket)
    try:
        while True:
            # Keep the connection alive; we don't expect client messages
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        await ws_manager.disconnect(websocket)


def run() -> None:
    import uvicorn

    uvicorn.run(
        app,
        host=AGENT_HOST,
        port=AGENT_PORT,
        log_level="info",
    )


if __name__ == "__main__":
    run()
