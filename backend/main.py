"""
AirShare relay — FastAPI application entry point.

Serves the signaling WebSocket at ``/`` and a health check.
"""

import logging

from fastapi import FastAPI, WebSocket

from config import APP_NAME, APP_VERSION, RELAY_HOST, RELAY_PORT
from relay.server import Relay

# --- Logging ---
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(relay: Relay | None = None) -> FastAPI:
    """Build a relay app around its own device registry."""
    relay = relay or Relay()

    app = FastAPI(title=f"{APP_NAME} Relay", version=APP_VERSION)
    app.state.relay = relay

    @app.get("/health")
    async def health():
        return {"status": "ok", "devices": len(relay.registry)}

    @app.websocket("/")
    async def relay_endpoint(websocket: WebSocket):
        await relay.serve(websocket)

    return app


app = create_app()


def run() -> None:
    import uvicorn

    logger.info(f"{APP_NAME} relay listening on {RELAY_HOST}:{RELAY_PORT}")
    uvicorn.run(
        app,
        host=RELAY_HOST,
        port=RELAY_PORT,
        log_level="info",
    )


if __name__ == "__main__":
    run()
