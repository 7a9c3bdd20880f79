"""
Bridge Link — FastAPI application entry point.

Starts the bridge client (network monitoring, discovery, endpoint selection
and health checks) on startup and serves the local REST API and WebSocket
endpoint the presentation layer talks to.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from api.routes import init_routes, router
from api.websocket import ConnectionManager
from client import BridgeClient
from config import API_HOST, API_PORT

# --- Logging ---
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(client: BridgeClient | None = None) -> FastAPI:
    """Build the app around ``client`` (a default one if omitted)."""
    bridge_client = client or BridgeClient()
    ws_manager = ConnectionManager()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Start/stop background services."""
        logger.info("Starting Bridge Link services...")
        try:
            bridge_client.on_event(ws_manager.handle_event)
            await bridge_client.start()
            logger.info(f"Bridge Link ready — API: {API_HOST}:{API_PORT}")
            yield
        except Exception as e:
            logger.error(f"Startup failed: {e}", exc_info=True)
            raise
        finally:
            logger.info("Shutting down Bridge Link services...")
            await bridge_client.stop()

    app = FastAPI(title="Bridge Link", version="1.0.0", lifespan=lifespan)
    app.state.client = bridge_client

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["http://localhost:5173", "http://127.0.0.1:5173"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    init_routes(bridge_client)
    app.include_router(router)

    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        await ws_manager.connect(websocket, snapshot=bridge_client.status())
        try:
            while True:
                # Keep the connection alive; we don't expect client messages
                await websocket.receive_text()
        except WebSocketDisconnect:
            await ws_manager.disconnect(websocket)
        except Exception:
            await ws_manager.disconnect(websocket)

    return app


def run() -> None:
    import uvicorn

    uvicorn.run(
        create_app(),
        host=API_HOST,
        port=API_PORT,
        log_level="info",
    )


if __name__ == "__main__":
    run()
