"""
LanLink: FastAPI application entry point.

Starts the LAN service on startup, attaches negotiated channels to
devices, serves the REST API and WebSocket endpoint.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect

from api.routes import init_routes, router
from api.websocket import ConnectionManager
from config import API_HOST, API_PORT, APP_NAME, BROADCAST_INTERVAL, DEFAULT_PORT
from discovery.device import DeviceManager
from discovery.identity import IdentityService
from discovery.service import LanService
from discovery.trust import TrustStore

# --- Logging ---
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

# --- Service singletons ---
identity_service = IdentityService()
trust_store = TrustStore()
lan_service = LanService(
    identity_service,
    trust_store,
    port=DEFAULT_PORT,
    broadcast_interval=BROADCAST_INTERVAL,
)
device_manager = DeviceManager()
ws_manager = ConnectionManager()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start/stop background services."""
    logger.info(f"Starting {APP_NAME} services...")

    try:
        # Wire up event broadcasting
        lan_service.on_channel(device_manager.handle_channel)
        lan_service.on_error(ws_manager.handle_error)
        lan_service.transfers.on_event(ws_manager.handle_event)
        device_manager.on_event(ws_manager.handle_event)

        await lan_service.start()
        lan_service.broadcast()

        logger.info(
            f"{APP_NAME} ready. "
            f"API: {API_HOST}:{API_PORT}, "
            f"LAN port: {lan_service.port}, "
            f"device: {identity_service.device_name} ({identity_service.device_id})"
        )

        yield

    except Exception as e:
        logger.error(f"Startup failed: {e}", exc_info=True)
        raise
    finally:
        logger.info(f"Shutting down {APP_NAME} services...")
        await lan_service.destroy()


# --- FastAPI app ---
app = FastAPI(
    title=APP_NAME,
    version="1.0.0",
    lifespan=lifespan,
)

# Inject services into routes
init_routes(lan_service, device_manager)
app.include_router(router)


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await ws_manager.connect(websocket)
    try:
        while True:
            # Keep the connection alive; we don't expect client messages
            await websocket.receive_text()
    except WebSocketDisconnect:
        await ws_manager.disconnect(websocket)
    except Exception:
        await ws_manager.disconnect(websocket)


def run() -> None:
    import uvicorn

    uvicorn.run(
        app,
        host=API_HOST,
        port=API_PORT,
        log_level="info",
    )


if __name__ == "__main__":
    run()
