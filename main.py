"""
Zigbee Bridge - Main Application
FastAPI server exposing the bridge state and the bridge config commands.
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from fastapi import FastAPI
from pydantic import BaseModel

from bridge_info import get_bridge_version
from controller import Controller

logger = logging.getLogger('main')


# ============================================================================
# PYDANTIC MODELS FOR API
# ============================================================================

class CommandRequest(BaseModel):
    payload: str = ""


# ============================================================================
# FASTAPI APPLICATION
# ============================================================================

def create_app(controller: Controller) -> FastAPI:
    """Build the HTTP API around a controller."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application startup and shutdown handling."""
        await controller.start()
        logger.info("HTTP API ready")
        yield  # Application runs here
        logger.info("HTTP API shutting down")
        await controller.stop()

    app = FastAPI(
        title="Zigbee Bridge",
        description="MQTT bridge administration for a Zigbee network",
        version=get_bridge_version()[0],
        lifespan=lifespan
    )
    app.state.controller = controller

    # ========================================================================
    # ROUTES - BRIDGE
    # ========================================================================

    @app.get("/api/bridge")
    async def get_bridge():
        if controller.bridge_info is None:
            return {"success": False, "error": "Bridge not started"}
        return controller.bridge_info.payload()

    @app.get("/api/devices")
    async def get_devices():
        if controller.router is None:
            return []
        return controller.router.device_listing()

    @app.get("/api/groups")
    async def get_groups():
        return controller.settings.get_groups()

    @app.get("/api/status")
    async def get_status():
        return controller.get_status()

    @app.post("/api/bridge/config/{command:path}")
    async def bridge_config(command: str, request: Optional[CommandRequest] = None):
        """Queue a command exactly as if it had arrived over MQTT."""
        if controller.queue is None:
            return {"success": False, "error": "Bridge not started"}

        topic = f"{controller.base_topic}/bridge/config/{command}"
        payload = request.payload if request else ""
        if not controller.queue.submit_nowait(topic, payload):
            return {"success": False, "error": "Command queue not running"}
        return {"success": True, "topic": topic}

    return app


# ============================================================================
# MAIN ENTRY POINT
# ============================================================================

if __name__ == "__main__":
    bridge = Controller()
    frontend = bridge.config["frontend"]

    uvicorn.run(
        create_app(bridge),
        host=frontend.get("host", "0.0.0.0"),
        port=frontend.get("port", 8080),
        log_level="info"
    )
