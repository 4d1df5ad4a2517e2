#!/usr/bin/env python3
"""
rclink - Main Application
FastAPI server relaying operator steering/throttle to MAVProxy as RC overrides
"""

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from rclink.api.routes import control as control_routes
from rclink.services.control_input import ControlInputService
from rclink.services.preferences import get_preferences
from rclink.services.rc_link import RcOverrideLink
from rclink.utils.logger import get_logger

logger = get_logger()

app = FastAPI(title="rclink", version="1.0.0")

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Global services - created on startup
link_service = None
control_service = None

app.include_router(control_routes.router, tags=["control"])


@app.get("/api")
async def root():
    return {"name": "rclink", "version": "1.0.0", "status": "running"}


@app.on_event("startup")
async def startup_event():
    """Initialize services on startup"""
    global link_service, control_service

    preferences = get_preferences()
    link_config = preferences.get_link_config()

    link_service = RcOverrideLink(link_config)
    control_service = ControlInputService(link_service, preferences.get_control_config())

    # Vehicle starts at neutral before the first frame goes out
    control_service.center()

    # A bind failure here is fatal: let it abort startup
    link_service.start()

    control_routes.set_link_service(link_service)
    control_routes.set_control_service(control_service)

    logger.info("rclink started")


@app.on_event("shutdown")
async def shutdown_event():
    """Leave the vehicle at neutral and release the link"""
    logger.info("rclink shutting down...")
    if control_service:
        control_service.shutdown()
    if link_service:
        link_service.send_now()
        link_service.stop()


if __name__ == "__main__":
    import uvicorn

    server_config = get_preferences().get_server_config()
    uvicorn.run(app, host=server_config.host, port=server_config.port)
