"""
PeerShare: FastAPI application entry point.

Serves the REST API, the /ws event stream and the rendezvous service, and
tears down any open host or guest session on shutdown.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket
from fastapi.middleware.cors import CORSMiddleware

from api import rendezvous
from api.routes import current_state, init_routes, router, shutdown_sessions
from api.websocket import ConnectionManager
from config import API_HOST, API_PORT, RENDEZVOUS_URL
from connection.rendezvous import RendezvousClient
from connection.tcp import TcpProvider

# --- Logging ---
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

ws_manager = ConnectionManager()


def make_provider() -> TcpProvider:
    """Each session gets its own listener and rendezvous registration."""
    return TcpProvider(RendezvousClient(RENDEZVOUS_URL))


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"PeerShare ready. API: {API_HOST}:{API_PORT}, rendezvous: {RENDEZVOUS_URL}")
    try:
        yield
    finally:
        logger.info("Shutting down PeerShare sessions...")
        await shutdown_sessions()


# --- FastAPI app ---
app = FastAPI(
    title="PeerShare",
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

# Inject services into routes
init_routes(make_provider, ws_manager.handle_event)
app.include_router(router)
app.include_router(rendezvous.router)


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    await ws_manager.serve(websocket, current_state)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        app,
        host=API_HOST,
        port=API_PORT,
        log_level="info",
    )
