"""OCPP charging station session engine: FastAPI backend."""
import logging

from fastapi import FastAPI

# Show OCPP incoming/outgoing messages and session warnings (INFO level)
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logging.getLogger("station_core").setLevel(logging.INFO)
from fastapi.middleware.cors import CORSMiddleware

from api.routes import router
from api.station import router as station_router
from station_core.store import get_session, seed_default

app = FastAPI(
    title="OCPP Charging Station Simulator",
    description="OCPP 1.6J multi-connector charge point session engine",
    version="0.1.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:8080", "http://127.0.0.1:8080"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# API routes under /api (no static mount at / so /api is never shadowed)
app.include_router(router, prefix="/api")
app.include_router(station_router, prefix="/api")


@app.on_event("startup")
def startup() -> None:
    """Create the default station."""
    seed_default()


@app.on_event("shutdown")
async def shutdown() -> None:
    """Disconnect and cancel background work."""
    session = get_session()
    if session is not None:
        await session.shutdown()


@app.get("/")
def root() -> dict:
    """Root redirect/info."""
    return {"service": "ocpp-station", "docs": "/docs", "health": "/api/health"}


if __name__ == "__main__":
    import uvicorn

    from utils.config import PORT

    uvicorn.run(app, host="0.0.0.0", port=PORT)
