from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import settings
from app.routers import icm
from app.services.icm_trigger import shutdown_trigger

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(
    title="ICM Stats API",
    version="0.1.0",
    description="Snapshots de mensajes cross-chain (ICM) por par de chains.",
)

origins = [
    "http://127.0.0.1:4321",
    "http://localhost:4321",
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("shutdown")
def on_shutdown() -> None:
    # no esperar ciclos en curso: el reaper los recupera si quedan colgados
    shutdown_trigger()


@app.get("/health", tags=["system"])
def health_check():
    return {"status": "ok", "service": "icmstats-api", "version": "v1"}


# Routers
app.include_router(icm.router)
