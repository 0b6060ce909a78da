"""Uniclima checkout API service entrypoint."""

from fastapi import FastAPI

from services.api.app.db.init_db import init_db
from services.api.app.logging_config import configure_logging
from services.api.app.routers.audit import router as audit_router
from services.api.app.routers.checkout import router as checkout_router

configure_logging()

app = FastAPI(title="Uniclima Checkout API")

app.include_router(checkout_router)
app.include_router(audit_router)


@app.on_event("startup")
def _startup() -> None:
    init_db()


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}
