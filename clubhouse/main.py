# clubhouse/main.py
from fastapi import FastAPI, Depends, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.exceptions import ResponseValidationError
from fastapi.exception_handlers import http_exception_handler
from sqlalchemy import text
from sqlalchemy.orm import Session
from sqlalchemy.exc import SQLAlchemyError
from starlette.requests import Request
import logging
import os

from clubhouse.database import Base, SessionLocal, engine, get_db, DB_SOURCE, DB_INFO
from clubhouse.routers import bookings, fees, settings
from clubhouse.migrations import run_auto_migrations
from clubhouse.pricing import load_pricing_from_settings, pricing_store

logger = logging.getLogger(__name__)

# -----------------------------------------
# Create app instance
# -----------------------------------------
app = FastAPI(title="Clubhouse Bookings")

# -----------------------------------------
# Global Error Handling (Keep JSON Responses)
# -----------------------------------------
@app.exception_handler(SQLAlchemyError)
async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error("[DB] SQLAlchemy error: %s", str(exc)[:240])
    return JSONResponse(status_code=503, content={"detail": "Database connection unavailable"})

@app.exception_handler(ResponseValidationError)
async def response_validation_error_handler(request: Request, exc: ResponseValidationError):
    logger.error("[API] Response validation error: %s", str(exc)[:240])
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})

@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    # Preserve FastAPI's HTTPException behavior.
    if isinstance(exc, HTTPException):
        return await http_exception_handler(request, exc)

    logger.exception("[UNHANDLED] %s: %s", type(exc).__name__, str(exc)[:240])
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})

# -----------------------------------------
# CORS Settings
# -----------------------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
    allow_credentials=False,
)

@app.get("/health")
def health(db: Session = Depends(get_db)):
    try:
        db.execute(text("select 1"))
        ok = True
    except SQLAlchemyError as e:
        logger.warning("[HEALTH] Database error: %s", str(e)[:200])
        ok = False
    return {
        "ok": ok,
        "db": "ok" if ok else "error",
        "db_source": DB_SOURCE,
        "db_driver": (DB_INFO or {}).get("driver"),
        "has_database_url": bool(os.getenv("DATABASE_URL")),
    }

# -----------------------------------------
# Database initialization
# -----------------------------------------
def init_database() -> None:
    Base.metadata.create_all(bind=engine)
    run_auto_migrations(engine)
    db = SessionLocal()
    try:
        config = load_pricing_from_settings(db, pricing_store)
        logger.info(
            "[FEES] Pricing loaded: overage %s cents / %s min, guest fee %s cents",
            config.overage_rate_cents, config.block_minutes, config.guest_fee_cents,
        )
    finally:
        db.close()


@app.on_event("startup")
def on_startup():
    try:
        init_database()
        logger.info("[DB] Database connected successfully")
    except Exception as e:
        logger.warning("[DB] Could not initialize database: %s", str(e)[:100])

# -----------------------------------------
# Routers
# -----------------------------------------
app.include_router(bookings.router)
app.include_router(fees.router)
app.include_router(settings.router)
