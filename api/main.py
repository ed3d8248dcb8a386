"""
AirWatch — FastAPI Application Entry Point
"""
import logging
from contextlib import asynccontextmanager

from alembic.config import Config
from alembic import command as alembic_command

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.database import DATABASE_URL, SessionLocal
from api.routes import sensors
from pipeline.config import load_settings
from pipeline.persistence.sensors import seed_sensors

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def _seed_data() -> None:
    """Seed tracked sensors on first startup."""
    settings = load_settings()
    db = SessionLocal()
    try:
        seeded = seed_sensors(db, settings.sensors_config)
        db.commit()
        if not seeded:
            logger.info("All sensors already exist, skipping sensor seed")
    except FileNotFoundError as e:
        logger.warning("%s, skipping sensor seed", e)
    except Exception as e:
        db.rollback()
        logger.error("Sensor seed failed: %s", e)
    finally:
        db.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    # ── Step 0: Run database migrations ───────────────────────────────────────
    try:
        alembic_cfg = Config("alembic.ini")
        alembic_cfg.set_main_option("sqlalchemy.url", DATABASE_URL)
        alembic_command.upgrade(alembic_cfg, "head")
        logger.info("Database migrations applied successfully")
    except Exception as e:
        logger.error("Migration failed: %s", e)
        raise

    # ── Step 1: Seed sensors ──────────────────────────────────────────────────
    logger.info("Seeding sensors")
    _seed_data()
    yield
    logger.info("AirWatch API shutting down")


app = FastAPI(
    title="AirWatch API",
    description="Community PM2.5 sensor network and NowCast AQI",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(sensors.router, prefix="/api/sensors", tags=["Sensors"])


@app.get("/api/health", tags=["Health"])
def health():
    return {"status": "ok", "service": "airwatch-api", "version": "1.0.0"}
