"""
Database session management — SQLAlchemy + psycopg2.
"""
import os
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from pipeline.config import DEFAULT_DATABASE_URL

DATABASE_URL = os.environ.get("DATABASE_URL", DEFAULT_DATABASE_URL)

engine = create_engine(DATABASE_URL, pool_pre_ping=True)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """FastAPI dependency — yields a DB session and ensures cleanup."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
