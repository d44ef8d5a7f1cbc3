import os

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

# PostgreSQL in deployment; a local SQLite file when DATABASE_URL is unset.
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./fulfillment.db")

# SQLite connections are used from FastAPI's worker threads.
connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(DATABASE_URL, connect_args=connect_args, pool_pre_ping=True)

# Services commit explicitly; checkout, payment and shipping flows span several commits.
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Orders, payments, invoices, shipments and the stock ledger all share this metadata.
Base = declarative_base()


def get_db():
    """Yields one session per request to the fulfillment routes."""
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


def init_db(bind=None):
    """Create database tables if they don't exist."""
    # Importing models registers every table on Base.metadata.
    from . import models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
