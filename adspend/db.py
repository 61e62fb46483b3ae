from sqlmodel import create_engine, SQLModel, Session
from sqlalchemy import event
import logging

from adspend.core.config import settings

logger = logging.getLogger(__name__)

DATABASE_URL = settings.DATABASE_URL
IS_SQLITE = DATABASE_URL.startswith("sqlite")

if IS_SQLITE:
    # Local development only; check_same_thread off because the billing job
    # runs sessions from several asyncio tasks
    engine = create_engine(
        DATABASE_URL,
        echo=False,
        connect_args={"check_same_thread": False},
    )
else:
    engine = create_engine(
        DATABASE_URL,
        echo=False,
        pool_size=5,
        max_overflow=10,  # Allow burst connections during the daily billing run
        pool_pre_ping=True,  # Verify connections before use
        pool_recycle=300,  # Recycle connections every 5 min
        pool_timeout=30,
        connect_args={
            "connect_timeout": 10,
            "keepalives": 1,
            "keepalives_idle": 30,
            "keepalives_interval": 10,
            "keepalives_count": 5,
        },
    )


def set_statement_timeout(dbapi_connection, connection_record):
    """Cap query time on PostgreSQL connections."""
    cursor = dbapi_connection.cursor()
    try:
        cursor.execute("SET statement_timeout = '30s'")
    except Exception as e:
        logger.warning(f"Could not set statement timeout: {e}")
    finally:
        cursor.close()


if not IS_SQLITE:
    event.listen(engine, "connect", set_statement_timeout)


def get_session():
    with Session(engine) as session:
        yield session


def create_db_and_tables():
    # Import models so they are registered on SQLModel.metadata
    import adspend.models  # noqa: F401

    SQLModel.metadata.create_all(engine)
