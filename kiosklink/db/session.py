from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import sessionmaker, Session
from typing import Generator

from kiosklink.core.config import settings

# The cache lives on the device's own disk; only SQLite is expected here
engine = create_engine(
    settings.cache_database_url,
    connect_args={"check_same_thread": False},
    echo=False,
)

Base = declarative_base()

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    """
    Yield a cache database session and close it afterwards.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
