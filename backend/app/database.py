from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from app.config import settings
from app.models import Base

# The mirror is only touched from the event loop thread
engine = create_engine(
    settings.mirror_database_url, connect_args={"check_same_thread": False}
)
SessionLocal = sessionmaker(bind=engine, class_=Session, expire_on_commit=False)


def init_db() -> None:
    """Create the mirror tables."""
    Base.metadata.create_all(engine)


def get_db() -> Session:
    """Get a mirror database session. Caller must close it."""
    return SessionLocal()
