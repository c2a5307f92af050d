from sqlalchemy import create_engine, Column, Integer, String, Float, DateTime, Text
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool
from datetime import datetime, timezone


def utc_now():
    """Return current UTC time (timezone-aware). Replaces deprecated datetime.utcnow()."""
    return datetime.now(timezone.utc)

Base = declarative_base()


class ScrapeJob(Base):
    __tablename__ = 'scrape_jobs'

    id = Column(String(36), primary_key=True)
    url = Column(String, nullable=False)
    config_json = Column(Text, nullable=False)  # ScrapeConfig as JSON

    # Lifecycle
    status = Column(String, nullable=False, default='pending', index=True)
    progress = Column(Float, nullable=False, default=0.0)
    error = Column(Text)

    # Counters
    discovered_items = Column(Integer, nullable=False, default=0)
    total_items = Column(Integer, nullable=False, default=0)  # after the cap
    scraped_items = Column(Integer, nullable=False, default=0)

    records_json = Column(Text, nullable=False, default='[]')  # list of ExtractedRecord dicts

    started_at = Column(DateTime, default=utc_now, index=True)
    completed_at = Column(DateTime)


# Database setup - import settings for database URL
from api.config import settings


def make_engine(url: str):
    """In-memory SQLite needs a single shared connection; files and servers get a pool."""
    if url.startswith("sqlite") and ":memory:" in url:
        return create_engine(
            url,
            echo=False,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    if url.startswith("sqlite"):
        return create_engine(url, echo=False, connect_args={"check_same_thread": False})
    return create_engine(
        url,
        echo=False,
        pool_size=5,           # Number of connections to keep in pool
        max_overflow=10,       # Additional connections allowed beyond pool_size
        pool_pre_ping=True,    # Verify connections before use (handles stale connections)
        pool_recycle=3600,     # Recycle connections after 1 hour
    )


engine = make_engine(settings.database_url)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

def init_db():
    Base.metadata.create_all(bind=engine)

def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
