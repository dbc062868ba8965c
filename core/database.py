"""
Database connection and setup
Postgres in production, sqlite (in-memory) for tests
"""
import os
from sqlalchemy import create_engine, text
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool
from dotenv import load_dotenv

from core.config import logger

# Load environment variables from project root
env_path = os.path.join(os.path.dirname(os.path.dirname(__file__)), '.env')
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "")

if not DATABASE_URL:
    raise ValueError("DATABASE_URL environment variable is required for database connection")


def make_engine(url: str):
    """Create an engine; sqlite gets a single shared connection so in-memory data survives."""
    if url.startswith("sqlite"):
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=False,
        )
    return create_engine(
        url,
        pool_pre_ping=True,  # Verify connections before using
        pool_size=10,
        max_overflow=20,
        echo=False  # Set to True for SQL query logging in development
    )


# Create SQLAlchemy engine
engine = make_engine(DATABASE_URL)

# Create session factory; rows stay readable after the session closes
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)

# Base class for ORM models
Base = declarative_base()


def init_db(bind=None):
    """
    Initialize database tables
    Call this on application startup
    """
    # Import models so they register on Base.metadata
    import models.access_token  # noqa: F401
    import models.school  # noqa: F401

    target = bind or engine
    Base.metadata.create_all(bind=target)
    if target.dialect.name != "postgresql":
        return
    # Legacy folder share columns predate the ORM model on older deployments
    try:
        with target.begin() as conn:
            chk = conn.execute(text("SELECT 1 FROM information_schema.columns WHERE table_name='folders' AND column_name='share_token'"))
            if not chk.first():
                conn.execute(text("ALTER TABLE public.folders ADD COLUMN IF NOT EXISTS share_token VARCHAR(255)"))
            chk2 = conn.execute(text("SELECT 1 FROM information_schema.columns WHERE table_name='folders' AND column_name='share_expires_at'"))
            if not chk2.first():
                conn.execute(text("ALTER TABLE public.folders ADD COLUMN IF NOT EXISTS share_expires_at TIMESTAMP"))
    except Exception as ex:
        logger.warning(f"[db] legacy column check failed: {ex}")
