# db.py
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from config import Settings


def create_session_factory(settings: Settings) -> sessionmaker:
    engine = create_engine(
        settings.database_url,
        pool_pre_ping=True,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_recycle=1800,
    )
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)
