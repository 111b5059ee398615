# src/engine/db.py
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from config import get_settings
from engine.models import Base


def make_session_factory(database_url: str):
    connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}
    engine = create_engine(database_url, connect_args=connect_args)
    # Create tables if they don't exist
    Base.metadata.create_all(bind=engine)
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)


SessionLocal = make_session_factory(get_settings().database_url)
