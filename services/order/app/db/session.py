from sqlalchemy.orm import DeclarativeBase, sessionmaker
from sqlalchemy import create_engine
from app.core.config import settings

class Base(DeclarativeBase): pass

# sqlite DSNs are only used for local runs and tests
_connect_args = {"check_same_thread": False} if settings.POSTGRES_DSN.startswith("sqlite") else {}
engine = create_engine(settings.POSTGRES_DSN, pool_pre_ping=True, connect_args=_connect_args)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
