from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, Optional

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .config import settings


def _engine_kwargs(url: str) -> Dict[str, Any]:
    kwargs: Dict[str, Any] = {"future": True, "echo": False, "pool_pre_ping": True}
    if url.startswith("sqlite"):
        # el API y el thread pool de ciclos comparten el engine
        kwargs["connect_args"] = {"check_same_thread": False}
    return kwargs


# Engine de SQLAlchemy
engine = create_engine(settings.DATABASE_URL, **_engine_kwargs(settings.DATABASE_URL))

# Factoría de sesiones; cada operación del lock hace su propio commit
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
    expire_on_commit=False,
)

# Base para los modelos ORM
Base = declarative_base()


# Dependencia para usar en FastAPI
def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def session_scope(factory: Optional[Callable[[], Session]] = None) -> Iterator[Session]:
    """Sesión corta para ciclos en background / workers (fuera de FastAPI)."""
    db = (factory or SessionLocal)()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
