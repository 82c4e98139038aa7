"""
Accès base de données (SQLAlchemy 2.x).
- Engine et sessionmaker créés paresseusement (singleton module, comme supabase_client)
- init_engine(url) pour les tests et le démarrage du process
- session_scope(): frontière transactionnelle (commit / rollback / close)
- get_db(): dépendance FastAPI
"""
import logging
from contextlib import contextmanager
from typing import Any, Iterator, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from backend.config import DATABASE_URL, DB_ECHO

logger = logging.getLogger(__name__)

_engine: Optional[Engine] = None
_SessionLocal: Optional[sessionmaker] = None

def init_engine(url: Optional[str] = None, **kwargs: Any) -> Engine:
    """
    (Re)crée l'engine et le sessionmaker.
    - url: DATABASE_URL par défaut
    - kwargs: transmis à create_engine (ex: poolclass=StaticPool pour sqlite en mémoire)
    """
    global _engine, _SessionLocal
    url = url or DATABASE_URL
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    else:
        kwargs.setdefault("pool_pre_ping", True)
    kwargs.setdefault("echo", DB_ECHO)
    if _engine is not None:
        _engine.dispose()
    _engine = create_engine(url, **kwargs)
    _SessionLocal = sessionmaker(bind=_engine, autoflush=False, expire_on_commit=False)
    return _engine

def get_engine() -> Engine:
    if _engine is None:
        init_engine()
    return _engine

def get_sessionmaker() -> sessionmaker:
    if _SessionLocal is None:
        init_engine()
    return _SessionLocal

def create_all() -> None:
    from backend.models.db import Base
    Base.metadata.create_all(get_engine())

@contextmanager
def session_scope() -> Iterator[Session]:
    """
    Ouvre une session transactionnelle:
    - commit si le bloc se termine normalement
    - rollback puis relance de l'exception sinon
    """
    session = get_sessionmaker()()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()

def get_db() -> Iterator[Session]:
    session = get_sessionmaker()()
    try:
        yield session
    finally:
        session.close()

def supports_row_locks(session: Session) -> bool:
    """SELECT ... FOR UPDATE n'existe pas sur sqlite (verrou global en écriture)."""
    bind = session.get_bind()
    return str(getattr(getattr(bind, "dialect", None), "name", "")).lower() != "sqlite"

def ping() -> bool:
    try:
        with get_engine().connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception:
        logger.exception("infra.database.ping failed")
        return False
