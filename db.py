from __future__ import annotations

from typing import Any, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker


Base = declarative_base()

# Bound to the engine by init_engine(); safe to import before the app starts.
SessionLocal = sessionmaker(autoflush=False, expire_on_commit=False, future=True)

_engine: Optional[Engine] = None


def init_engine(database_url: str, *, pool_size: int = 5, max_overflow: int = 10) -> Engine:
    global _engine

    url = str(database_url or "").strip()
    if not url:
        raise RuntimeError("DATABASE_URL is not set")

    if url.startswith("sqlite"):
        engine = create_engine(url, future=True, connect_args={"check_same_thread": False})
    else:
        engine = create_engine(
            url,
            future=True,
            pool_pre_ping=True,
            pool_size=max(1, int(pool_size)),
            max_overflow=max(0, int(max_overflow)),
            pool_recycle=1800,
        )

    if _engine is not None and _engine is not engine:
        _engine.dispose()
    _engine = engine
    SessionLocal.configure(bind=engine)
    return engine


def ensure_engine(database_url: str) -> Engine:
    """Used by worker processes that never ran create_app()."""
    if _engine is not None:
        return _engine
    engine = init_engine(database_url)
    import models  # noqa: F401  (registers tables on Base)

    Base.metadata.create_all(bind=engine)
    return engine


def ping_db() -> bool:
    if _engine is None:
        return False
    try:
        with _engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception:
        return False


def get_pool_stats() -> dict[str, Any]:
    if _engine is None:
        return {"initialized": False}
    pool = _engine.pool
    out: dict[str, Any] = {"initialized": True, "class": type(pool).__name__}
    for name in ("size", "checkedin", "checkedout", "overflow"):
        fn = getattr(pool, name, None)
        if callable(fn):
            try:
                out[name] = int(fn())
            except Exception:
                out[name] = None
    return out
