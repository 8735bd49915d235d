from __future__ import annotations

from contextlib import contextmanager

from sqlalchemy.orm import Session

from app.kyudo.db import build_engine, build_sessionmaker


@contextmanager
def script_session(db_url: str):
    """Session for one-off scripts; uses the app's engine settings (SQLite hooks included)."""
    engine = build_engine(db_url)
    sm = build_sessionmaker(engine)
    s: Session = sm()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
        engine.dispose()
