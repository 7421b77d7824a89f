from __future__ import annotations

from contextlib import contextmanager

from sqlalchemy.orm import Session

from app.tenantdesk.db import make_engine, make_sessionmaker


def create_schema(db_url: str) -> None:
    """Create any missing tables from the ORM metadata (never drops or alters)."""
    from app.tenantdesk.models import Base

    engine = make_engine(db_url)
    try:
        Base.metadata.create_all(bind=engine)
    finally:
        engine.dispose()


@contextmanager
def script_session(db_url: str):
    """A committed-on-success session on a throwaway engine."""
    engine = make_engine(db_url)
    s: Session = make_sessionmaker(engine)()
    try:
        yield s
        s.commit()
    except Exception:
        s.rollback()
        raise
    finally:
        s.close()
        engine.dispose()
