from __future__ import annotations

import logging
from collections.abc import Generator, Iterator
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from escrowline.config import get_settings
from escrowline.errors import ConcurrencyConflictError, EscrowlineError

logger = logging.getLogger(__name__)

settings = get_settings()
connect_args = {"check_same_thread": False} if settings.database_url.startswith("sqlite") else {}
engine = create_engine(settings.database_url, connect_args=connect_args, future=True)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False, future=True)


def get_db_session() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def atomic(session: Session) -> Iterator[Session]:
    """Run a multi-entity mutation as one unit: commit on success, roll back on any failure.

    Nested calls on the same session join the outermost unit.
    """
    depth = session.info.get("atomic_depth", 0)
    if depth:
        session.info["atomic_depth"] = depth + 1
        try:
            yield session
        finally:
            session.info["atomic_depth"] = depth
        return

    session.info["atomic_depth"] = 1
    try:
        yield session
        session.commit()
    except StaleDataError as exc:
        session.rollback()
        raise ConcurrencyConflictError("record changed concurrently, re-read and retry") from exc
    except IntegrityError as exc:
        session.rollback()
        raise ConcurrencyConflictError("conflicting write rejected by the store") from exc
    except EscrowlineError:
        session.rollback()
        raise
    except Exception:
        logger.exception("Atomic unit failed, rolling back")
        session.rollback()
        raise
    finally:
        session.info["atomic_depth"] = 0
