"""
Database configuration and session management.
"""
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from config import DATABASE_URL
from errors import Forbidden, StorageError
from models import Base


def make_engine(url: str = DATABASE_URL):
    """Create an engine; SQLite connections may be shared across worker threads."""
    kwargs = {}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False}  # Needed for SQLite
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool  # Keep one in-memory database alive
    return create_engine(url, **kwargs)


def make_session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


engine = make_engine()

SessionLocal = make_session_factory(engine)


def init_db(bind=None):
    """Initialize database tables."""
    Base.metadata.create_all(bind=bind or engine)


# SQLSTATE for insufficient_privilege (PostgreSQL)
_PERMISSION_SQLSTATES = {"42501"}
_PERMISSION_MESSAGES = ("readonly database", "permission denied", "access denied")


def _is_permission_error(exc: DBAPIError) -> bool:
    orig = getattr(exc, "orig", None)
    if getattr(orig, "pgcode", None) in _PERMISSION_SQLSTATES:
        return True
    message = str(orig if orig is not None else exc).lower()
    return any(marker in message for marker in _PERMISSION_MESSAGES)


@contextmanager
def session_scope(session_factory):
    """
    One unit of work. Commits on success, rolls back on any failure.

    IntegrityError is re-raised untouched so callers can read constraint
    conflicts; other SQLAlchemy errors become StorageError or Forbidden.
    """
    db = session_factory()
    try:
        yield db
        db.commit()
    except IntegrityError:
        db.rollback()
        raise
    except DBAPIError as e:
        db.rollback()
        if _is_permission_error(e):
            raise Forbidden(str(e.orig)) from e
        raise StorageError(str(e.orig)) from e
    except SQLAlchemyError as e:
        db.rollback()
        raise StorageError(str(e)) from e
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
