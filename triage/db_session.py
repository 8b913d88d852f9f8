"""
Database Session Context Manager

    with session_scope(SessionLocal) as session:
        session.add(row)
        session.commit()

If the block raises, uncommitted work is rolled back and the exception keeps
propagating. The session is always closed.

Why pass the factory in?
The store, the API and the Celery worker each get their factory explicitly,
so tests can point everything at one in-memory engine.
"""

from contextlib import contextmanager
from sqlalchemy.orm import sessionmaker
from triage.models import db_connect


def make_session_factory(engine=None):
    """
    Build a session factory bound to `engine` (or the configured database).

    expire_on_commit=False keeps loaded attributes readable after the session
    closes, so workflows can hand ORM rows to prompt builders and the API.
    """
    if engine is None:
        engine = db_connect()
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@contextmanager
def session_scope(session_factory):
    session = session_factory()
    try:
        yield session
    except Exception:
        # Cleanup must run for any error type, not just database ones: a
        # ValueError halfway through a unit of work leaves pending changes too.
        session.rollback()
        raise
    finally:
        session.close()
