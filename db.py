# db.py
from contextlib import contextmanager

from sqlalchemy import event
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlmodel import SQLModel, Session, create_engine

from config import DATABASE_URL, MYSQL_CA, SQLITE_BUSY_TIMEOUT
from errors import TransientError

def make_engine(url: str = DATABASE_URL) -> Engine:
    """Engine with FK enforcement and a busy timeout when the store is SQLite,
    and the MYSQL_CA bundle when it is a TLS MySQL server."""
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT}
    elif url.startswith("mysql+pymysql://") and MYSQL_CA:
        connect_args = {"ssl": {"ca": MYSQL_CA}}
    eng = create_engine(url, echo=False, pool_pre_ping=True, connect_args=connect_args)
    if eng.dialect.name == "sqlite":
        event.listen(eng, "connect", _sqlite_on_connect)
    return eng

def _sqlite_on_connect(dbapi_conn, _record):
    # SQLite ignores ON DELETE CASCADE and FK checks unless asked per connection
    cur = dbapi_conn.cursor()
    cur.execute("PRAGMA foreign_keys=ON")
    cur.close()

engine = make_engine()

def get_session():
    with Session(engine) as s:
        yield s

def init_db(eng: Engine = None) -> None:
    import models  # noqa: F401  registers tables on SQLModel.metadata
    SQLModel.metadata.create_all(eng or engine)

@contextmanager
def atomic(session: Session):
    """One unit of work: commit on success, roll back on any failure.

    Storage timeouts and lock contention surface as TransientError.
    """
    try:
        yield session
        session.commit()
    except OperationalError as e:
        session.rollback()
        raise TransientError("Storage temporarily unavailable, retry later.",
                             {"reason": str(e.orig) if e.orig else str(e)}) from e
    except Exception:
        session.rollback()
        raise
