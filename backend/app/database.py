import asyncio
from collections.abc import Callable, Generator
from threading import Lock
from typing import TypeVar

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .config import settings

T = TypeVar("T")


class Base(DeclarativeBase):
    pass


def _engine_options(database_url: str) -> dict:
    if database_url.startswith("sqlite"):
        # In-memory SQLite must share one connection across threads.
        return {"connect_args": {"check_same_thread": False}, "poolclass": StaticPool}
    return {"pool_pre_ping": True}


engine = create_engine(settings.database_url, future=True, **_engine_options(settings.database_url))
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


async def run_sync(db: Session, fn: Callable[..., T], *args, **kwargs) -> T:
    """Run blocking session work on a worker thread so the event loop keeps serving.

    A session is not thread-safe, so calls sharing one session run one at a time.
    """
    lock = db.info.setdefault("worker_lock", Lock())

    def call() -> T:
        with lock:
            return fn(*args, **kwargs)

    return await asyncio.to_thread(call)
