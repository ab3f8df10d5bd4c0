"""Durable store for the lottery mirror and the indexer cursor.

Two tables:
- `lottery_created_events`: one row per lottery, keyed by `lottery_id`,
  written with insert-or-replace semantics.
- `lottery_indexer_state`: a single row holding the last processed event
  position.

PostgreSQL is the production target; SQLite is accepted for local runs and
tests. Both support native `ON CONFLICT ... DO UPDATE`.
"""

from __future__ import annotations

import asyncio
from contextlib import contextmanager
from typing import Any, Callable, Iterator, List, Optional, TypeVar

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Index,
    Text,
    create_engine,
    func,
    select,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from walottery.lottery.models import EventCursor, LotteryMirror
from walottery.utils.common import utcnow
from walottery.utils.config import ConfigurationError
from walottery.utils.logger import get_logger

logger = get_logger(__name__)

Base = declarative_base()

DEFAULT_DATABASE_URL = "sqlite:///walottery.db"
DEFAULT_STORE_TIMEOUT = 30.0

T = TypeVar("T")


class StoreError(RuntimeError):
    """A store operation failed. Always retryable."""


async def call_store(fn: Callable[..., T], *args: Any, timeout: float = DEFAULT_STORE_TIMEOUT) -> T:
    """Run a blocking store method in a worker thread, bounded by `timeout`.

    A call that does not return in time surfaces as `StoreError`; the worker
    thread is left to finish or fail on the driver's own timeouts.
    """
    try:
        return await asyncio.wait_for(asyncio.to_thread(fn, *args), timeout=timeout)
    except asyncio.TimeoutError as exc:
        name = getattr(fn, "__name__", "store call")
        raise StoreError(f"{name} timed out after {timeout}s") from exc


class LotteryCreatedEvent(Base):
    """Mirror row (maps to 'lottery_created_events')."""

    __tablename__ = "lottery_created_events"
    __table_args__ = (Index("ix_lottery_created_events_deadline_ms", "deadline_ms"),)

    lottery_id = Column(Text, primary_key=True)
    creator = Column(Text, nullable=False)
    deadline_ms = Column(BigInteger, nullable=False)
    total_prize_units = Column(BigInteger, nullable=False, default=0)
    tx_digest = Column(Text, nullable=False, default="")
    event_seq = Column(BigInteger, nullable=False, default=0)
    emitted_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    raw_event = Column(JSON().with_variant(postgresql.JSONB(), "postgresql"), nullable=True)


class LotteryIndexerState(Base):
    """Singleton cursor row (maps to 'lottery_indexer_state')."""

    __tablename__ = "lottery_indexer_state"

    singleton = Column(Boolean, primary_key=True, default=True)
    cursor = Column(JSON().with_variant(postgresql.JSONB(), "postgresql"), nullable=True)


def normalize_database_url(url: Optional[str]) -> str:
    """Map provider-style `postgres://` URLs onto the psycopg driver."""
    if not url:
        return DEFAULT_DATABASE_URL
    url = url.strip()
    for prefix in ("postgres://", "postgresql://"):
        if url.startswith(prefix):
            return "postgresql+psycopg://" + url[len(prefix):]
    return url


def _to_mirror(row: LotteryCreatedEvent) -> LotteryMirror:
    return LotteryMirror(
        lottery_id=row.lottery_id,
        creator=row.creator,
        deadline_ms=int(row.deadline_ms),
        total_prize_units=int(row.total_prize_units or 0),
        tx_digest=row.tx_digest or "",
        event_seq=int(row.event_seq or 0),
        emitted_at=row.emitted_at,
        raw_event=row.raw_event,
    )


class LotteryStore:
    """SQLAlchemy-backed mirror and cursor storage.

    Every method opens its own short session, so the store can be shared by
    the indexer, the watcher and the HTTP endpoint without extra locking.
    Driver failures are raised as `StoreError`.
    """

    def __init__(
        self,
        url: Optional[str] = None,
        *,
        connect_timeout: int = 10,
        timeout: float = DEFAULT_STORE_TIMEOUT,
        echo: bool = False,
    ) -> None:
        self.url = normalize_database_url(url)
        self.timeout = float(timeout)
        engine_args: dict = {"echo": echo, "pool_pre_ping": True}
        if self.url.startswith("sqlite"):
            # busy timeout for locked database files
            engine_args["connect_args"] = {"check_same_thread": False, "timeout": self.timeout}
        elif self.url.startswith("postgresql"):
            engine_args["connect_args"] = {
                "connect_timeout": connect_timeout,
                "options": f"-c statement_timeout={int(self.timeout * 1000)}",
            }
            engine_args["pool_timeout"] = self.timeout
        try:
            self.engine = create_engine(self.url, **engine_args)
        except (SQLAlchemyError, ImportError) as exc:
            raise ConfigurationError(f"Unusable DATABASE_URL: {exc}") from exc
        if self.engine.dialect.name not in ("postgresql", "sqlite"):
            raise ConfigurationError(f"Unsupported database dialect: {self.engine.dialect.name}")
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)

    @contextmanager
    def _session(self, what: str) -> Iterator[Session]:
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise StoreError(f"{what} failed: {exc.__class__.__name__}") from exc
        finally:
            session.close()

    def _insert(self, table):
        if self.engine.dialect.name == "postgresql":
            return postgresql.insert(table)
        return sqlite.insert(table)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def initialize(self) -> None:
        """Create tables if missing and make sure the cursor row exists."""
        try:
            Base.metadata.create_all(self.engine)
        except SQLAlchemyError as exc:
            raise StoreError(f"schema setup failed: {exc.__class__.__name__}") from exc
        with self._session("seed cursor") as session:
            stmt = self._insert(LotteryIndexerState.__table__).values(singleton=True, cursor=None)
            session.execute(stmt.on_conflict_do_nothing(index_elements=["singleton"]))
        logger.info("Store ready at %s", self.engine.url.render_as_string(hide_password=True))

    def close(self) -> None:
        self.engine.dispose()

    # ------------------------------------------------------------------
    # Mirror
    # ------------------------------------------------------------------
    def upsert_lottery(self, mirror: LotteryMirror) -> None:
        """Insert or wholesale-replace the row for `mirror.lottery_id`."""
        values = {
            "lottery_id": mirror.lottery_id,
            "creator": mirror.creator,
            "deadline_ms": int(mirror.deadline_ms),
            "total_prize_units": int(mirror.total_prize_units),
            "tx_digest": mirror.tx_digest or "",
            "event_seq": int(mirror.event_seq),
            "emitted_at": mirror.emitted_at or utcnow(),
            "raw_event": mirror.raw_event,
        }
        stmt = self._insert(LotteryCreatedEvent.__table__).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["lottery_id"],
            set_={name: stmt.excluded[name] for name in values if name != "lottery_id"},
        )
        with self._session(f"upsert lottery {mirror.lottery_id}") as session:
            session.execute(stmt)

    def get_lottery(self, lottery_id: str) -> Optional[LotteryMirror]:
        with self._session("get lottery") as session:
            row = session.get(LotteryCreatedEvent, lottery_id)
            return _to_mirror(row) if row else None

    def list_expired(self, now_ms: int, limit: int) -> List[LotteryMirror]:
        """Rows with `deadline_ms <= now_ms`, oldest deadline first."""
        query = (
            select(LotteryCreatedEvent)
            .where(LotteryCreatedEvent.deadline_ms <= int(now_ms))
            .order_by(LotteryCreatedEvent.deadline_ms.asc(), LotteryCreatedEvent.lottery_id.asc())
            .limit(int(limit))
        )
        with self._session("list expired lotteries") as session:
            return [_to_mirror(row) for row in session.scalars(query)]

    def list_recent(self, limit: int = 50) -> List[LotteryMirror]:
        """Newest `emitted_at` first."""
        query = (
            select(LotteryCreatedEvent)
            .order_by(LotteryCreatedEvent.emitted_at.desc(), LotteryCreatedEvent.lottery_id.asc())
            .limit(int(limit))
        )
        with self._session("list lotteries") as session:
            return [_to_mirror(row) for row in session.scalars(query)]

    def count_lotteries(self) -> int:
        with self._session("count lotteries") as session:
            return int(session.scalar(select(func.count()).select_from(LotteryCreatedEvent)) or 0)

    # ------------------------------------------------------------------
    # Cursor
    # ------------------------------------------------------------------
    def get_cursor(self) -> Optional[EventCursor]:
        with self._session("load cursor") as session:
            row = session.get(LotteryIndexerState, True)
            return EventCursor.from_json(row.cursor) if row else None

    def save_cursor(self, cursor: EventCursor) -> None:
        stmt = self._insert(LotteryIndexerState.__table__).values(singleton=True, cursor=cursor.to_json())
        stmt = stmt.on_conflict_do_update(index_elements=["singleton"], set_={"cursor": stmt.excluded.cursor})
        with self._session("save cursor") as session:
            session.execute(stmt)
