from typing import Dict, Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base, Session

from role_overrides.core.config import settings, shard_database_urls
from role_overrides.core.logging import get_logger
from role_overrides.permissions.exceptions import ShardNotFound

db_logger = get_logger(f'{settings.APP_NAME}.database')

# Base class for models
Base = declarative_base()


def to_global_id(shard_id: int, local_id: int) -> int:
    return shard_id * settings.SHARD_ID_SPAN + local_id


def shard_of(global_id: int) -> int:
    return global_id // settings.SHARD_ID_SPAN


def local_of(global_id: int) -> int:
    return global_id % settings.SHARD_ID_SPAN


@event.listens_for(Session, "before_flush")
def _stamp_shard_id(session, flush_context, instances):
    """New rows belong to the shard of the session that flushes them."""
    shard_id = session.info.get("shard_id", 0)
    for obj in session.new:
        if hasattr(obj, "shard_id") and obj.shard_id is None:
            obj.shard_id = shard_id


class ShardRouter:
    """
    Owns one async engine and session factory per shard.

    Every store call addresses a partition explicitly, either by shard id or by
    a global id whose shard is derived from the id itself.
    """

    def __init__(self, urls: Dict[int, str], echo: bool = False):
        if 0 not in urls:
            raise ValueError("shard 0 must be configured")
        self._engines: Dict[int, AsyncEngine] = {}
        self._sessions: Dict[int, async_sessionmaker] = {}
        for shard_id, url in urls.items():
            connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
            engine = create_async_engine(url, echo=echo, connect_args=connect_args)
            self._engines[shard_id] = engine
            self._sessions[shard_id] = async_sessionmaker(
                engine,
                class_=AsyncSession,
                expire_on_commit=False,
                info={"shard_id": shard_id},
            )

    @property
    def shard_ids(self) -> list[int]:
        return sorted(self._engines)

    def session(self, shard_id: int = 0) -> AsyncSession:
        try:
            factory = self._sessions[shard_id]
        except KeyError:
            raise ShardNotFound(shard_id) from None
        return factory()

    def session_for(self, global_id: int) -> AsyncSession:
        """Open a session on the shard that owns `global_id`."""
        return self.session(shard_of(global_id))

    def shard_for(self, global_id: int) -> int:
        shard_id = shard_of(global_id)
        if shard_id not in self._engines:
            raise ShardNotFound(shard_id)
        return shard_id

    def local_id(self, global_id: int) -> int:
        return local_of(global_id)

    async def create_all(self) -> None:
        for shard_id, engine in self._engines.items():
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            db_logger.debug("tables created", shard_id=shard_id)

    async def drop_all(self) -> None:
        for engine in self._engines.values():
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.drop_all)

    async def truncate_all(self) -> None:
        """Delete every row on every shard, keeping the schema."""
        for engine in self._engines.values():
            async with engine.begin() as conn:
                # reverse order to respect FK constraints
                for table in reversed(Base.metadata.sorted_tables):
                    await conn.execute(table.delete())

    async def dispose(self) -> None:
        for engine in self._engines.values():
            await engine.dispose()


_router: Optional[ShardRouter] = None


def get_router() -> ShardRouter:
    """Get or create the process-wide shard router from settings."""
    global _router

    if _router is None:
        _router = ShardRouter(shard_database_urls(), echo=settings.DEBUG)
        db_logger.info("Shard router initialized", shards=_router.shard_ids)
    return _router
