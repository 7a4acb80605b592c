"""
Scoped key/value storage for persisted session state.
MemoryStorage lives as long as the process; SqlStorage keeps state in a SQLite (or any
SQLAlchemy) database so it survives a restart, the way browser storage survives a reload.
Keys are prefixed with a namespace so several sessions can share one database.
"""
from datetime import datetime, timezone

from sqlalchemy import DateTime, String, Text, create_engine, delete, select
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from session_client.config import STORAGE_NAMESPACE, STORAGE_URL


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    pass


class SessionState(Base):
    __tablename__ = "session_state"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=_utc_now, onupdate=_utc_now)


class MemoryStorage:
    """Dict-backed storage. Used when no storage URL is configured and in tests."""

    def __init__(self, namespace: str = STORAGE_NAMESPACE) -> None:
        self.namespace = namespace
        self._data: dict[str, str] = {}

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    def get(self, key: str) -> str | None:
        return self._data.get(self._key(key))

    def set(self, key: str, value: str) -> None:
        self._data[self._key(key)] = value

    def delete(self, key: str) -> None:
        self._data.pop(self._key(key), None)


class SqlStorage:
    """
    SQLAlchemy-backed storage. One row per namespaced key in table session_state.
    In-memory SQLite needs StaticPool so every connection sees the same database.
    """

    def __init__(self, url: str, namespace: str = STORAGE_NAMESPACE) -> None:
        self.namespace = namespace
        if url.startswith("sqlite:///:memory:") or url == "sqlite://":
            self.engine = create_engine(
                url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            connect_args = {"check_same_thread": False} if "sqlite" in url else {}
            self.engine = create_engine(url, connect_args=connect_args)
        self._sessions = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)
        Base.metadata.create_all(bind=self.engine)

    def _key(self, key: str) -> str:
        return f"{self.namespace}:{key}"

    def get(self, key: str) -> str | None:
        with self._sessions() as db:
            row = db.get(SessionState, self._key(key))
            return row.value if row else None

    def set(self, key: str, value: str) -> None:
        with self._sessions() as db:
            row = db.get(SessionState, self._key(key))
            if row is None:
                db.add(SessionState(key=self._key(key), value=value))
            else:
                row.value = value
            db.commit()

    def delete(self, key: str) -> None:
        with self._sessions() as db:
            db.execute(delete(SessionState).where(SessionState.key == self._key(key)))
            db.commit()

    def keys(self) -> list[str]:
        """Un-prefixed keys stored under this namespace."""
        prefix = f"{self.namespace}:"
        with self._sessions() as db:
            rows = db.scalars(select(SessionState.key).where(SessionState.key.startswith(prefix))).all()
        return [k[len(prefix):] for k in rows]

    def close(self) -> None:
        self.engine.dispose()


def create_storage(url: str | None = None, namespace: str = STORAGE_NAMESPACE):
    """Storage for the configured URL; memory when the URL is empty."""
    url = STORAGE_URL if url is None else url
    if not url:
        return MemoryStorage(namespace)
    return SqlStorage(url, namespace)
