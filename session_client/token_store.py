"""
Token store: the single holder of the current credential and session timestamps.
One instance is shared by every sub-client (passed in at construction). Observers are
held weakly and notified synchronously on set/clear, so a read right after login or
logout already sees the new value.
Never raises: storage failures are logged and the in-memory cache stays authoritative.
Never logs tokens.
"""
import json
import logging
import time
import weakref
from dataclasses import asdict, dataclass, replace
from typing import Any, Callable

from session_client.config import SESSION_TTL
from session_client.storage import MemoryStorage

logger = logging.getLogger(__name__)

CREDENTIAL_KEY = "credential"
LAST_ACTIVITY_KEY = "last_activity"


@dataclass(frozen=True)
class Credential:
    access_token: str
    issued_at: float
    session_expires_at: float
    refresh_token: str | None = None

    def remaining(self, now: float | None = None) -> float:
        """Seconds until the session expires (never negative)."""
        now = time.time() if now is None else now
        return max(0.0, self.session_expires_at - now)

    def is_expired(self, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        return now >= self.session_expires_at

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Credential":
        token = data["access_token"]
        if not isinstance(token, str) or not token:
            raise ValueError("access_token must be a non-empty string")
        refresh = data.get("refresh_token")
        return cls(
            access_token=token,
            issued_at=float(data["issued_at"]),
            session_expires_at=float(data["session_expires_at"]),
            refresh_token=refresh if isinstance(refresh, str) and refresh else None,
        )


class TokenStore:
    def __init__(
        self,
        storage=None,
        *,
        session_ttl: float = SESSION_TTL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._storage = storage if storage is not None else MemoryStorage()
        self.session_ttl = session_ttl
        self._clock = clock
        self._observers: "weakref.WeakSet[Any]" = weakref.WeakSet()
        self._loaded = False
        self._credential: Credential | None = None

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------
    def register(self, observer) -> None:
        """
        Register an observer with a credential_changed(credential) method. The store keeps
        only a weak reference; observers are never kept alive by registration.
        """
        self._observers.add(observer)

    def unregister(self, observer) -> None:
        self._observers.discard(observer)

    @property
    def observer_count(self) -> int:
        return len(self._observers)

    def _notify(self) -> None:
        credential = self._credential
        for observer in list(self._observers):
            try:
                observer.credential_changed(credential)
            except Exception:
                logger.exception("Credential observer %r failed", observer)

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------
    def _read(self, key: str) -> str | None:
        try:
            return self._storage.get(key)
        except Exception as e:
            logger.warning("Session storage read failed for %s: %s", key, e)
            return None

    def _write(self, key: str, value: str) -> None:
        try:
            self._storage.set(key, value)
        except Exception as e:
            logger.warning("Session storage write failed for %s: %s", key, e)

    def _remove(self, key: str) -> None:
        try:
            self._storage.delete(key)
        except Exception as e:
            logger.warning("Session storage delete failed for %s: %s", key, e)

    def _load(self) -> None:
        self._loaded = True
        raw = self._read(CREDENTIAL_KEY)
        if not raw:
            self._credential = None
            return
        try:
            self._credential = Credential.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as e:
            # Malformed persisted data counts as no credential
            logger.warning("Ignoring malformed persisted credential: %s", e)
            self._credential = None

    def _persist(self) -> None:
        if self._credential is None:
            self._remove(CREDENTIAL_KEY)
        else:
            self._write(CREDENTIAL_KEY, json.dumps(self._credential.to_dict()))

    # ------------------------------------------------------------------
    # Contract
    # ------------------------------------------------------------------
    def get(self) -> Credential | None:
        if not self._loaded:
            self._load()
        return self._credential

    def set(self, credential: Credential) -> None:
        """
        Replace the current credential wholesale. session_expires_at never moves backwards
        while a credential is current; a shorter expiry on refresh keeps the later one.
        """
        current = self.get()
        if current is not None and credential.session_expires_at < current.session_expires_at:
            credential = replace(credential, session_expires_at=current.session_expires_at)
        self._credential = credential
        self._persist()
        self._write(LAST_ACTIVITY_KEY, repr(self._clock()))
        self._notify()

    def clear(self) -> None:
        self._loaded = True
        self._credential = None
        self._remove(CREDENTIAL_KEY)
        self._remove(LAST_ACTIVITY_KEY)
        self._notify()

    def update_activity(self) -> None:
        """Bump last activity without touching the access token."""
        if self.get() is None:
            return
        self._write(LAST_ACTIVITY_KEY, repr(self._clock()))

    def update_session_expiry(self, ttl: float | None = None) -> None:
        """Push session_expires_at to now + ttl (never earlier than it already is)."""
        current = self.get()
        if current is None:
            return
        ttl = self.session_ttl if ttl is None else ttl
        expires_at = max(current.session_expires_at, self._clock() + ttl)
        if expires_at == current.session_expires_at:
            return
        self._credential = replace(current, session_expires_at=expires_at)
        self._persist()
        self._notify()

    def last_activity_at(self) -> float | None:
        raw = self._read(LAST_ACTIVITY_KEY)
        if raw is None:
            return None
        try:
            return float(raw)
        except ValueError:
            return None

    def remaining(self) -> float:
        """Seconds left in the current session; 0 when there is no credential."""
        credential = self.get()
        if credential is None:
            return 0.0
        return credential.remaining(self._clock())

    def is_session_expired(self) -> bool:
        credential = self.get()
        if credential is None:
            return False
        return credential.is_expired(self._clock())
