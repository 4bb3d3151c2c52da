from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import IntegrityError

from kommo_bridge.database import Base
from kommo_bridge.models.kv_entry import KVEntry
from kommo_bridge.services.store.base import KeyValueStore


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SqlStore(KeyValueStore):
    """Store backed by the ``kv_entries`` table.

    Insert-if-absent relies on the primary key; compare-and-swap is a conditional
    UPDATE whose rowcount tells whether this caller won.
    """

    def __init__(self, session_factory, create_tables: bool = False):
        self._session_factory = session_factory
        if create_tables:
            with session_factory() as db:
                Base.metadata.create_all(bind=db.get_bind(), tables=[KVEntry.__table__])

    @staticmethod
    def _expires_at(now: datetime, ttl: Optional[float]) -> Optional[datetime]:
        return now + timedelta(seconds=ttl) if ttl else None

    @staticmethod
    def _not_expired(now: datetime):
        return or_(KVEntry.expires_at.is_(None), KVEntry.expires_at > now)

    async def get(self, key: str) -> Optional[str]:
        now = _utcnow()
        with self._session_factory() as db:
            return db.execute(
                select(KVEntry.value).where(KVEntry.key == key, self._not_expired(now))
            ).scalar_one_or_none()

    async def set(self, key: str, value: str, ttl: Optional[float] = None) -> None:
        now = _utcnow()
        expires_at = self._expires_at(now, ttl)
        with self._session_factory() as db:
            result = db.execute(
                update(KVEntry)
                .where(KVEntry.key == key)
                .values(value=value, expires_at=expires_at, updated_at=now)
            )
            if result.rowcount == 0:
                db.add(KVEntry(key=key, value=value, expires_at=expires_at, updated_at=now))
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                db.execute(
                    update(KVEntry)
                    .where(KVEntry.key == key)
                    .values(value=value, expires_at=expires_at, updated_at=now)
                )
                db.commit()

    async def set_if_absent(self, key: str, value: str, ttl: Optional[float] = None) -> bool:
        now = _utcnow()
        with self._session_factory() as db:
            db.execute(
                delete(KVEntry).where(
                    KVEntry.key == key, KVEntry.expires_at.is_not(None), KVEntry.expires_at <= now
                )
            )
            db.add(KVEntry(key=key, value=value, expires_at=self._expires_at(now, ttl), updated_at=now))
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                return False
        return True

    async def compare_and_swap(
        self, key: str, expected: Optional[str], new: str, ttl: Optional[float] = None
    ) -> bool:
        if expected is None:
            return await self.set_if_absent(key, new, ttl)
        now = _utcnow()
        with self._session_factory() as db:
            result = db.execute(
                update(KVEntry)
                .where(KVEntry.key == key, KVEntry.value == expected, self._not_expired(now))
                .values(value=new, expires_at=self._expires_at(now, ttl), updated_at=now)
            )
            db.commit()
            return result.rowcount == 1

    async def delete(self, key: str) -> None:
        with self._session_factory() as db:
            db.execute(delete(KVEntry).where(KVEntry.key == key))
            db.commit()

    async def delete_if_equals(self, key: str, expected: str) -> bool:
        now = _utcnow()
        with self._session_factory() as db:
            result = db.execute(
                delete(KVEntry).where(KVEntry.key == key, KVEntry.value == expected, self._not_expired(now))
            )
            db.commit()
            return result.rowcount > 0

    async def purge_expired(self) -> int:
        now = _utcnow()
        with self._session_factory() as db:
            result = db.execute(
                delete(KVEntry).where(KVEntry.expires_at.is_not(None), KVEntry.expires_at <= now)
            )
            db.commit()
            return result.rowcount
