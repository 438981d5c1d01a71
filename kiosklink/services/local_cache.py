"""Local identity cache backed by the on-device SQLite file."""
import logging
from typing import Dict, Optional
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from kiosklink.db.models import CacheEntry

logger = logging.getLogger(__name__)

ID_KEY = "screen_id"
CODE_KEY = "screen_code"
NAME_KEY = "screen_name"
PATH_KEY = "last_path"

IDENTITY_KEYS = (ID_KEY, CODE_KEY, PATH_KEY)


class LocalCache:
    """
    Key-value cache for the device identity.

    Durability is not guaranteed: the file may be wiped between boots, so a
    read failure is treated the same as a missing key. Every write and
    removal is also kept in memory for the life of the process, so a write
    the file rejects is still seen by later reads; only the next boot loses
    it and recovers through the store instead.
    """

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory
        # None marks a removed key
        self._memory: Dict[str, Optional[str]] = {}

    def _session(self) -> Session:
        return self._session_factory()

    def get(self, key: str) -> Optional[str]:
        if key in self._memory:
            return self._memory[key]
        db = self._session()
        try:
            entry = db.query(CacheEntry).filter(CacheEntry.key == key).first()
            return entry.value if entry else None
        except SQLAlchemyError as e:
            logger.warning(f"Cache read failed for {key}, treating as empty: {e}")
            return None
        finally:
            db.close()

    def set(self, key: str, value: str) -> None:
        self._memory[key] = value
        db = self._session()
        try:
            entry = db.query(CacheEntry).filter(CacheEntry.key == key).first()
            if entry:
                entry.value = value
            else:
                db.add(CacheEntry(key=key, value=value))
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.warning(f"Cache write failed for {key}: {e}")
        finally:
            db.close()

    def remove(self, *keys: str) -> None:
        for key in keys:
            self._memory[key] = None
        db = self._session()
        try:
            db.query(CacheEntry).filter(CacheEntry.key.in_(keys)).delete(synchronize_session=False)
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.warning(f"Cache delete failed for {keys}: {e}")
        finally:
            db.close()

    # Typed helpers for the fixed keys

    @property
    def screen_id(self) -> Optional[str]:
        return self.get(ID_KEY)

    @property
    def code(self) -> Optional[str]:
        return self.get(CODE_KEY)

    @property
    def hostname(self) -> Optional[str]:
        return self.get(NAME_KEY)

    @property
    def last_path(self) -> Optional[str]:
        return self.get(PATH_KEY)

    def remember_identity(self, screen_id: str, code: Optional[str] = None) -> None:
        self.set(ID_KEY, screen_id)
        if code:
            self.set(CODE_KEY, code)

    def remember_hostname(self, hostname: str) -> None:
        self.set(NAME_KEY, hostname)

    def remember_path(self, path: str) -> None:
        self.set(PATH_KEY, path)

    def purge_identity(self) -> None:
        """Forget id, code and last path. The hostname is kept; it is re-supplied on every boot anyway."""
        logger.info("Purging cached screen identity")
        self.remove(*IDENTITY_KEYS)
