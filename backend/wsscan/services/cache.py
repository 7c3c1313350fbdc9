from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

import structlog
from pydantic import BaseModel, Field, ValidationError
from sqlalchemy.orm import sessionmaker

from wsscan import models
from wsscan.config import Settings, get_settings
from wsscan.db.session import make_session_factory
from wsscan.schemas import IssueAggregate
from wsscan.utils import as_utc, utc_now

logger = structlog.get_logger(__name__)

# Bump when the serialized IssueAggregate shape changes; older records become misses.
CURRENT_VERSION = 1
DEFAULT_TTL = timedelta(days=7)


class CacheRecord(BaseModel):
    data: Optional[IssueAggregate] = None
    timestamp: datetime = Field(default_factory=utc_now)
    version: int = CURRENT_VERSION

    def is_valid(self, now: datetime | None = None, ttl: timedelta = DEFAULT_TTL) -> bool:
        if self.data is None or self.version != CURRENT_VERSION:
            return False
        age = as_utc(now or utc_now()) - as_utc(self.timestamp)
        return age <= ttl


class ResultCache:
    """Key/value store of the last IssueAggregate per workspace."""

    def __init__(
        self,
        settings: Settings | None = None,
        session_factory: sessionmaker | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.ttl = timedelta(days=self.settings.cache_ttl_days)
        self._session_factory = session_factory

    @property
    def session_factory(self) -> sessionmaker:
        if self._session_factory is None:
            self._session_factory = make_session_factory(self.settings.cache_url)
        return self._session_factory

    def store(self, key: str, aggregate: IssueAggregate, now: datetime | None = None) -> CacheRecord:
        record = CacheRecord(data=aggregate, timestamp=now or utc_now())
        db = self.session_factory()
        try:
            entry = db.get(models.CacheEntry, key)
            if entry is None:
                entry = models.CacheEntry(key=key, value="")
                db.add(entry)
            entry.value = record.model_dump_json()
            db.commit()
        finally:
            db.close()
        logger.debug("cache.stored", key=key, version=record.version)
        return record

    def load_record(self, key: str) -> CacheRecord | None:
        """The stored record as is, without the validity check. Unreadable records load as ``None``."""
        db = self.session_factory()
        try:
            entry = db.get(models.CacheEntry, key)
            value = entry.value if entry else None
        finally:
            db.close()
        if value is None:
            return None
        try:
            return CacheRecord.model_validate_json(value)
        except ValidationError as exc:
            logger.warning("cache.unreadable", key=key, error=str(exc))
            return None

    def load(self, key: str, now: datetime | None = None) -> IssueAggregate | None:
        record = self.load_record(key)
        if record is None:
            return None
        if not record.is_valid(now, self.ttl):
            logger.info("cache.expired", key=key, version=record.version, timestamp=record.timestamp.isoformat())
            return None
        return record.data

    def remove(self, key: str) -> bool:
        db = self.session_factory()
        try:
            entry = db.get(models.CacheEntry, key)
            if entry is None:
                return False
            db.delete(entry)
            db.commit()
            return True
        finally:
            db.close()
