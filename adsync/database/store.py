"""
Persistent Store (L2)

Atomic upserts and range scans for every engine record.

Two implementations share the ``PersistentStore`` interface:
- InMemoryStore: process-local dictionaries, used in tests and single-node runs
- SqlAlchemyStore: async SQLAlchemy over the document tables
"""

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import date, datetime, timezone
from typing import AsyncGenerator, Dict, Iterable, List, Optional, Tuple

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from adsync.core.models import (
    AnomalyRecord,
    AnomalyStatus,
    CacheEntry,
    DateRange,
    GapRecord,
    GapSeverity,
    PerformanceSnapshot,
    RetrievalSession,
    TimelinePoint,
    utc_now,
)
from adsync.database.connection import get_db
from adsync.database.models import (
    AnomalyRow,
    CacheEntryRow,
    GapRow,
    PerformanceSnapshotRow,
    RetrievalSessionRow,
    TimelinePointRow,
)
from adsync.exceptions import CacheWriteError, NotFoundError, StoreUnavailable

logger = structlog.get_logger(__name__)


def _naive_utc(value: datetime) -> datetime:
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def _sort_points(points: Iterable[TimelinePoint]) -> List[TimelinePoint]:
    return sorted(points, key=lambda p: (p.ad_id, p.date))


class PersistentStore(ABC):
    """Durable record store consumed by the engine"""

    # Sessions
    @abstractmethod
    async def upsert_session(self, session: RetrievalSession) -> None: ...

    @abstractmethod
    async def get_session(self, session_id: str) -> Optional[RetrievalSession]: ...

    # Timeline
    @abstractmethod
    async def upsert_points(self, points: List[TimelinePoint]) -> int: ...

    @abstractmethod
    async def get_points(
        self,
        account_id: str,
        date_range: DateRange,
        ad_id: Optional[str] = None,
    ) -> List[TimelinePoint]:
        """Points in range ordered by (ad_id, date)"""

    # Anomalies
    @abstractmethod
    async def insert_anomalies(self, records: List[AnomalyRecord]) -> int:
        """Insert records whose id is unknown; existing ids are left untouched"""

    @abstractmethod
    async def get_anomalies(
        self,
        ad_id: str,
        status: Optional[AnomalyStatus] = None,
    ) -> List[AnomalyRecord]: ...

    @abstractmethod
    async def set_anomaly_status(
        self,
        anomaly_id: str,
        status: AnomalyStatus,
        notes: Optional[str] = None,
    ) -> AnomalyRecord: ...

    @abstractmethod
    async def count_anomalies(self, account_id: str) -> Dict[str, int]:
        """Anomaly counts per status for an account"""

    # Gaps
    @abstractmethod
    async def upsert_gaps(self, gaps: List[GapRecord]) -> int: ...

    @abstractmethod
    async def get_gaps(
        self,
        ad_id: str,
        severity: Optional[GapSeverity] = None,
    ) -> List[GapRecord]:
        """Gaps for an ad, most recent start first"""

    @abstractmethod
    async def get_account_gaps(self, account_id: str) -> List[GapRecord]: ...

    @abstractmethod
    async def delete_gaps(self, gap_ids: Iterable[str]) -> int:
        """Remove gaps that later data showed were not gaps"""

    # Cache entries
    @abstractmethod
    async def get_cache_entry(self, cache_key: str) -> Optional[CacheEntry]: ...

    @abstractmethod
    async def upsert_cache_entry(self, entry: CacheEntry) -> None:
        """Raises CacheWriteError when the write cannot be persisted"""

    @abstractmethod
    async def list_cache_entries(self, account_id: Optional[str] = None) -> List[CacheEntry]: ...

    @abstractmethod
    async def delete_cache_entry(self, cache_key: str) -> bool: ...

    @abstractmethod
    async def purge_expired_cache(self, now: Optional[datetime] = None) -> int: ...

    # Telemetry
    @abstractmethod
    async def upsert_snapshot(self, snapshot: PerformanceSnapshot) -> None: ...

    @abstractmethod
    async def get_snapshot(self, account_id: str, stat_date: date) -> Optional[PerformanceSnapshot]: ...

    async def close(self) -> None:
        return None


class InMemoryStore(PersistentStore):
    """
    Dictionary-backed store.

    Every method completes without awaiting, so each call is atomic with
    respect to other coroutines on the loop. Records are copied on the way
    in and out.
    """

    def __init__(self):
        self.sessions: Dict[str, RetrievalSession] = {}
        self.points: Dict[Tuple[str, str, date], TimelinePoint] = {}
        self.anomalies: Dict[str, AnomalyRecord] = {}
        self.gaps: Dict[str, GapRecord] = {}
        self.cache_entries: Dict[str, CacheEntry] = {}
        self.snapshots: Dict[Tuple[str, date], PerformanceSnapshot] = {}

    async def upsert_session(self, session: RetrievalSession) -> None:
        self.sessions[session.id] = session.model_copy(deep=True)

    async def get_session(self, session_id: str) -> Optional[RetrievalSession]:
        session = self.sessions.get(session_id)
        return session.model_copy(deep=True) if session else None

    async def upsert_points(self, points: List[TimelinePoint]) -> int:
        for point in points:
            self.points[point.key] = point.model_copy(deep=True)
        return len(points)

    async def get_points(
        self,
        account_id: str,
        date_range: DateRange,
        ad_id: Optional[str] = None,
    ) -> List[TimelinePoint]:
        return _sort_points(
            p.model_copy(deep=True) for p in self.points.values()
            if p.account_id == account_id
            and date_range.contains(p.date)
            and (ad_id is None or p.ad_id == ad_id)
        )

    async def insert_anomalies(self, records: List[AnomalyRecord]) -> int:
        inserted = 0
        for record in records:
            if record.id not in self.anomalies:
                self.anomalies[record.id] = record.model_copy(deep=True)
                inserted += 1
        return inserted

    async def get_anomalies(
        self,
        ad_id: str,
        status: Optional[AnomalyStatus] = None,
    ) -> List[AnomalyRecord]:
        found = [
            a.model_copy(deep=True) for a in self.anomalies.values()
            if a.ad_id == ad_id and (status is None or a.status == status)
        ]
        return sorted(found, key=lambda a: (a.date_range.start, a.id), reverse=True)

    async def set_anomaly_status(
        self,
        anomaly_id: str,
        status: AnomalyStatus,
        notes: Optional[str] = None,
    ) -> AnomalyRecord:
        record = self.anomalies.get(anomaly_id)
        if record is None:
            raise NotFoundError(f"Anomaly {anomaly_id} not found")
        record.status = status
        record.resolved_at = utc_now() if status == AnomalyStatus.RESOLVED else None
        if notes is not None:
            record.notes = notes
        return record.model_copy(deep=True)

    async def count_anomalies(self, account_id: str) -> Dict[str, int]:
        counts = {s.value: 0 for s in AnomalyStatus}
        for record in self.anomalies.values():
            if record.account_id == account_id:
                counts[record.status.value] += 1
        return counts

    async def upsert_gaps(self, gaps: List[GapRecord]) -> int:
        for gap in gaps:
            self.gaps[gap.id] = gap.model_copy(deep=True)
        return len(gaps)

    async def get_gaps(
        self,
        ad_id: str,
        severity: Optional[GapSeverity] = None,
    ) -> List[GapRecord]:
        found = [
            g.model_copy(deep=True) for g in self.gaps.values()
            if g.ad_id == ad_id and (severity is None or g.severity == severity)
        ]
        return sorted(found, key=lambda g: g.start_date, reverse=True)

    async def get_account_gaps(self, account_id: str) -> List[GapRecord]:
        found = [g.model_copy(deep=True) for g in self.gaps.values() if g.account_id == account_id]
        return sorted(found, key=lambda g: g.start_date, reverse=True)

    async def delete_gaps(self, gap_ids: Iterable[str]) -> int:
        return sum(1 for gap_id in list(gap_ids) if self.gaps.pop(gap_id, None) is not None)

    async def get_cache_entry(self, cache_key: str) -> Optional[CacheEntry]:
        entry = self.cache_entries.get(cache_key)
        return entry.model_copy(deep=True) if entry else None

    async def upsert_cache_entry(self, entry: CacheEntry) -> None:
        self.cache_entries[entry.cache_key] = entry.model_copy(deep=True)

    async def list_cache_entries(self, account_id: Optional[str] = None) -> List[CacheEntry]:
        return [
            e.model_copy(deep=True) for e in self.cache_entries.values()
            if account_id is None or e.account_id == account_id
        ]

    async def delete_cache_entry(self, cache_key: str) -> bool:
        return self.cache_entries.pop(cache_key, None) is not None

    async def purge_expired_cache(self, now: Optional[datetime] = None) -> int:
        now = now or utc_now()
        expired = [k for k, e in self.cache_entries.items() if e.is_expired(now)]
        for key in expired:
            del self.cache_entries[key]
        return len(expired)

    async def upsert_snapshot(self, snapshot: PerformanceSnapshot) -> None:
        self.snapshots[(snapshot.account_id, snapshot.stat_date)] = snapshot.model_copy(deep=True)

    async def get_snapshot(self, account_id: str, stat_date: date) -> Optional[PerformanceSnapshot]:
        snapshot = self.snapshots.get((account_id, stat_date))
        return snapshot.model_copy(deep=True) if snapshot else None


class SqlAlchemyStore(PersistentStore):
    """
    Store over the document tables using async SQLAlchemy sessions.

    Example:
        engine = await init_database()
        store = SqlAlchemyStore(get_session_factory())
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory

    @asynccontextmanager
    async def _transaction(self) -> AsyncGenerator[AsyncSession, None]:
        try:
            async with get_db(self._session_factory) as session:
                yield session
        except SQLAlchemyError as e:
            raise StoreUnavailable(str(e)) from e

    async def upsert_session(self, session: RetrievalSession) -> None:
        async with self._transaction() as db:
            await db.merge(RetrievalSessionRow(
                id=session.id,
                account_id=session.account_id,
                range_key=session.date_range.key,
                status=session.status.value,
                requested_at=_naive_utc(session.requested_at),
                document=session.model_dump(mode="json"),
            ))

    async def get_session(self, session_id: str) -> Optional[RetrievalSession]:
        async with self._transaction() as db:
            row = await db.get(RetrievalSessionRow, session_id)
            return RetrievalSession.model_validate(row.document) if row else None

    async def upsert_points(self, points: List[TimelinePoint]) -> int:
        async with self._transaction() as db:
            for point in points:
                await db.merge(TimelinePointRow(
                    account_id=point.account_id,
                    ad_id=point.ad_id,
                    day=point.date,
                    has_delivery=int(point.has_delivery),
                    document=point.model_dump(mode="json"),
                ))
        return len(points)

    async def get_points(
        self,
        account_id: str,
        date_range: DateRange,
        ad_id: Optional[str] = None,
    ) -> List[TimelinePoint]:
        query = select(TimelinePointRow).where(
            TimelinePointRow.account_id == account_id,
            TimelinePointRow.day >= date_range.start,
            TimelinePointRow.day <= date_range.end,
        )
        if ad_id is not None:
            query = query.where(TimelinePointRow.ad_id == ad_id)
        query = query.order_by(TimelinePointRow.ad_id, TimelinePointRow.day)

        async with self._transaction() as db:
            rows = (await db.execute(query)).scalars().all()
            return [TimelinePoint.model_validate(row.document) for row in rows]

    async def insert_anomalies(self, records: List[AnomalyRecord]) -> int:
        inserted = 0
        async with self._transaction() as db:
            for record in records:
                if await db.get(AnomalyRow, record.id) is not None:
                    continue
                db.add(AnomalyRow(
                    id=record.id,
                    account_id=record.account_id,
                    ad_id=record.ad_id,
                    status=record.status.value,
                    day=record.date_range.start,
                    document=record.model_dump(mode="json"),
                ))
                inserted += 1
        return inserted

    async def get_anomalies(
        self,
        ad_id: str,
        status: Optional[AnomalyStatus] = None,
    ) -> List[AnomalyRecord]:
        query = select(AnomalyRow).where(AnomalyRow.ad_id == ad_id)
        if status is not None:
            query = query.where(AnomalyRow.status == status.value)
        query = query.order_by(AnomalyRow.day.desc(), AnomalyRow.id.desc())

        async with self._transaction() as db:
            rows = (await db.execute(query)).scalars().all()
            return [AnomalyRecord.model_validate(row.document) for row in rows]

    async def set_anomaly_status(
        self,
        anomaly_id: str,
        status: AnomalyStatus,
        notes: Optional[str] = None,
    ) -> AnomalyRecord:
        async with self._transaction() as db:
            row = await db.get(AnomalyRow, anomaly_id)
            if row is None:
                raise NotFoundError(f"Anomaly {anomaly_id} not found")
            record = AnomalyRecord.model_validate(row.document)
            record.status = status
            record.resolved_at = utc_now() if status == AnomalyStatus.RESOLVED else None
            if notes is not None:
                record.notes = notes
            row.status = status.value
            row.document = record.model_dump(mode="json")
            return record

    async def count_anomalies(self, account_id: str) -> Dict[str, int]:
        query = (
            select(AnomalyRow.status, func.count())
            .where(AnomalyRow.account_id == account_id)
            .group_by(AnomalyRow.status)
        )
        counts = {s.value: 0 for s in AnomalyStatus}
        async with self._transaction() as db:
            for status, count in (await db.execute(query)).all():
                counts[status] = count
        return counts

    async def upsert_gaps(self, gaps: List[GapRecord]) -> int:
        async with self._transaction() as db:
            for gap in gaps:
                await db.merge(GapRow(
                    id=gap.id,
                    account_id=gap.account_id,
                    ad_id=gap.ad_id,
                    start_date=gap.start_date,
                    severity=gap.severity.value,
                    document=gap.model_dump(mode="json"),
                ))
        return len(gaps)

    async def get_gaps(
        self,
        ad_id: str,
        severity: Optional[GapSeverity] = None,
    ) -> List[GapRecord]:
        query = select(GapRow).where(GapRow.ad_id == ad_id)
        if severity is not None:
            query = query.where(GapRow.severity == severity.value)
        query = query.order_by(GapRow.start_date.desc())

        async with self._transaction() as db:
            rows = (await db.execute(query)).scalars().all()
            return [GapRecord.model_validate(row.document) for row in rows]

    async def get_account_gaps(self, account_id: str) -> List[GapRecord]:
        query = select(GapRow).where(GapRow.account_id == account_id).order_by(GapRow.start_date.desc())
        async with self._transaction() as db:
            rows = (await db.execute(query)).scalars().all()
            return [GapRecord.model_validate(row.document) for row in rows]

    async def delete_gaps(self, gap_ids: Iterable[str]) -> int:
        gap_ids = list(gap_ids)
        if not gap_ids:
            return 0
        async with self._transaction() as db:
            result = await db.execute(delete(GapRow).where(GapRow.id.in_(gap_ids)))
            return result.rowcount or 0

    async def get_cache_entry(self, cache_key: str) -> Optional[CacheEntry]:
        async with self._transaction() as db:
            row = await db.get(CacheEntryRow, cache_key)
            return CacheEntry.model_validate(row.document) if row else None

    async def upsert_cache_entry(self, entry: CacheEntry) -> None:
        try:
            async with self._transaction() as db:
                await db.merge(CacheEntryRow(
                    cache_key=entry.cache_key,
                    account_id=entry.account_id,
                    expires_at=_naive_utc(entry.expires_at),
                    document=entry.model_dump(mode="json"),
                ))
        except StoreUnavailable as e:
            raise CacheWriteError(f"Cache entry {entry.cache_key} not persisted: {e}") from e

    async def list_cache_entries(self, account_id: Optional[str] = None) -> List[CacheEntry]:
        query = select(CacheEntryRow)
        if account_id is not None:
            query = query.where(CacheEntryRow.account_id == account_id)
        async with self._transaction() as db:
            rows = (await db.execute(query)).scalars().all()
            return [CacheEntry.model_validate(row.document) for row in rows]

    async def delete_cache_entry(self, cache_key: str) -> bool:
        async with self._transaction() as db:
            result = await db.execute(delete(CacheEntryRow).where(CacheEntryRow.cache_key == cache_key))
            return result.rowcount > 0

    async def purge_expired_cache(self, now: Optional[datetime] = None) -> int:
        cutoff = _naive_utc(now or utc_now())
        async with self._transaction() as db:
            result = await db.execute(delete(CacheEntryRow).where(CacheEntryRow.expires_at < cutoff))
        purged = result.rowcount or 0
        if purged:
            logger.info("Purged expired cache entries", count=purged)
        return purged

    async def upsert_snapshot(self, snapshot: PerformanceSnapshot) -> None:
        async with self._transaction() as db:
            await db.merge(PerformanceSnapshotRow(
                account_id=snapshot.account_id,
                stat_date=snapshot.stat_date,
                document=snapshot.model_dump(mode="json"),
            ))

    async def get_snapshot(self, account_id: str, stat_date: date) -> Optional[PerformanceSnapshot]:
        async with self._transaction() as db:
            row = await db.get(PerformanceSnapshotRow, (account_id, stat_date))
            return PerformanceSnapshot.model_validate(row.document) if row else None
