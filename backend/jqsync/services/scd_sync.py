"""
SCD Type 2 Synchronizer

Applies a freshly fetched snapshot of a reference entity set against its
currently valid versions:

    key in snapshot, not current   -> insert new current version
    key in both, attributes equal  -> nothing
    key in both, attributes differ -> close current version, insert successor
    key current, not in snapshot   -> close (delisting), no successor
    key delisted, back in snapshot -> insert new current version (relisting)

Closes and successors share one effective date taken from the snapshot data.
All closes are committed before any insert runs; if closing fails nothing is
inserted, otherwise a key could end up with two current versions.

History only moves forward: a snapshot effective before the newest date
already applied to the table is skipped as a whole.
"""
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from sqlalchemy import and_, func, select, update, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from jqsync.exceptions import ScdCloseError
from jqsync.models.equity_master import EquityMaster
from jqsync.services.batch_writer import batch_upsert
from jqsync.utils.dates import parse_date

logger = logging.getLogger(__name__)

# Fields whose change opens a new equity master version
EQUITY_MASTER_COMPARE_FIELDS = (
    "company_name",
    "company_name_en",
    "sector17_code",
    "sector17_name",
    "sector33_code",
    "sector33_name",
    "scale_category",
    "market_code",
    "market_name",
    "margin_code",
    "margin_code_name",
)


@dataclass(frozen=True)
class ScdTable:
    """
    Describes a versioned table.

    The model must have id, valid_from, valid_to and is_current columns.
    """
    model: Any
    natural_key: str
    compare_fields: Tuple[str, ...]
    attribute_fields: Tuple[str, ...] = ()

    @property
    def stored_fields(self) -> Tuple[str, ...]:
        return self.attribute_fields or self.compare_fields


EQUITY_MASTER_TABLE = ScdTable(
    model=EquityMaster,
    natural_key="local_code",
    compare_fields=EQUITY_MASTER_COMPARE_FIELDS,
)


@dataclass
class ScdChangeSet:
    inserts: List[Dict[str, Any]] = field(default_factory=list)
    closes: Dict[int, date] = field(default_factory=dict)  # version id -> valid_to
    updated_keys: List[str] = field(default_factory=list)
    delisted_keys: List[str] = field(default_factory=list)
    relisted_keys: List[str] = field(default_factory=list)
    stale_keys: List[str] = field(default_factory=list)
    unchanged: int = 0


@dataclass
class ScdSyncResult:
    fetched: int = 0
    inserted: int = 0
    updated: int = 0
    delisted: int = 0
    relisted: int = 0
    unchanged: int = 0
    skipped: int = 0
    stale_snapshot: bool = False
    effective_date: Optional[date] = None


def attributes_equal(
    current: Mapping[str, Any],
    incoming: Mapping[str, Any],
    fields: Sequence[str],
) -> bool:
    """Field-by-field comparison; a missing field equals None"""
    return all(current.get(f) == incoming.get(f) for f in fields)


def resolve_effective_date(
    records: Sequence[Mapping[str, Any]],
    requested: Optional[date] = None,
) -> Optional[date]:
    """
    Effective date of a snapshot, read from its valid_from values.

    The source may answer a request for a non-processing day with the next
    available date, so the requested date is only a fallback for snapshots
    that carry no date at all.
    """
    dates = [parse_date(r.get("valid_from")) for r in records if r.get("valid_from")]
    if not dates:
        return requested

    effective = dates[0]
    if any(d != effective for d in dates):
        logger.warning(f"Snapshot has mixed dates {sorted(set(dates))}, using {effective}")
    if requested and requested != effective:
        logger.info(f"Requested {requested} but snapshot is effective {effective}")
    return effective


def dedupe_snapshot(
    snapshot: Sequence[Mapping[str, Any]],
    natural_key: str,
) -> Dict[str, Mapping[str, Any]]:
    """Index snapshot by natural key, last occurrence wins"""
    incoming: Dict[str, Mapping[str, Any]] = {}
    duplicates = 0
    for record in snapshot:
        key = record[natural_key]
        if key in incoming:
            duplicates += 1
        incoming[key] = record
    if duplicates:
        logger.warning(f"Snapshot contained {duplicates} duplicate {natural_key} value(s)")
    return incoming


def compute_changes(
    table: ScdTable,
    latest: Mapping[str, Mapping[str, Any]],
    snapshot: Sequence[Mapping[str, Any]],
    effective_date: date,
) -> ScdChangeSet:
    """
    Diff a snapshot against the latest version of every key.

    Args:
        table: Versioned table description
        latest: Newest version by natural key, current or closed (id,
            valid_from, valid_to, is_current and compared fields)
        snapshot: Incoming records
        effective_date: validFrom of new versions and validTo of closed ones

    Returns:
        ScdChangeSet. Keys whose latest version starts or was closed after
        effective_date are left untouched and listed in stale_keys.
    """
    changes = ScdChangeSet()
    incoming = dedupe_snapshot(snapshot, table.natural_key)

    for key, record in incoming.items():
        existing = latest.get(key)

        if existing is None:
            changes.inserts.append(_new_version(table, key, record, effective_date))
            continue

        if not existing["is_current"]:
            if existing["valid_to"] is not None and existing["valid_to"] > effective_date:
                changes.stale_keys.append(key)
                continue
            changes.relisted_keys.append(key)
            changes.inserts.append(_new_version(table, key, record, effective_date))
            continue

        if attributes_equal(existing, record, table.compare_fields):
            changes.unchanged += 1
            continue

        if existing["valid_from"] > effective_date:
            changes.stale_keys.append(key)
            continue

        changes.closes[existing["id"]] = effective_date
        changes.updated_keys.append(key)
        changes.inserts.append(_new_version(table, key, record, effective_date))

    for key, existing in latest.items():
        if key in incoming or not existing["is_current"]:
            continue
        if existing["valid_from"] > effective_date:
            changes.stale_keys.append(key)
            continue
        changes.closes[existing["id"]] = effective_date
        changes.delisted_keys.append(key)

    return changes


def _new_version(table: ScdTable, key: str, record: Mapping[str, Any], effective_date: date) -> Dict[str, Any]:
    row = {table.natural_key: key}
    for name in table.stored_fields:
        row[name] = record.get(name)
    row.update(valid_from=effective_date, valid_to=None, is_current=True)
    return row


def group_closes(closes: Mapping[int, date]) -> Dict[date, List[int]]:
    """Group version ids by their new valid_to (one UPDATE per group)"""
    groups: Dict[date, List[int]] = defaultdict(list)
    for version_id, valid_to in closes.items():
        groups[valid_to].append(version_id)
    return dict(groups)


class ScdSynchronizer:
    """Applies snapshots to one versioned table."""

    def __init__(self, table: ScdTable = EQUITY_MASTER_TABLE, batch_size: Optional[int] = None):
        self.table = table
        self.model = table.model
        self.batch_size = batch_size

    async def load_latest(self, db: AsyncSession) -> Dict[str, Dict[str, Any]]:
        """Newest version of every key, current or closed, keyed by natural key"""
        model = self.model
        key_column = getattr(model, self.table.natural_key)

        newest = (
            select(key_column.label("key"), func.max(model.valid_from).label("valid_from"))
            .group_by(key_column)
            .subquery()
        )
        columns = [model.id, key_column, model.valid_from, model.valid_to, model.is_current]
        columns += [getattr(model, name) for name in self.table.compare_fields]

        result = await db.execute(
            select(*columns).join(
                newest,
                and_(key_column == newest.c.key, model.valid_from == newest.c.valid_from),
            )
        )
        latest = {}
        for row in result.mappings():
            latest[row[self.table.natural_key]] = dict(row)
        return latest

    async def get_watermark(self, db: AsyncSession) -> Optional[date]:
        """Newest valid_from or valid_to written to the table"""
        model = self.model
        row = (await db.execute(select(func.max(model.valid_from), func.max(model.valid_to)))).one()
        dates = [d for d in row if d is not None]
        return max(dates) if dates else None

    async def _close_group(self, db: AsyncSession, valid_to: date, ids: List[int]) -> int:
        model = self.model
        result = await db.execute(
            update(model)
            .where(model.id.in_(ids))
            .where(model.is_current.is_(True))
            .values(valid_to=valid_to, is_current=False)
        )
        return result.rowcount

    async def apply_closes(self, db: AsyncSession, closes: Mapping[int, date]) -> int:
        """
        Close versions in a single transaction, one conditional bulk UPDATE per valid_to.

        Raises:
            ScdCloseError: any group failed; nothing was closed
        """
        if not closes:
            return 0

        groups = group_closes(closes)
        closed = 0
        try:
            for valid_to, ids in groups.items():
                count = await self._close_group(db, valid_to, ids)
                if count != len(ids):
                    logger.warning(
                        f"{self.model.__tablename__}: expected to close {len(ids)} version(s) "
                        f"at {valid_to}, closed {count}"
                    )
                closed += count
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            raise ScdCloseError(
                f"Failed to close {len(closes)} record(s), aborting insert to avoid "
                f"duplicate current versions: {getattr(e, 'orig', None) or e}"
            ) from e

        logger.info(f"{self.model.__tablename__}: closed {closed} version(s) in {len(groups)} group(s)")
        return closed

    async def sync(
        self,
        db: AsyncSession,
        snapshot: Sequence[Mapping[str, Any]],
        effective_date: Optional[date] = None,
    ) -> ScdSyncResult:
        """
        Apply a full snapshot.

        Args:
            db: Database session
            snapshot: Every entity the source currently lists
            effective_date: Only used when records carry no valid_from

        Returns:
            ScdSyncResult counts (updated = closed and replaced, delisted =
            closed without successor)

        Raises:
            ScdCloseError: closing failed, no inserts were attempted
            BatchWriteError: inserting successors failed after closes committed
        """
        result = ScdSyncResult(fetched=len(snapshot))
        if not snapshot:
            # An empty refresh is treated as "no data", never as "everything delisted"
            logger.warning(f"{self.model.__tablename__}: empty snapshot, nothing to apply")
            return result

        effective = resolve_effective_date(snapshot, effective_date)
        if effective is None:
            raise ValueError("Snapshot has no effective date")
        result.effective_date = effective

        watermark = await self.get_watermark(db)
        if watermark is not None and effective < watermark:
            logger.warning(
                f"{self.model.__tablename__}: snapshot effective {effective} is older than "
                f"already applied {watermark}, skipped"
            )
            result.skipped = len(dedupe_snapshot(snapshot, self.table.natural_key))
            result.stale_snapshot = True
            return result

        latest = await self.load_latest(db)
        changes = compute_changes(self.table, latest, snapshot, effective)
        if changes.stale_keys:
            logger.warning(
                f"{self.model.__tablename__}: {len(changes.stale_keys)} key(s) have versions "
                f"newer than {effective}, left unchanged"
            )

        await self.apply_closes(db, changes.closes)

        if changes.inserts:
            await batch_upsert(
                db,
                self.model,
                changes.inserts,
                [self.table.natural_key, "valid_from"],
                batch_size=self.batch_size,
            )

        result.inserted = len(changes.inserts)
        result.updated = len(changes.updated_keys)
        result.delisted = len(changes.delisted_keys)
        result.relisted = len(changes.relisted_keys)
        result.unchanged = changes.unchanged
        result.skipped = len(changes.stale_keys)

        logger.info(
            f"{self.model.__tablename__} @ {effective}: fetched={result.fetched} "
            f"inserted={result.inserted} updated={result.updated} "
            f"delisted={result.delisted} relisted={result.relisted} unchanged={result.unchanged}"
        )
        return result


# ============================================================================
# HISTORY QUERIES
# ============================================================================

async def get_current_versions(db: AsyncSession, table: ScdTable = EQUITY_MASTER_TABLE) -> List[Any]:
    model = table.model
    result = await db.execute(
        select(model)
        .where(model.is_current.is_(True))
        .order_by(getattr(model, table.natural_key))
    )
    return list(result.scalars().all())


async def get_version_as_of(
    db: AsyncSession,
    key: str,
    as_of: date,
    table: ScdTable = EQUITY_MASTER_TABLE,
) -> Optional[Any]:
    """Version valid on as_of: valid_from <= as_of < valid_to (or open-ended)"""
    model = table.model
    result = await db.execute(
        select(model)
        .where(getattr(model, table.natural_key) == key)
        .where(model.valid_from <= as_of)
        .where(or_(model.valid_to.is_(None), model.valid_to > as_of))
        .order_by(model.valid_from.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_history(
    db: AsyncSession,
    key: str,
    table: ScdTable = EQUITY_MASTER_TABLE,
) -> List[Any]:
    model = table.model
    result = await db.execute(
        select(model)
        .where(getattr(model, table.natural_key) == key)
        .order_by(model.valid_from.asc())
    )
    return list(result.scalars().all())
