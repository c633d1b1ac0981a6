"""
Idempotent Batch Writer

Writes records as conflict-resolving upserts (INSERT ... ON CONFLICT DO
UPDATE) in fixed-size chunks, one commit per chunk. Re-delivering the same
records resolves to the same rows, so a failed run can simply be repeated:
chunks that were already committed are rewritten harmlessly.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from jqsync.exceptions import BatchWriteError
from jqsync.utils.dates import utc_now

logger = logging.getLogger(__name__)

# Rows per upsert statement, tuned to each table's row width
BATCH_SIZES: Dict[str, int] = {
    "equity_bar_daily": 500,
    "equity_master": 250,
    "investor_type_trading": 1000,
    "topix_bar_daily": 1500,
    "trading_calendar": 1500,
}

DEFAULT_BATCH_SIZE = 500

# Refreshed on every upsert when the table has them
AUDIT_COLUMNS = ("updated_at", "ingested_at")


@dataclass
class BatchUpsertResult:
    written: int = 0
    errors: List[BatchWriteError] = field(default_factory=list)
    batch_count: int = 0

    @property
    def ok(self) -> bool:
        return not self.errors


def get_batch_size(table_name: str) -> int:
    return BATCH_SIZES.get(table_name, DEFAULT_BATCH_SIZE)


def chunk_list(items: Sequence[Any], size: int) -> List[List[Any]]:
    """Split items into consecutive chunks of at most size elements"""
    if size < 1:
        raise ValueError("chunk size must be >= 1")
    return [list(items[i:i + size]) for i in range(0, len(items), size)]


def dedupe_by_key(rows: Iterable[Dict[str, Any]], key_columns: Sequence[str]) -> List[Dict[str, Any]]:
    """
    Keep the last row for each conflict key.

    PostgreSQL rejects an upsert statement that touches the same row twice.
    """
    by_key: Dict[tuple, Dict[str, Any]] = {}
    for row in rows:
        by_key[tuple(row.get(col) for col in key_columns)] = row
    return list(by_key.values())


def dialect_insert(db: AsyncSession):
    """Dialect specific insert() supporting ON CONFLICT"""
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert
    if dialect == "sqlite":
        return sqlite_insert
    raise NotImplementedError(f"Upsert is not supported for dialect '{dialect}'")


def build_upsert(
    db: AsyncSession,
    model,
    rows: List[Dict[str, Any]],
    conflict_columns: Sequence[str],
    update_columns: Optional[Sequence[str]] = None,
    update_where=None,
):
    """
    Build INSERT ... ON CONFLICT (conflict_columns) DO UPDATE.

    Args:
        db: Session used to resolve the dialect
        model: Mapped class
        rows: Row dicts (all with the same keys)
        conflict_columns: Natural key columns
        update_columns: Columns overwritten on conflict (default: every
            supplied non-key column)
        update_where: Optional condition restricting which existing rows are
            updated

    Returns:
        Executable statement
    """
    table = model.__table__
    stmt = dialect_insert(db)(table).values(rows)

    if update_columns is None:
        update_columns = [col for col in rows[0] if col not in conflict_columns]

    set_ = {col: stmt.excluded[col] for col in update_columns}
    for col in AUDIT_COLUMNS:
        if col in table.c and col not in set_:
            set_[col] = utc_now()

    if not set_:
        return stmt.on_conflict_do_nothing(index_elements=list(conflict_columns))

    return stmt.on_conflict_do_update(
        index_elements=list(conflict_columns),
        set_=set_,
        where=update_where,
    )


async def batch_upsert(
    db: AsyncSession,
    model,
    records: Sequence[Dict[str, Any]],
    conflict_columns: Sequence[str],
    batch_size: Optional[int] = None,
    continue_on_error: bool = False,
    update_where=None,
    on_batch_complete: Optional[Callable[[int, int, int], None]] = None,
) -> BatchUpsertResult:
    """
    Upsert records in chunks, committing each chunk.

    Args:
        db: Database session
        model: Mapped class to write into
        records: Row dicts keyed by column name
        conflict_columns: Natural key used for conflict resolution
        batch_size: Rows per statement (default: per-table size)
        continue_on_error: Collect chunk failures instead of raising on the first
        update_where: Optional ON CONFLICT ... WHERE condition
        on_batch_complete: Called with (batch_index, batch_total, written so far)

    Returns:
        BatchUpsertResult with written row count, collected errors and chunk count

    Raises:
        BatchWriteError: first chunk failure when continue_on_error is False;
            chunks before it stay committed
    """
    result = BatchUpsertResult()
    if not records:
        return result

    table_name = model.__tablename__
    size = batch_size or get_batch_size(table_name)
    chunks = chunk_list(records, size)
    result.batch_count = len(chunks)

    for index, chunk in enumerate(chunks, start=1):
        rows = dedupe_by_key(chunk, conflict_columns)
        if len(rows) < len(chunk):
            logger.warning(
                f"{table_name}: batch {index}/{len(chunks)} had {len(chunk) - len(rows)} "
                f"duplicate key(s), keeping the last occurrence"
            )

        try:
            stmt = build_upsert(db, model, rows, conflict_columns, update_where=update_where)
            await db.execute(stmt)
            await db.commit()
        except SQLAlchemyError as e:
            await db.rollback()
            error = BatchWriteError(str(getattr(e, "orig", None) or e), index, len(chunks))
            logger.error(f"{table_name}: {error}")

            if not continue_on_error:
                raise error from e
            result.errors.append(error)
            continue

        result.written += len(rows)
        logger.debug(f"{table_name}: batch {index}/{len(chunks)} upserted {len(rows)} row(s)")

        if on_batch_complete:
            on_batch_complete(index, len(chunks), result.written)

    logger.info(
        f"{table_name}: upserted {result.written}/{len(records)} row(s) "
        f"in {result.batch_count} batch(es), {len(result.errors)} error(s)"
    )
    return result
