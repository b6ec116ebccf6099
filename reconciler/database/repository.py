from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple
from datetime import datetime
import logging

from sqlalchemy import func, text
from sqlalchemy.exc import SQLAlchemyError

from config.settings import settings
from .database import DatabaseManager
from .models import (
    BLMinifigPart,
    BLSetMinifig,
    FIG_SET_PREFIX,
    RBInventory,
    RBInventoryMinifig,
    RBMinifig,
    RBMinifigPart,
    RBSet,
    SENTINEL_ID,
)
from reconciler.models.errors import StoreWriteError
from reconciler.models.schemas import (
    Composition,
    EmptyComposition,
    Fingerprint,
    FingerprintPart,
    PartsComposition,
)

logger = logging.getLogger(__name__)

AtomicStatement = Tuple[str, Dict[str, Any]]


def chunked(items: Sequence[Any], size: int) -> Iterator[Sequence[Any]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


def is_fig_inventory(set_num: Optional[str]) -> bool:
    return bool(set_num) and set_num.startswith(FIG_SET_PREFIX)


class CatalogRepository:
    """Paginated reads and batched writes over the catalog tables"""

    def __init__(
        self,
        db_manager: DatabaseManager,
        page_size: Optional[int] = None,
        chunk_size: Optional[int] = None,
        allow_atomic_sql: Optional[bool] = None,
    ):
        self.db_manager = db_manager
        self.page_size = page_size or settings.store_page_size
        self.chunk_size = chunk_size or settings.store_chunk_size
        self.allow_atomic_sql = (
            settings.allow_atomic_sql if allow_atomic_sql is None else allow_atomic_sql
        )

    # ------------------------------------------------------------------
    # Generic store interface
    # ------------------------------------------------------------------

    def select_page(
        self,
        model,
        *criteria,
        columns: Optional[Sequence[Any]] = None,
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> List[Any]:
        """Read one page, ordered by primary key; limit is capped at the page size"""
        limit = min(limit or self.page_size, self.page_size)
        cols = list(columns) if columns else list(model.__table__.columns)
        order = list(model.__table__.primary_key.columns)

        with self.db_manager.session_scope() as db:
            query = db.query(*cols)
            if criteria:
                query = query.filter(*criteria)
            return query.order_by(*order).offset(offset).limit(limit).all()

    def iter_rows(
        self, model, *criteria, columns: Optional[Sequence[Any]] = None
    ) -> Iterator[Any]:
        """Yield every matching row, one page at a time"""
        offset = 0
        while True:
            page = self.select_page(model, *criteria, columns=columns, offset=offset)
            yield from page
            if len(page) < self.page_size:
                break
            offset += len(page)

    def iter_rows_in(
        self,
        model,
        column,
        values: Iterable[Any],
        *criteria,
        columns: Optional[Sequence[Any]] = None,
    ) -> Iterator[Any]:
        """Like iter_rows, filtering ``column IN values`` in bounded chunks"""
        ordered = sorted(set(values))
        for chunk in chunked(ordered, self.chunk_size):
            yield from self.iter_rows(
                model, column.in_(list(chunk)), *criteria, columns=columns
            )

    def count(self, model, *criteria) -> int:
        with self.db_manager.session_scope() as db:
            query = db.query(func.count()).select_from(model)
            if criteria:
                query = query.filter(*criteria)
            return query.scalar() or 0

    def upsert(
        self, model, rows: Sequence[Dict[str, Any]], conflict_keys: Sequence[str]
    ) -> int:
        """Insert rows, updating non-key columns on conflict"""
        if not rows:
            return 0

        table = model.__table__
        written = 0
        try:
            with self.db_manager.session_scope() as db:
                for chunk in chunked(list(rows), self.chunk_size):
                    statement = self._upsert_statement(table, chunk, conflict_keys)
                    if statement is None:
                        for row in chunk:
                            db.merge(model(**row))
                    else:
                        db.execute(statement)
                    written += len(chunk)
        except SQLAlchemyError as e:
            raise StoreWriteError(
                f"Upsert into {table.name} failed: {e}", table=table.name
            ) from e
        return written

    def _upsert_statement(self, table, chunk, conflict_keys):
        dialect = self.db_manager.engine.dialect.name
        if dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert
        elif dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        else:
            return None

        statement = insert(table).values(list(chunk))
        update_columns = {
            name: statement.excluded[name]
            for name in chunk[0]
            if name not in conflict_keys
        }
        if not update_columns:
            return statement.on_conflict_do_nothing(index_elements=list(conflict_keys))
        return statement.on_conflict_do_update(
            index_elements=list(conflict_keys), set_=update_columns
        )

    def update(self, model, values: Dict[str, Any], *criteria) -> int:
        try:
            with self.db_manager.session_scope() as db:
                return (
                    db.query(model)
                    .filter(*criteria)
                    .update(values, synchronize_session=False)
                )
        except SQLAlchemyError as e:
            raise StoreWriteError(
                f"Update of {model.__tablename__} failed: {e}",
                table=model.__tablename__,
            ) from e

    def delete(self, model, *criteria) -> int:
        try:
            with self.db_manager.session_scope() as db:
                query = db.query(model)
                if criteria:
                    query = query.filter(*criteria)
                return query.delete(synchronize_session=False)
        except SQLAlchemyError as e:
            raise StoreWriteError(
                f"Delete from {model.__tablename__} failed: {e}",
                table=model.__tablename__,
            ) from e

    @property
    def supports_atomic_sql(self) -> bool:
        dialect = self.db_manager.engine.dialect.name
        return self.allow_atomic_sql and dialect in ("sqlite", "postgresql")

    def exec_atomic_sql(self, statements: Sequence[AtomicStatement]) -> None:
        """Run every statement inside one transaction"""
        if not self.supports_atomic_sql:
            raise StoreWriteError("Atomic SQL execution is not available")
        try:
            with self.db_manager.engine.begin() as conn:
                for sql, params in statements:
                    conn.execute(text(sql), params)
        except SQLAlchemyError as e:
            raise StoreWriteError(f"Atomic SQL execution failed: {e}") from e

    # ------------------------------------------------------------------
    # RB reads
    # ------------------------------------------------------------------

    def inventory_set_map(self) -> Dict[int, str]:
        """inventory id -> set_num for every inventory with a set number"""
        return {
            row.id: row.set_num
            for row in self.iter_rows(
                RBInventory,
                RBInventory.set_num.isnot(None),
                columns=[RBInventory.id, RBInventory.set_num],
            )
        }

    def minifigs_by_set(
        self, inventory_sets: Optional[Dict[int, str]] = None
    ) -> Dict[str, Set[str]]:
        """set_num -> RB fig_nums inventoried in it, fig-* pseudo-sets excluded"""
        if inventory_sets is None:
            inventory_sets = self.inventory_set_map()

        by_set: Dict[str, Set[str]] = {}
        for row in self.iter_rows(
            RBInventoryMinifig,
            columns=[RBInventoryMinifig.inventory_id, RBInventoryMinifig.fig_num],
        ):
            set_num = inventory_sets.get(row.inventory_id)
            if not set_num or is_fig_inventory(set_num):
                continue
            by_set.setdefault(set_num, set()).add(row.fig_num)
        return by_set

    def minifig_parts(self, fig_num: str) -> List[Any]:
        return list(
            self.iter_rows(
                RBMinifigPart,
                RBMinifigPart.fig_num == fig_num,
                columns=[
                    RBMinifigPart.part_num,
                    RBMinifigPart.color_id,
                    RBMinifigPart.quantity,
                ],
            )
        )

    def set_years(self, set_nums: Iterable[str]) -> Dict[str, int]:
        """set_num -> release year, for sets with a known year"""
        return {
            row.set_num: row.year
            for row in self.iter_rows_in(
                RBSet,
                RBSet.set_num,
                set_nums,
                RBSet.year.isnot(None),
                columns=[RBSet.set_num, RBSet.year],
            )
        }

    def unmatched_fig_nums(self) -> List[str]:
        return [
            row.fig_num
            for row in self.iter_rows(
                RBMinifig,
                RBMinifig.bl_minifig_id.is_(None),
                columns=[RBMinifig.fig_num],
            )
        ]

    def match_state(self) -> Tuple[Set[str], Set[str]]:
        """(matched RB fig_nums, BL ids already claimed by a match)"""
        matched_rb: Set[str] = set()
        matched_bl: Set[str] = set()
        for row in self.iter_rows(
            RBMinifig,
            RBMinifig.bl_minifig_id.isnot(None),
            columns=[RBMinifig.fig_num, RBMinifig.bl_minifig_id],
        ):
            matched_rb.add(row.fig_num)
            matched_bl.add(row.bl_minifig_id)
        return matched_rb, matched_bl

    def assign_match(
        self, fig_num: str, bl_minifig_id: str, confidence: float, source: str
    ) -> bool:
        """Record a match; rows that already carry a match are never overwritten"""
        updated = self.update(
            RBMinifig,
            {
                "bl_minifig_id": bl_minifig_id,
                "bl_mapping_confidence": confidence,
                "bl_mapping_source": source,
                "matched_at": datetime.utcnow(),
            },
            RBMinifig.fig_num == fig_num,
            RBMinifig.bl_minifig_id.is_(None),
        )
        return updated == 1

    def mapping_summary(self) -> Dict[str, Any]:
        """Matched/unmatched counts plus a tally per mapping source"""
        with self.db_manager.session_scope() as db:
            total = db.query(func.count(RBMinifig.fig_num)).scalar() or 0
            by_source = (
                db.query(RBMinifig.bl_mapping_source, func.count(RBMinifig.fig_num))
                .filter(RBMinifig.bl_minifig_id.isnot(None))
                .group_by(RBMinifig.bl_mapping_source)
                .all()
            )

        by_source = {source: count for source, count in by_source}
        matched = sum(by_source.values())
        return {
            "total_minifigs": total,
            "matched": matched,
            "unmatched": total - matched,
            "matches_by_source": by_source,
        }

    # ------------------------------------------------------------------
    # BL reads; sentinel rows never leave this layer as entities
    # ------------------------------------------------------------------

    def crawled_set_nums(self) -> Set[str]:
        """Every set with BL set data, including sets marked crawled-but-empty"""
        return {
            row.set_num
            for row in self.iter_rows(BLSetMinifig, columns=[BLSetMinifig.set_num])
        }

    def bl_minifigs_by_set(self) -> Dict[str, Set[str]]:
        by_set: Dict[str, Set[str]] = {}
        for row in self.iter_rows(
            BLSetMinifig,
            BLSetMinifig.minifig_no != SENTINEL_ID,
            columns=[BLSetMinifig.set_num, BLSetMinifig.minifig_no],
        ):
            by_set.setdefault(row.set_num, set()).add(row.minifig_no)
        return by_set

    def bl_minifigs_for_sets(self, set_nums: Iterable[str]) -> Set[str]:
        return {
            row.minifig_no
            for row in self.iter_rows_in(
                BLSetMinifig,
                BLSetMinifig.set_num,
                set_nums,
                BLSetMinifig.minifig_no != SENTINEL_ID,
                columns=[BLSetMinifig.set_num, BLSetMinifig.minifig_no],
            )
        }

    def crawled_bl_minifig_nos(self) -> Set[str]:
        """Every BL minifig with composition data, including crawled-but-empty ones"""
        return {
            row.bl_minifig_no
            for row in self.iter_rows(
                BLMinifigPart, columns=[BLMinifigPart.bl_minifig_no]
            )
        }

    def bl_composition(self, bl_minifig_no: str) -> Optional[Composition]:
        """None when never crawled, EmptyComposition when BL reported no parts"""
        rows = list(
            self.iter_rows(
                BLMinifigPart,
                BLMinifigPart.bl_minifig_no == bl_minifig_no,
                columns=[
                    BLMinifigPart.bl_part_id,
                    BLMinifigPart.bl_color_id,
                    BLMinifigPart.quantity,
                ],
            )
        )
        if not rows:
            return None

        parts = [
            FingerprintPart(
                part_id=row.bl_part_id,
                color_id=row.bl_color_id,
                quantity=row.quantity or 1,
            )
            for row in rows
            if row.bl_part_id != SENTINEL_ID
        ]
        if not parts:
            return EmptyComposition()
        return PartsComposition(parts=parts)

    def all_bl_fingerprints(self) -> Dict[str, Fingerprint]:
        """BL minifig no -> composition, for every minifig with at least one real part"""
        fingerprints: Dict[str, Fingerprint] = {}
        for row in self.iter_rows(
            BLMinifigPart,
            BLMinifigPart.bl_part_id != SENTINEL_ID,
            columns=[
                BLMinifigPart.bl_minifig_no,
                BLMinifigPart.bl_part_id,
                BLMinifigPart.bl_color_id,
                BLMinifigPart.quantity,
            ],
        ):
            fingerprints.setdefault(row.bl_minifig_no, []).append(
                FingerprintPart(
                    part_id=row.bl_part_id,
                    color_id=row.bl_color_id,
                    quantity=row.quantity or 1,
                )
            )
        return fingerprints
