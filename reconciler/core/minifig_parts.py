"""
RB minifigure compositions.

Rebrickable inventories each minifigure as a pseudo-set ``fig-NNNNNN``.
``rb_minifig_parts`` flattens the latest such inventory into one row per
(fig, part, color), summing quantities and leaving spares out.
"""

from collections import defaultdict
from typing import Dict, List, Tuple
import logging

from reconciler.core.materializer import Materializer, materialize_with_fallback
from reconciler.database.models import FIG_SET_PREFIX, RBInventory, RBInventoryPart, RBMinifigPart
from reconciler.database.repository import CatalogRepository, chunked, is_fig_inventory
from reconciler.models.schemas import MaterializeStats

logger = logging.getLogger(__name__)

MINIFIG_PARTS_STATEMENTS = [
    ("DELETE FROM rb_minifig_parts", {}),
    (
        """
        INSERT INTO rb_minifig_parts (fig_num, part_num, color_id, quantity)
        SELECT ri.set_num, rip.part_num, rip.color_id, SUM(rip.quantity)
        FROM rb_inventory_parts rip
        JOIN rb_inventories ri ON ri.id = rip.inventory_id
        WHERE ri.id IN (
            SELECT MAX(id) FROM rb_inventories
            WHERE set_num LIKE :fig_prefix
            GROUP BY set_num
        )
          AND rip.is_spare = :spare
        GROUP BY ri.set_num, rip.part_num, rip.color_id
        """,
        {"fig_prefix": f"{FIG_SET_PREFIX}%", "spare": False},
    ),
]


def latest_fig_inventories(inventory_sets: Dict[int, str]) -> Dict[int, str]:
    """inventory id -> fig_num, keeping the highest inventory id per fig"""
    latest: Dict[str, int] = {}
    for inv_id, set_num in inventory_sets.items():
        if is_fig_inventory(set_num) and inv_id > latest.get(set_num, -1):
            latest[set_num] = inv_id
    return {inv_id: fig_num for fig_num, inv_id in latest.items()}


class AtomicSqlMinifigPartsMaterializer(Materializer):
    name = "atomic_sql"

    def materialize(self) -> MaterializeStats:
        self.repository.exec_atomic_sql(MINIFIG_PARTS_STATEMENTS)
        stats = MaterializeStats(
            strategy=self.name, part_rows=self.repository.count(RBMinifigPart)
        )
        logger.info(f"Minifig compositions materialized via SQL: {stats.part_rows} rows")
        return stats


class ChunkedMinifigPartsMaterializer(Materializer):
    name = "chunked"

    def compute(self, fig_inventories: Dict[int, str]) -> List[Dict]:
        totals: Dict[Tuple[str, str, int], int] = defaultdict(int)
        for chunk in chunked(sorted(fig_inventories), self.repository.chunk_size):
            for row in self.repository.iter_rows(
                RBInventoryPart,
                RBInventoryPart.inventory_id.in_(list(chunk)),
                RBInventoryPart.is_spare.is_(False),
                columns=[
                    RBInventoryPart.inventory_id,
                    RBInventoryPart.part_num,
                    RBInventoryPart.color_id,
                    RBInventoryPart.quantity,
                ],
            ):
                key = (fig_inventories[row.inventory_id], row.part_num, row.color_id)
                totals[key] += row.quantity or 0

        return [
            {"fig_num": fig_num, "part_num": part_num, "color_id": color_id, "quantity": quantity}
            for (fig_num, part_num, color_id), quantity in totals.items()
        ]

    def materialize(self) -> MaterializeStats:
        fig_inventories = latest_fig_inventories(self.repository.inventory_set_map())
        rows = self.compute(fig_inventories)

        self.repository.delete(RBMinifigPart)
        self.repository.upsert(RBMinifigPart, rows, ["fig_num", "part_num", "color_id"])

        logger.info(f"Minifig compositions materialized in chunks: {len(rows)} rows")
        return MaterializeStats(strategy=self.name, part_rows=len(rows))


def materialize_minifig_parts(repository: CatalogRepository) -> MaterializeStats:
    """Rebuild rb_minifig_parts; a catalog without fig inventories is left alone"""
    fig_inventories = repository.count(
        RBInventory, RBInventory.set_num.like(f"{FIG_SET_PREFIX}%")
    )
    if not fig_inventories:
        logger.info("No fig-* inventories found, keeping existing minifig compositions")
        return MaterializeStats(
            strategy="skipped", part_rows=repository.count(RBMinifigPart)
        )

    return materialize_with_fallback(
        repository,
        AtomicSqlMinifigPartsMaterializer(repository),
        ChunkedMinifigPartsMaterializer(repository),
        "Minifig compositions",
    )
