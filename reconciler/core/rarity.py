"""
Rarity tables.

``rb_part_rarity`` counts the distinct real sets containing each
(part, color), either directly in the set inventory or through a
minifigure inventoried in the set. ``rb_minifig_rarity`` stores, per
minifigure, the smallest part rarity among its parts and the number of
real sets it appears in. Both tables are rebuilt from scratch each run.
"""

from collections import defaultdict
from typing import Dict, List, Set, Tuple
import logging

from reconciler.core.materializer import Materializer, materialize_with_fallback
from reconciler.database.models import (
    FIG_SET_PREFIX,
    MinifigRarity,
    PartRarity,
    RBInventoryMinifig,
    RBInventoryPart,
    RBMinifigPart,
)
from reconciler.database.repository import CatalogRepository, chunked, is_fig_inventory
from reconciler.models.schemas import MaterializeStats

logger = logging.getLogger(__name__)

_PARAMS = {"fig_prefix": f"{FIG_SET_PREFIX}%", "spare": False}

RARITY_STATEMENTS = [
    ("DELETE FROM rb_part_rarity", {}),
    (
        """
        INSERT INTO rb_part_rarity (part_num, color_id, set_count)
        SELECT occ.part_num, occ.color_id, COUNT(DISTINCT occ.set_num)
        FROM (
            SELECT rip.part_num, rip.color_id, ri.set_num
            FROM rb_inventory_parts rip
            JOIN rb_inventories ri ON ri.id = rip.inventory_id
            WHERE ri.set_num NOT LIKE :fig_prefix
              AND rip.is_spare = :spare
            UNION
            SELECT mp.part_num, mp.color_id, ri.set_num
            FROM rb_inventory_minifigs im
            JOIN rb_inventories ri ON ri.id = im.inventory_id
            JOIN rb_minifig_parts mp ON mp.fig_num = im.fig_num
            WHERE ri.set_num NOT LIKE :fig_prefix
        ) occ
        GROUP BY occ.part_num, occ.color_id
        """,
        _PARAMS,
    ),
    ("DELETE FROM rb_minifig_rarity", {}),
    (
        """
        INSERT INTO rb_minifig_rarity (fig_num, min_subpart_set_count, set_count)
        SELECT mp.fig_num, MIN(pr.set_count), COALESCE(fs.set_count, 0)
        FROM rb_minifig_parts mp
        JOIN rb_part_rarity pr
          ON pr.part_num = mp.part_num AND pr.color_id = mp.color_id
        LEFT JOIN (
            SELECT im.fig_num, COUNT(DISTINCT ri.set_num) AS set_count
            FROM rb_inventory_minifigs im
            JOIN rb_inventories ri ON ri.id = im.inventory_id
            WHERE ri.set_num NOT LIKE :fig_prefix
            GROUP BY im.fig_num
        ) fs ON fs.fig_num = mp.fig_num
        GROUP BY mp.fig_num, fs.set_count
        """,
        {"fig_prefix": _PARAMS["fig_prefix"]},
    ),
]


class AtomicSqlRarityMaterializer(Materializer):
    name = "atomic_sql"

    def materialize(self) -> MaterializeStats:
        self.repository.exec_atomic_sql(RARITY_STATEMENTS)
        stats = MaterializeStats(
            strategy=self.name,
            part_rows=self.repository.count(PartRarity),
            minifig_rows=self.repository.count(MinifigRarity),
        )
        logger.info(
            f"Rarity materialized via SQL: {stats.part_rows} part rows, "
            f"{stats.minifig_rows} minifig rows"
        )
        return stats


class ChunkedRarityMaterializer(Materializer):
    """Builds both rarity tables in memory from paginated scans"""

    name = "chunked"

    def compute(self) -> Tuple[List[Dict], List[Dict]]:
        repository = self.repository
        inventory_sets = repository.inventory_set_map()
        set_inventories = sorted(
            inv_id
            for inv_id, set_num in inventory_sets.items()
            if not is_fig_inventory(set_num)
        )

        part_sets: Dict[Tuple[str, int], Set[str]] = defaultdict(set)
        fig_sets: Dict[str, Set[str]] = defaultdict(set)
        for chunk in chunked(set_inventories, repository.chunk_size):
            inv_ids = list(chunk)
            for row in repository.iter_rows(
                RBInventoryPart,
                RBInventoryPart.inventory_id.in_(inv_ids),
                RBInventoryPart.is_spare.is_(False),
                columns=[
                    RBInventoryPart.inventory_id,
                    RBInventoryPart.part_num,
                    RBInventoryPart.color_id,
                ],
            ):
                part_sets[(row.part_num, row.color_id)].add(inventory_sets[row.inventory_id])

            for row in repository.iter_rows(
                RBInventoryMinifig,
                RBInventoryMinifig.inventory_id.in_(inv_ids),
                columns=[RBInventoryMinifig.inventory_id, RBInventoryMinifig.fig_num],
            ):
                fig_sets[row.fig_num].add(inventory_sets[row.inventory_id])

        fig_parts: Dict[str, Set[Tuple[str, int]]] = defaultdict(set)
        for row in repository.iter_rows(
            RBMinifigPart,
            columns=[RBMinifigPart.fig_num, RBMinifigPart.part_num, RBMinifigPart.color_id],
        ):
            fig_parts[row.fig_num].add((row.part_num, row.color_id))

        # Parts reach a set through the minifigures inventoried in it
        for fig_num, set_nums in fig_sets.items():
            for key in fig_parts.get(fig_num, ()):
                part_sets[key].update(set_nums)

        part_rows = [
            {"part_num": part_num, "color_id": color_id, "set_count": len(set_nums)}
            for (part_num, color_id), set_nums in part_sets.items()
        ]

        minifig_rows = []
        for fig_num, keys in fig_parts.items():
            counts = [len(part_sets[key]) for key in keys if key in part_sets]
            if not counts:
                continue
            minifig_rows.append(
                {
                    "fig_num": fig_num,
                    "min_subpart_set_count": min(counts),
                    "set_count": len(fig_sets.get(fig_num, ())),
                }
            )
        return part_rows, minifig_rows

    def materialize(self) -> MaterializeStats:
        part_rows, minifig_rows = self.compute()

        self.repository.delete(PartRarity)
        self.repository.upsert(PartRarity, part_rows, ["part_num", "color_id"])
        self.repository.delete(MinifigRarity)
        self.repository.upsert(MinifigRarity, minifig_rows, ["fig_num"])

        logger.info(
            f"Rarity materialized in chunks: {len(part_rows)} part rows, "
            f"{len(minifig_rows)} minifig rows"
        )
        return MaterializeStats(
            strategy=self.name,
            part_rows=len(part_rows),
            minifig_rows=len(minifig_rows),
        )


def materialize_rarity(repository: CatalogRepository) -> MaterializeStats:
    return materialize_with_fallback(
        repository,
        AtomicSqlRarityMaterializer(repository),
        ChunkedRarityMaterializer(repository),
        "Rarity",
    )
