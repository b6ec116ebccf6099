import pytest
from typing import Dict, Iterable, Sequence

from reconciler.database.database import DatabaseManager
from reconciler.database.models import (
    BLMinifigPart,
    BLSetMinifig,
    RBColor,
    RBInventory,
    RBInventoryMinifig,
    RBInventoryPart,
    RBMinifig,
    RBMinifigPart,
    RBPart,
    RBSet,
    SENTINEL_ID,
)
from reconciler.database.repository import CatalogRepository


class CatalogSeeder:
    """Writes small RB/BL catalogs through the repository"""

    def __init__(self, repository: CatalogRepository):
        self.repository = repository

    def colors(self, rb_to_bl: Dict[int, int]):
        rows = [
            {
                "id": rb_id,
                "name": f"Color {rb_id}",
                "external_ids": {"BrickLink": {"ext_ids": [bl_id]}},
            }
            for rb_id, bl_id in rb_to_bl.items()
        ]
        self.repository.upsert(RBColor, rows, ["id"])

    def parts(self, rb_to_bl: Dict[str, str]):
        rows = [
            {"part_num": part_num, "name": part_num, "bl_part_id": bl_id, "external_ids": None}
            for part_num, bl_id in rb_to_bl.items()
        ]
        self.repository.upsert(RBPart, rows, ["part_num"])

    def sets(self, years: Dict[str, int]):
        rows = [
            {"set_num": set_num, "name": set_num, "year": year}
            for set_num, year in years.items()
        ]
        self.repository.upsert(RBSet, rows, ["set_num"])

    def minifigs(self, *fig_nums: str):
        rows = [{"fig_num": fig_num, "name": f"Minifig {fig_num}"} for fig_num in fig_nums]
        self.repository.upsert(RBMinifig, rows, ["fig_num"])

    def inventory(
        self,
        inventory_id: int,
        set_num: str,
        parts: Iterable[Sequence] = (),
        minifigs: Iterable[str] = (),
    ):
        """``parts`` items are (part_num, color_id, quantity[, is_spare])"""
        self.repository.upsert(
            RBInventory,
            [{"id": inventory_id, "version": 1, "set_num": set_num}],
            ["id"],
        )

        part_rows = []
        for part in parts:
            part_num, color_id, quantity = part[:3]
            is_spare = part[3] if len(part) > 3 else False
            part_rows.append(
                {
                    "inventory_id": inventory_id,
                    "part_num": part_num,
                    "color_id": color_id,
                    "is_spare": is_spare,
                    "quantity": quantity,
                }
            )
        self.repository.upsert(
            RBInventoryPart,
            part_rows,
            ["inventory_id", "part_num", "color_id", "is_spare"],
        )

        fig_rows = [
            {"inventory_id": inventory_id, "fig_num": fig_num, "quantity": 1}
            for fig_num in minifigs
        ]
        self.repository.upsert(RBInventoryMinifig, fig_rows, ["inventory_id", "fig_num"])

    def minifig_parts(self, fig_num: str, parts: Iterable[Sequence]):
        """``parts`` items are (part_num, color_id, quantity)"""
        rows = [
            {"fig_num": fig_num, "part_num": part_num, "color_id": color_id, "quantity": quantity}
            for part_num, color_id, quantity in parts
        ]
        self.repository.upsert(RBMinifigPart, rows, ["fig_num", "part_num", "color_id"])

    def bl_set(self, set_num: str, *minifig_nos: str):
        """No minifig numbers writes the crawled-but-empty sentinel"""
        nos = minifig_nos or (SENTINEL_ID,)
        rows = [
            {
                "set_num": set_num,
                "minifig_no": no,
                "name": None,
                "quantity": 0 if no == SENTINEL_ID else 1,
            }
            for no in nos
        ]
        self.repository.upsert(BLSetMinifig, rows, ["set_num", "minifig_no"])

    def bl_minifig(self, minifig_no: str, parts: Iterable[Sequence] = ()):
        """``parts`` items are (bl_part_id, bl_color_id, quantity); empty writes the sentinel"""
        parts = list(parts) or [(SENTINEL_ID, 0, 0)]
        rows = [
            {
                "bl_minifig_no": minifig_no,
                "bl_part_id": part_id,
                "bl_color_id": color_id,
                "name": None,
                "quantity": quantity,
            }
            for part_id, color_id, quantity in parts
        ]
        self.repository.upsert(
            BLMinifigPart, rows, ["bl_minifig_no", "bl_part_id", "bl_color_id"]
        )


@pytest.fixture
def db_manager():
    """In-memory SQLite database with all tables created"""
    manager = DatabaseManager("sqlite:///:memory:")
    manager.initialize_database()
    yield manager
    manager.close_all_sessions()


@pytest.fixture
def repository(db_manager):
    return CatalogRepository(db_manager, page_size=1000, chunk_size=200, allow_atomic_sql=True)


@pytest.fixture
def seed(repository):
    return CatalogSeeder(repository)
