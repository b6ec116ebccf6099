"""
BrickLink data refresh.

Crawls only what is missing: sets reachable from RB inventories with no
BL set data yet, then BL minifigures with no BL composition yet. Empty
answers are stored as sentinel rows so they are never crawled again.
"""

from collections import OrderedDict
from datetime import datetime
from typing import Dict, List, Optional
import logging

from config.settings import settings
from reconciler.database.models import BLMinifigPart, BLSetMinifig, SENTINEL_ID
from reconciler.database.repository import CatalogRepository
from reconciler.external.bricklink_client import BrickLinkClient
from reconciler.models.errors import ExternalApiError, StoreWriteError
from reconciler.models.schemas import RefreshStats, SubsetEntry

logger = logging.getLogger(__name__)

SET_MINIFIG_KEYS = ["set_num", "minifig_no"]
MINIFIG_PART_KEYS = ["bl_minifig_no", "bl_part_id", "bl_color_id"]


class BLDataRefresher:
    """Budget-aware crawler for BL set contents and minifigure compositions"""

    def __init__(
        self,
        repository: CatalogRepository,
        client: BrickLinkClient,
        budget: Optional[int] = None,
    ):
        self.repository = repository
        self.client = client
        self.budget = settings.bricklink_call_budget if budget is None else budget

    def budget_exhausted(self) -> bool:
        return self.client.rate_limiter.budget_exhausted(self.budget)

    def set_candidates(self) -> List[str]:
        """RB sets holding minifigures that BL has not been asked about yet.

        Newest sets come first; sets without a known year sort last, and
        ties fall back to set number order.
        """
        rb_sets = set(self.repository.minifigs_by_set().keys())
        missing = rb_sets - self.repository.crawled_set_nums()
        years = self.repository.set_years(missing)
        return sorted(missing, key=lambda set_num: (-years.get(set_num, 0), set_num))

    def minifig_candidates(self) -> List[str]:
        """BL minifigures seen in set data whose composition was never crawled"""
        seen = set()
        for fig_nos in self.repository.bl_minifigs_by_set().values():
            seen.update(fig_nos)
        return sorted(seen - self.repository.crawled_bl_minifig_nos())

    def refresh_set_minifigs(self) -> RefreshStats:
        candidates = self.set_candidates()
        stats = RefreshStats(candidates=len(candidates))
        logger.info(f"Set->minifig refresh: {len(candidates)} sets without BL data")

        for set_num in candidates:
            if self.budget_exhausted():
                stats.budget_exhausted = True
                logger.info(f"BrickLink call budget of {self.budget} reached, stopping set refresh")
                break

            try:
                entries = self.client.get_set_minifigs(set_num)
            except ExternalApiError as e:
                stats.errors += 1
                logger.warning(f"Skipping set {set_num}: {e}")
                continue

            stats.crawled += 1
            rows = self._set_minifig_rows(set_num, entries)
            if not entries:
                stats.empty += 1

            try:
                stats.rows_written += self.repository.upsert(
                    BLSetMinifig, rows, SET_MINIFIG_KEYS
                )
            except StoreWriteError as e:
                stats.errors += 1
                logger.warning(f"Could not store BL minifigs for set {set_num}: {e}")

        logger.info(
            f"Set->minifig refresh done: {stats.crawled} crawled, {stats.empty} empty, "
            f"{stats.rows_written} rows, {stats.errors} errors"
        )
        return stats

    def refresh_minifig_parts(self) -> RefreshStats:
        candidates = self.minifig_candidates()
        stats = RefreshStats(candidates=len(candidates))
        logger.info(f"Minifig->part refresh: {len(candidates)} minifigs without BL parts")

        for minifig_no in candidates:
            if self.budget_exhausted():
                stats.budget_exhausted = True
                logger.info(f"BrickLink call budget of {self.budget} reached, stopping part refresh")
                break

            try:
                entries = self.client.get_minifig_parts(minifig_no)
            except ExternalApiError as e:
                stats.errors += 1
                logger.warning(f"Skipping minifig {minifig_no}: {e}")
                continue

            stats.crawled += 1
            rows = self._minifig_part_rows(minifig_no, entries)
            if not entries:
                stats.empty += 1

            try:
                stats.rows_written += self.repository.upsert(
                    BLMinifigPart, rows, MINIFIG_PART_KEYS
                )
            except StoreWriteError as e:
                stats.errors += 1
                logger.warning(f"Could not store BL parts for minifig {minifig_no}: {e}")

        logger.info(
            f"Minifig->part refresh done: {stats.crawled} crawled, {stats.empty} empty, "
            f"{stats.rows_written} rows, {stats.errors} errors"
        )
        return stats

    @staticmethod
    def _set_minifig_rows(set_num: str, entries: List[SubsetEntry]) -> List[Dict]:
        now = datetime.utcnow()
        if not entries:
            return [
                {
                    "set_num": set_num,
                    "minifig_no": SENTINEL_ID,
                    "name": None,
                    "quantity": 0,
                    "last_refreshed_at": now,
                }
            ]

        # One row per key; repeated entries across subset groups are summed
        rows: "OrderedDict[str, Dict]" = OrderedDict()
        for entry in entries:
            row = rows.get(entry.item.no)
            if row:
                row["quantity"] += entry.quantity
                continue
            rows[entry.item.no] = {
                "set_num": set_num,
                "minifig_no": entry.item.no,
                "name": entry.item.name,
                "quantity": entry.quantity,
                "last_refreshed_at": now,
            }
        return list(rows.values())

    @staticmethod
    def _minifig_part_rows(minifig_no: str, entries: List[SubsetEntry]) -> List[Dict]:
        now = datetime.utcnow()
        if not entries:
            return [
                {
                    "bl_minifig_no": minifig_no,
                    "bl_part_id": SENTINEL_ID,
                    "bl_color_id": 0,
                    "name": None,
                    "quantity": 0,
                    "last_refreshed_at": now,
                }
            ]

        rows: "OrderedDict[tuple, Dict]" = OrderedDict()
        for entry in entries:
            color_id = entry.color_id or 0
            key = (entry.item.no, color_id)
            row = rows.get(key)
            if row:
                row["quantity"] += entry.quantity
                continue
            rows[key] = {
                "bl_minifig_no": minifig_no,
                "bl_part_id": entry.item.no,
                "bl_color_id": color_id,
                "name": entry.item.name,
                "quantity": entry.quantity,
                "last_refreshed_at": now,
            }
        return list(rows.values())
