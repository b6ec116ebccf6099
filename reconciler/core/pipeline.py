"""
Run driver: sequences the reconciliation stages for one batch run.

Order is compositions -> BL refresh -> Tier-1 -> Tier-2 -> Tier-2 global
-> rarity. A failing stage is logged and recorded in the report; the
remaining stages still run against whatever data exists.
"""

from datetime import datetime
from typing import Callable, Dict, Optional
import logging

from reconciler.core.crawler import BLDataRefresher
from reconciler.core.cross_reference import build_bl_part_map, build_rb_to_bl_color_map
from reconciler.core.elimination_matcher import SetEliminationMatcher
from reconciler.core.fingerprint_matcher import (
    GlobalFingerprintMatcher,
    SetScopedFingerprintMatcher,
)
from reconciler.core.minifig_parts import materialize_minifig_parts
from reconciler.core.rarity import materialize_rarity
from reconciler.database.repository import CatalogRepository
from reconciler.external.bricklink_client import BrickLinkClient
from reconciler.models.schemas import RunReport

logger = logging.getLogger(__name__)


class ReconciliationPipeline:
    """Runs all or part of the reconciliation against one repository"""

    def __init__(
        self,
        repository: CatalogRepository,
        client: Optional[BrickLinkClient] = None,
    ):
        self.repository = repository
        self.client = client or BrickLinkClient()

    def _stage(self, report: RunReport, name: str, fn: Callable):
        try:
            return fn()
        except Exception as e:
            logger.error(f"Stage '{name}' failed: {e}", exc_info=True)
            report.failed_stages.append(name)
            return None

    def _merge_counts(self, report: RunReport, counts: Optional[Dict[str, int]]):
        for source, count in (counts or {}).items():
            report.matches[source] = report.matches.get(source, 0) + count

    def _finish(self, report: RunReport) -> RunReport:
        report.finished_at = datetime.utcnow()
        report.api_calls = self.client.call_count
        logger.info(
            f"Run finished: {report.total_matches} new matches, "
            f"{report.api_calls} BrickLink calls, failed stages: {report.failed_stages or 'none'}"
        )
        return report

    def _refresh(self, report: RunReport, budget: Optional[int]):
        if not self.client.has_credentials:
            logger.warning("BrickLink credentials not configured, skipping refresh")
            return

        refresher = BLDataRefresher(self.repository, self.client, budget=budget)
        report.set_refresh = self._stage(report, "refresh_sets", refresher.refresh_set_minifigs)
        report.minifig_refresh = self._stage(report, "refresh_minifigs", refresher.refresh_minifig_parts)

    def _match(self, report: RunReport):
        # Vocabulary maps are built once and shared by both fingerprint tiers
        maps = self._stage(
            report,
            "cross_reference",
            lambda: (build_bl_part_map(self.repository), build_rb_to_bl_color_map(self.repository)),
        )

        self._merge_counts(
            report,
            self._stage(report, "tier1", SetEliminationMatcher(self.repository).run),
        )
        if maps is None:
            return

        bl_part_map, rb_to_bl_color = maps
        for name, matcher_cls in (
            ("tier2", SetScopedFingerprintMatcher),
            ("tier2_global", GlobalFingerprintMatcher),
        ):
            matcher = matcher_cls(self.repository, bl_part_map, rb_to_bl_color)
            self._merge_counts(report, self._stage(report, name, matcher.run))

    def _rarity(self, report: RunReport):
        report.rarity = self._stage(report, "rarity", lambda: materialize_rarity(self.repository))

    def run_all(self, budget: Optional[int] = None) -> RunReport:
        report = RunReport()
        logger.info("Starting full reconciliation run")
        report.composition = self._stage(
            report, "compositions", lambda: materialize_minifig_parts(self.repository)
        )
        self._refresh(report, budget)
        self._match(report)
        self._rarity(report)
        return self._finish(report)

    def refresh(self, budget: Optional[int] = None) -> RunReport:
        report = RunReport()
        self._refresh(report, budget)
        return self._finish(report)

    def match(self) -> RunReport:
        report = RunReport()
        self._match(report)
        return self._finish(report)

    def rarity(self) -> RunReport:
        report = RunReport()
        self._rarity(report)
        return self._finish(report)
