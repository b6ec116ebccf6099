"""
Tier-1 matching by process of elimination over shared sets.

When a set has exactly one unmatched RB minifigure and exactly one
unmatched BL minifigure, the two must be the same figure. Every match can
leave another set with a single candidate on each side, so passes repeat
until one produces nothing new.
"""

from dataclasses import dataclass
from typing import Dict, FrozenSet, List, Set, Tuple
import logging

from reconciler.database.repository import CatalogRepository
from reconciler.models.errors import StoreWriteError
from reconciler.models.schemas import MatchSource

logger = logging.getLogger(__name__)

TIER1_CONFIDENCE = 1.0


@dataclass(frozen=True)
class EliminationMatch:
    fig_num: str
    bl_minifig_id: str
    set_num: str
    pass_number: int

    @property
    def source(self) -> MatchSource:
        if self.pass_number == 1:
            return MatchSource.TIER1_SINGLE_SET
        return MatchSource.TIER1_ELIMINATION


def elimination_pass(
    rb_by_set: Dict[str, Set[str]],
    bl_by_set: Dict[str, Set[str]],
    matched_rb: FrozenSet[str],
    matched_bl: FrozenSet[str],
    pass_number: int,
) -> Tuple[List[EliminationMatch], FrozenSet[str], FrozenSet[str]]:
    """One scan over every set; returns the matches and the grown snapshots"""
    matches = []
    for set_num in sorted(rb_by_set):
        unmatched_rb = rb_by_set[set_num] - matched_rb
        unmatched_bl = bl_by_set.get(set_num, set()) - matched_bl
        if len(unmatched_rb) != 1 or len(unmatched_bl) != 1:
            continue

        fig_num = next(iter(unmatched_rb))
        bl_id = next(iter(unmatched_bl))
        matches.append(EliminationMatch(fig_num, bl_id, set_num, pass_number))
        matched_rb = matched_rb | {fig_num}
        matched_bl = matched_bl | {bl_id}

    return matches, matched_rb, matched_bl


def find_elimination_matches(
    rb_by_set: Dict[str, Set[str]],
    bl_by_set: Dict[str, Set[str]],
    matched_rb: FrozenSet[str] = frozenset(),
    matched_bl: FrozenSet[str] = frozenset(),
) -> List[EliminationMatch]:
    """Repeat elimination passes until a pass finds no new pair"""
    found: List[EliminationMatch] = []
    pass_number = 0
    while True:
        pass_number += 1
        matches, matched_rb, matched_bl = elimination_pass(
            rb_by_set, bl_by_set, matched_rb, matched_bl, pass_number
        )
        if not matches:
            logger.debug(f"Elimination converged after {pass_number} passes")
            return found
        found.extend(matches)


class SetEliminationMatcher:
    """Tier-1 matcher over RB inventories and BL set contents"""

    def __init__(self, repository: CatalogRepository):
        self.repository = repository

    def run(self) -> Dict[str, int]:
        bl_by_set = self.repository.bl_minifigs_by_set()
        if not bl_by_set:
            logger.info("Tier-1: no BL set data, nothing to eliminate")
            return {}

        rb_by_set = {
            set_num: figs
            for set_num, figs in self.repository.minifigs_by_set().items()
            if set_num in bl_by_set
        }
        matched_rb, matched_bl = self.repository.match_state()

        matches = find_elimination_matches(
            rb_by_set, bl_by_set, frozenset(matched_rb), frozenset(matched_bl)
        )

        counts: Dict[str, int] = {}
        for match in matches:
            try:
                stored = self.repository.assign_match(
                    match.fig_num,
                    match.bl_minifig_id,
                    TIER1_CONFIDENCE,
                    match.source.value,
                )
            except StoreWriteError as e:
                logger.warning(f"Tier-1: could not store {match.fig_num} -> {match.bl_minifig_id}: {e}")
                continue
            if stored:
                counts[match.source.value] = counts.get(match.source.value, 0) + 1
                logger.debug(
                    f"Tier-1: {match.fig_num} -> {match.bl_minifig_id} "
                    f"via set {match.set_num} (pass {match.pass_number})"
                )

        logger.info(f"Tier-1: matched {sum(counts.values())} minifigs via set elimination")
        return counts
