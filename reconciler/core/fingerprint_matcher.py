"""
Tier-2 matching by part-composition fingerprints.

The set-scoped matcher only considers BL minifigures that BL lists in the
same sets as the RB minifigure. The global matcher considers every
unmatched BL minifigure with known parts and therefore gets lower
confidence ceilings.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Set, Tuple
import logging

from reconciler.core.fingerprint import (
    build_rb_fingerprint,
    compare_fingerprints,
    compare_fingerprints_parts_only,
    fetch_bl_fingerprint,
    fingerprint_part_ids,
)
from reconciler.database.repository import CatalogRepository
from reconciler.models.errors import StoreWriteError
from reconciler.models.schemas import (
    ComparisonResult,
    Fingerprint,
    MatchDecision,
    MatchSource,
)

logger = logging.getLogger(__name__)

EXACT_THRESHOLD = 0.95
OVERLAP_THRESHOLD = 0.8
FUZZY_THRESHOLD = 0.7
PARTS_ONLY_THRESHOLD = 0.75


@dataclass(frozen=True)
class TierPolicy:
    """Confidence calibration for one fingerprint tier"""
    prefix: str
    exact_confidence: float
    overlap_base: float
    overlap_slope: float
    fuzzy_base: float = 0.65
    fuzzy_slope: float = 0.5

    def source(self, kind: str) -> MatchSource:
        return MatchSource(f"{self.prefix}_{kind}")


SET_SCOPED_POLICY = TierPolicy("tier2", exact_confidence=0.95, overlap_base=0.8, overlap_slope=0.75)
GLOBAL_POLICY = TierPolicy("tier2_global", exact_confidence=0.90, overlap_base=0.75, overlap_slope=0.5)


def classify_match(
    best_score: float,
    rb_fingerprint: Fingerprint,
    bl_fingerprint: Fingerprint,
    policy: TierPolicy,
) -> Optional[Tuple[float, MatchSource]]:
    """Map a color-aware score to (confidence, source), or None to reject"""
    if best_score >= EXACT_THRESHOLD:
        return policy.exact_confidence, policy.source("exact")

    if best_score >= OVERLAP_THRESHOLD:
        confidence = policy.overlap_base + (best_score - OVERLAP_THRESHOLD) * policy.overlap_slope
        return confidence, policy.source("overlap")

    if best_score >= FUZZY_THRESHOLD:
        parts_only = compare_fingerprints_parts_only(rb_fingerprint, bl_fingerprint)
        if parts_only.score >= PARTS_ONLY_THRESHOLD:
            confidence = policy.fuzzy_base + (best_score - FUZZY_THRESHOLD) * policy.fuzzy_slope
            return confidence, policy.source("fuzzy")

    return None


def cmf_base_set(set_num: str) -> Optional[str]:
    """``71045-7`` -> ``71045-1``; None for base packs and non-numbered sets"""
    base, sep, suffix = set_num.rpartition("-")
    if sep and base and suffix.isdigit() and int(suffix) > 1:
        return f"{base}-1"
    return None


class FingerprintMatcher(ABC):
    """Shared scoring loop; subclasses decide where candidates come from"""

    policy: TierPolicy = SET_SCOPED_POLICY

    def __init__(
        self,
        repository: CatalogRepository,
        bl_part_map: Dict[str, str],
        rb_to_bl_color: Dict[int, int],
    ):
        self.repository = repository
        self.bl_part_map = bl_part_map
        self.rb_to_bl_color = rb_to_bl_color

    def prepare(self, matched_bl: Set[str]) -> None:
        """Load whatever the candidate search needs for this run"""

    @abstractmethod
    def candidates_for(self, fig_num: str, rb_fingerprint: Fingerprint) -> Iterable[str]:
        ...

    @abstractmethod
    def bl_fingerprint(self, bl_id: str) -> Fingerprint:
        ...

    def forget(self, bl_id: str) -> None:
        """Drop a BL id that has just been claimed"""

    def best_candidate(
        self, rb_fingerprint: Fingerprint, candidates: Iterable[str]
    ) -> Tuple[Optional[str], ComparisonResult, Fingerprint]:
        best_id = None
        best = ComparisonResult(score=0.0)
        best_fingerprint: Fingerprint = []
        for bl_id in sorted(candidates):
            bl_fingerprint = self.bl_fingerprint(bl_id)
            if not bl_fingerprint:
                continue
            result = compare_fingerprints(rb_fingerprint, bl_fingerprint)
            if result.score > best.score:
                best_id, best, best_fingerprint = bl_id, result, bl_fingerprint
        return best_id, best, best_fingerprint

    def decide(self, fig_num: str, matched_bl: Set[str]) -> Optional[MatchDecision]:
        rb_fingerprint = build_rb_fingerprint(
            self.repository, fig_num, self.bl_part_map, self.rb_to_bl_color
        )
        if not rb_fingerprint:
            return None

        candidates = [
            bl_id
            for bl_id in self.candidates_for(fig_num, rb_fingerprint)
            if bl_id not in matched_bl
        ]
        if not candidates:
            return None

        best_id, best, best_fingerprint = self.best_candidate(rb_fingerprint, candidates)
        if best_id is None:
            return None

        classified = classify_match(best.score, rb_fingerprint, best_fingerprint, self.policy)
        if classified is None:
            logger.debug(f"{self.policy.prefix}: {fig_num} best {best_id} rejected at {best.score:.3f}")
            return None

        confidence, source = classified
        return MatchDecision(
            bl_minifig_id=best_id,
            confidence=confidence,
            source=source,
            score=best.score,
        )

    def run(self) -> Dict[str, int]:
        _, matched_bl = self.repository.match_state()
        self.prepare(matched_bl)

        counts: Dict[str, int] = {}
        unmatched = self.repository.unmatched_fig_nums()
        for fig_num in unmatched:
            decision = self.decide(fig_num, matched_bl)
            if decision is None:
                continue

            try:
                stored = self.repository.assign_match(
                    fig_num,
                    decision.bl_minifig_id,
                    decision.confidence,
                    decision.source.value,
                )
            except StoreWriteError as e:
                logger.warning(f"{self.policy.prefix}: could not store {fig_num} -> {decision.bl_minifig_id}: {e}")
                continue
            if not stored:
                continue

            matched_bl.add(decision.bl_minifig_id)
            self.forget(decision.bl_minifig_id)
            counts[decision.source.value] = counts.get(decision.source.value, 0) + 1
            logger.debug(
                f"{self.policy.prefix}: {fig_num} -> {decision.bl_minifig_id} "
                f"score={decision.score:.3f} confidence={decision.confidence:.3f}"
            )

        logger.info(
            f"{self.policy.prefix}: matched {sum(counts.values())} of {len(unmatched)} unmatched minifigs"
        )
        return counts


class SetScopedFingerprintMatcher(FingerprintMatcher):
    """Candidates are BL minifigures listed in the RB minifigure's own sets"""

    policy = SET_SCOPED_POLICY

    def prepare(self, matched_bl: Set[str]) -> None:
        self._sets_by_fig: Dict[str, Set[str]] = {}
        for set_num, figs in self.repository.minifigs_by_set().items():
            for fig_num in figs:
                self._sets_by_fig.setdefault(fig_num, set()).add(set_num)
        self._bl_fingerprints: Dict[str, Fingerprint] = {}

    def candidate_sets(self, fig_num: str) -> Set[str]:
        set_nums = set(self._sets_by_fig.get(fig_num, ()))
        for set_num in list(set_nums):
            base = cmf_base_set(set_num)
            if base:
                set_nums.add(base)
        return set_nums

    def candidates_for(self, fig_num: str, rb_fingerprint: Fingerprint) -> Iterable[str]:
        set_nums = self.candidate_sets(fig_num)
        if not set_nums:
            return []
        return self.repository.bl_minifigs_for_sets(set_nums)

    def bl_fingerprint(self, bl_id: str) -> Fingerprint:
        if bl_id not in self._bl_fingerprints:
            self._bl_fingerprints[bl_id] = fetch_bl_fingerprint(self.repository, bl_id)
        return self._bl_fingerprints[bl_id]


class GlobalFingerprintMatcher(FingerprintMatcher):
    """Candidates are every unmatched BL minifigure with known parts"""

    policy = GLOBAL_POLICY

    def prepare(self, matched_bl: Set[str]) -> None:
        self._pool: Dict[str, Fingerprint] = {
            bl_id: fingerprint
            for bl_id, fingerprint in self.repository.all_bl_fingerprints().items()
            if bl_id not in matched_bl
        }
        # Only candidates sharing a part id can score above zero
        self._by_part: Dict[str, Set[str]] = {}
        for bl_id, fingerprint in self._pool.items():
            for part_id in fingerprint_part_ids(fingerprint):
                self._by_part.setdefault(part_id, set()).add(bl_id)
        logger.info(f"{self.policy.prefix}: {len(self._pool)} BL minifigs in candidate pool")

    def candidates_for(self, fig_num: str, rb_fingerprint: Fingerprint) -> Iterable[str]:
        candidates: Set[str] = set()
        for part_id in fingerprint_part_ids(rb_fingerprint):
            candidates.update(self._by_part.get(part_id, ()))
        return candidates

    def bl_fingerprint(self, bl_id: str) -> Fingerprint:
        return self._pool.get(bl_id, [])

    def forget(self, bl_id: str) -> None:
        fingerprint = self._pool.pop(bl_id, None)
        for part_id in fingerprint_part_ids(fingerprint):
            self._by_part.get(part_id, set()).discard(bl_id)
