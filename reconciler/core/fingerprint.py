"""
Part-composition fingerprints and multiset similarity.

A fingerprint is a list of (BL part id, BL color id, quantity) lines. RB
minifigures are translated into the BL vocabulary before comparison.
"""

import re
from collections import Counter
from typing import Callable, Dict, Hashable, Optional

from reconciler.database.repository import CatalogRepository
from reconciler.models.schemas import (
    ComparisonResult,
    Fingerprint,
    FingerprintPart,
    PartsComposition,
)

_LEG_VARIANT = re.compile(r"^970c\d+$")


def normalize_part_num(part_num: str) -> str:
    """Collapse 970c / 970cm leg assembly variants to one canonical id"""
    if part_num.startswith("970cm"):
        return "970cm00"
    if _LEG_VARIANT.match(part_num):
        return "970c00"
    return part_num


def build_rb_fingerprint(
    repository: CatalogRepository,
    fig_num: str,
    bl_part_map: Dict[str, str],
    rb_to_bl_color: Dict[int, int],
) -> Fingerprint:
    """RB composition in BL vocabulary; lines with unmapped colors are dropped"""
    fingerprint = []
    for row in repository.minifig_parts(fig_num):
        bl_color_id = rb_to_bl_color.get(row.color_id)
        if bl_color_id is None:
            continue
        fingerprint.append(
            FingerprintPart(
                part_id=bl_part_map.get(row.part_num, row.part_num),
                color_id=bl_color_id,
                quantity=row.quantity or 1,
            )
        )
    return fingerprint


def fetch_bl_fingerprint(repository: CatalogRepository, bl_id: str) -> Fingerprint:
    composition = repository.bl_composition(bl_id)
    if isinstance(composition, PartsComposition):
        return composition.parts
    return []


def _part_color_key(part: FingerprintPart):
    return normalize_part_num(part.part_id), part.color_id


def _part_key(part: FingerprintPart):
    return normalize_part_num(part.part_id)


def _multiset(
    fingerprint: Fingerprint, key: Callable[[FingerprintPart], Hashable]
) -> Counter:
    counts = Counter()
    for part in fingerprint:
        counts[key(part)] += part.quantity
    return counts


def _containment(a: Counter, b: Counter) -> ComparisonResult:
    # Counter & Counter keeps the per-key minimum
    matched = sum((a & b).values())
    total = max(sum(a.values()), sum(b.values()))
    return ComparisonResult(
        score=matched / total if total > 0 else 0.0,
        matched_parts=matched,
        total_parts=total,
    )


def compare_fingerprints(a: Fingerprint, b: Fingerprint) -> ComparisonResult:
    """Color-aware score: sum of per-key minimums over the larger side's total"""
    if not a or not b:
        return ComparisonResult(
            score=0.0,
            matched_parts=0,
            total_parts=max(len(a), len(b)),
        )
    return _containment(_multiset(a, _part_color_key), _multiset(b, _part_color_key))


def compare_fingerprints_parts_only(a: Fingerprint, b: Fingerprint) -> ComparisonResult:
    """Same score with colors ignored"""
    if not a or not b:
        return ComparisonResult(score=0.0)
    return _containment(_multiset(a, _part_key), _multiset(b, _part_key))


def fingerprint_part_ids(fingerprint: Optional[Fingerprint]) -> set:
    return {normalize_part_num(p.part_id) for p in fingerprint or []}
