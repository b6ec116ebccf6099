"""
RB -> BL vocabulary maps for colors and parts.

Both maps are built once per run from already-ingested enrichment metadata
and handed to the fingerprint builder; nothing here is cached at module
level.
"""

from typing import Any, Dict, Optional
import logging

from reconciler.database.models import RBColor, RBPart
from reconciler.database.repository import CatalogRepository

logger = logging.getLogger(__name__)


def extract_bricklink_id(external_ids: Any) -> Optional[Any]:
    """First BrickLink id from an ``external_ids`` blob.

    Accepts ``{"BrickLink": ["3024"]}`` and
    ``{"BrickLink": {"ext_ids": [3024]}}``.
    """
    if not isinstance(external_ids, dict):
        return None

    bl_ids = external_ids.get("BrickLink")
    if isinstance(bl_ids, dict):
        bl_ids = bl_ids.get("ext_ids")
    if not isinstance(bl_ids, list):
        return None

    for candidate in bl_ids:
        if isinstance(candidate, bool):
            continue
        if isinstance(candidate, (int, str)) and str(candidate).strip():
            return candidate
    return None


def build_rb_to_bl_color_map(repository: CatalogRepository) -> Dict[int, int]:
    """RB color id -> BL color id; colors without a usable BL id are absent"""
    color_map: Dict[int, int] = {}
    for row in repository.iter_rows(
        RBColor,
        RBColor.external_ids.isnot(None),
        columns=[RBColor.id, RBColor.external_ids],
    ):
        bl_id = extract_bricklink_id(row.external_ids)
        if bl_id is None:
            continue
        try:
            color_map[row.id] = int(bl_id)
        except (TypeError, ValueError):
            logger.debug(f"Ignoring non-numeric BrickLink color id {bl_id!r} for RB color {row.id}")

    logger.info(f"Built RB->BL color map with {len(color_map)} entries")
    return color_map


def build_bl_part_map(repository: CatalogRepository) -> Dict[str, str]:
    """RB part_num -> BL part id, only where the two differ"""
    part_map: Dict[str, str] = {}
    for row in repository.iter_rows(
        RBPart,
        (RBPart.bl_part_id.isnot(None)) | (RBPart.external_ids.isnot(None)),
        columns=[RBPart.part_num, RBPart.bl_part_id, RBPart.external_ids],
    ):
        bl_id = row.bl_part_id or extract_bricklink_id(row.external_ids)
        if bl_id is None:
            continue
        bl_id = str(bl_id)
        if bl_id != row.part_num:
            part_map[row.part_num] = bl_id

    logger.info(f"Built RB->BL part map with {len(part_map)} entries")
    return part_map
