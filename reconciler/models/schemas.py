from pydantic import BaseModel, Field
from typing import List, Optional, Dict, Literal, Union
from datetime import datetime
from enum import Enum


class ItemType(str, Enum):
    SET = "SET"
    MINIFIG = "MINIFIG"
    PART = "PART"


class MatchSource(str, Enum):
    TIER1_SINGLE_SET = "tier1_single_set"
    TIER1_ELIMINATION = "tier1_elimination"
    TIER2_EXACT = "tier2_exact"
    TIER2_OVERLAP = "tier2_overlap"
    TIER2_FUZZY = "tier2_fuzzy"
    TIER2_GLOBAL_EXACT = "tier2_global_exact"
    TIER2_GLOBAL_OVERLAP = "tier2_global_overlap"
    TIER2_GLOBAL_FUZZY = "tier2_global_fuzzy"


class SubsetItem(BaseModel):
    no: str
    type: str
    name: Optional[str] = None


class SubsetEntry(BaseModel):
    """One flattened line of a BrickLink subsets response"""
    item: SubsetItem
    color_id: Optional[int] = None
    quantity: int = 1


class FingerprintPart(BaseModel):
    part_id: str
    color_id: int
    quantity: int = 1


Fingerprint = List[FingerprintPart]


class ComparisonResult(BaseModel):
    score: float = Field(ge=0, le=1)
    matched_parts: int = 0
    total_parts: int = 0


class EmptyComposition(BaseModel):
    """BrickLink was crawled and reported zero parts"""
    kind: Literal["empty"] = "empty"


class PartsComposition(BaseModel):
    kind: Literal["parts"] = "parts"
    parts: Fingerprint


Composition = Union[EmptyComposition, PartsComposition]


class MatchDecision(BaseModel):
    bl_minifig_id: str
    confidence: float = Field(ge=0, le=1)
    source: MatchSource
    score: float = Field(ge=0, le=1)


class RefreshStats(BaseModel):
    candidates: int = 0
    crawled: int = 0
    rows_written: int = 0
    empty: int = 0
    errors: int = 0
    budget_exhausted: bool = False


class MaterializeStats(BaseModel):
    strategy: str
    part_rows: int = 0
    minifig_rows: int = 0


class RunReport(BaseModel):
    started_at: datetime = Field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None
    api_calls: int = 0
    set_refresh: Optional[RefreshStats] = None
    minifig_refresh: Optional[RefreshStats] = None
    matches: Dict[str, int] = {}
    composition: Optional[MaterializeStats] = None
    rarity: Optional[MaterializeStats] = None
    failed_stages: List[str] = []

    @property
    def total_matches(self) -> int:
        return sum(self.matches.values())
