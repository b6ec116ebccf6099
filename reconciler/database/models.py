from sqlalchemy import Column, Integer, String, Float, DateTime, Text, JSON, Boolean
from sqlalchemy.orm import declarative_base

Base = declarative_base()

# Marker written when BrickLink was crawled and reported nothing
SENTINEL_ID = "__none__"

FIG_SET_PREFIX = "fig-"


class RBColor(Base):
    __tablename__ = "rb_colors"

    id = Column(Integer, primary_key=True, autoincrement=False)
    name = Column(String(255), nullable=False, default="")
    # {"BrickLink": {"ext_ids": [..]}} or {"BrickLink": [..]}
    external_ids = Column(JSON)


class RBPart(Base):
    __tablename__ = "rb_parts"

    part_num = Column(String(64), primary_key=True)
    name = Column(Text, nullable=False, default="")
    bl_part_id = Column(String(64))
    external_ids = Column(JSON)


class RBSet(Base):
    __tablename__ = "rb_sets"

    set_num = Column(String(64), primary_key=True)
    name = Column(Text, nullable=False, default="")
    year = Column(Integer)


class RBMinifig(Base):
    __tablename__ = "rb_minifigs"

    fig_num = Column(String(64), primary_key=True)
    name = Column(Text, nullable=False, default="")
    num_parts = Column(Integer)

    # BrickLink cross-reference, written only by the matchers
    bl_minifig_id = Column(String(64), index=True)
    bl_mapping_confidence = Column(Float)
    bl_mapping_source = Column(String(50))  # tier1_elimination, tier2_overlap, ...
    matched_at = Column(DateTime)


class RBInventory(Base):
    __tablename__ = "rb_inventories"

    id = Column(Integer, primary_key=True, autoincrement=False)
    version = Column(Integer)
    set_num = Column(String(64), index=True)  # fig-* for minifigure inventories


class RBInventoryPart(Base):
    __tablename__ = "rb_inventory_parts"

    inventory_id = Column(Integer, primary_key=True, autoincrement=False)
    part_num = Column(String(64), primary_key=True)
    color_id = Column(Integer, primary_key=True, autoincrement=False)
    is_spare = Column(Boolean, primary_key=True, default=False)
    quantity = Column(Integer, nullable=False, default=1)


class RBInventoryMinifig(Base):
    __tablename__ = "rb_inventory_minifigs"

    inventory_id = Column(Integer, primary_key=True, autoincrement=False)
    fig_num = Column(String(64), primary_key=True, index=True)
    quantity = Column(Integer, nullable=False, default=1)


class RBMinifigPart(Base):
    """Part composition of an RB minifigure, materialized from fig-* inventories"""

    __tablename__ = "rb_minifig_parts"

    fig_num = Column(String(64), primary_key=True)
    part_num = Column(String(64), primary_key=True)
    color_id = Column(Integer, primary_key=True, autoincrement=False)
    quantity = Column(Integer, nullable=False, default=1)


class BLSetMinifig(Base):
    __tablename__ = "bl_set_minifigs"

    set_num = Column(String(64), primary_key=True)
    minifig_no = Column(String(64), primary_key=True, index=True)
    name = Column(Text)
    quantity = Column(Integer, nullable=False, default=1)
    last_refreshed_at = Column(DateTime)


class BLMinifigPart(Base):
    __tablename__ = "bl_minifig_parts"

    bl_minifig_no = Column(String(64), primary_key=True, index=True)
    bl_part_id = Column(String(64), primary_key=True)
    bl_color_id = Column(Integer, primary_key=True, autoincrement=False, default=0)
    name = Column(Text)
    quantity = Column(Integer, nullable=False, default=1)
    last_refreshed_at = Column(DateTime)


class PartRarity(Base):
    __tablename__ = "rb_part_rarity"

    part_num = Column(String(64), primary_key=True)
    color_id = Column(Integer, primary_key=True, autoincrement=False)
    set_count = Column(Integer, nullable=False)


class MinifigRarity(Base):
    __tablename__ = "rb_minifig_rarity"

    fig_num = Column(String(64), primary_key=True)
    min_subpart_set_count = Column(Integer, nullable=False)
    set_count = Column(Integer, nullable=False, default=0)
