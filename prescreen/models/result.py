"""
Result model — one row per (lead, bureau).

A row with is_hit=False means the bureau was queried and confirmed no data;
no row at all means the bureau was never queried for this lead.
"""
from sqlalchemy import Column, Integer, Text, Boolean, DateTime, JSON, ForeignKey, UniqueConstraint
from sqlalchemy.sql import func

from prescreen.database import Base


class Result(Base):
    __tablename__ = 'prescreen_results'

    id = Column(Integer, primary_key=True, autoincrement=True)
    lead_id = Column(Integer, ForeignKey('prescreen_leads.id'), nullable=False, index=True)
    bureau = Column(Text, nullable=False)         # eq / tu / ex
    credit_score = Column(Integer, nullable=True)
    is_hit = Column(Boolean, default=False)
    raw_output = Column(JSON, nullable=True)      # vendor-owned shape, stored as-is
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    __table_args__ = (
        UniqueConstraint('lead_id', 'bureau', name='uq_result_lead_bureau'),
    )
