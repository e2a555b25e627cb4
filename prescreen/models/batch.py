"""
Batch model — one row per submission or per-bureau fill call.
"""
from sqlalchemy import Column, Integer, Text, DateTime, JSON, ForeignKey
from sqlalchemy.sql import func

from prescreen.database import Base


class Batch(Base):
    __tablename__ = 'prescreen_batches'

    id = Column(Integer, primary_key=True, autoincrement=True)
    program_id = Column(Integer, ForeignKey('prescreen_programs.id'), nullable=False, index=True)
    name = Column(Text, nullable=False)
    status = Column(Text, nullable=False, default='processing')
    total_records = Column(Integer, default=0)
    qualified_count = Column(Integer, default=0)
    failed_count = Column(Integer, default=0)
    lead_ids = Column(JSON, nullable=True)        # fill batches: originating lead ids
    error_message = Column(Text, nullable=True)
    submitted_by = Column(Text, nullable=True)
    submitted_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
