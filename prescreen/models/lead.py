"""
Lead model — one screened consumer identity within a batch.

SSN and DOB are only ever stored encrypted; ssn_last_four is kept for display.
tier / middle_score are derived from the lead's Result rows by the scoring
engine and are never set by hand.
"""
from sqlalchemy import Column, Integer, Text, Boolean, DateTime, ForeignKey
from sqlalchemy.sql import func

from prescreen.database import Base


class Lead(Base):
    __tablename__ = 'prescreen_leads'

    id = Column(Integer, primary_key=True, autoincrement=True)
    batch_id = Column(Integer, ForeignKey('prescreen_batches.id'), nullable=True, index=True)
    program_id = Column(Integer, ForeignKey('prescreen_programs.id'), nullable=False, index=True)
    input_id = Column(Integer, nullable=True)      # 1-indexed position in the submission
    first_name = Column(Text, nullable=False)
    last_name = Column(Text, nullable=False)
    middle_initial = Column(Text, nullable=True)
    address = Column(Text, nullable=True)
    address_2 = Column(Text, nullable=True)
    city = Column(Text, nullable=True)
    state = Column(Text, nullable=True)
    zip = Column(Text, nullable=True)
    ssn_encrypted = Column(Text, nullable=True)
    ssn_last_four = Column(Text, nullable=True)
    dob_encrypted = Column(Text, nullable=True)
    middle_score = Column(Integer, nullable=True)
    tier = Column(Text, nullable=False, default='pending')
    is_qualified = Column(Boolean, default=False)
    match_status = Column(Text, nullable=False, default='pending', index=True)
    segment_name = Column(Text, nullable=True)
    error_message = Column(Text, nullable=True)
    notes = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
