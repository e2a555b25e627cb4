"""
AuditLogEntry model — append-only action trail.
"""
from sqlalchemy import Column, Integer, Text, DateTime, JSON, ForeignKey
from sqlalchemy.sql import func

from prescreen.database import Base


class AuditLogEntry(Base):
    __tablename__ = 'prescreen_audit_log'

    id = Column(Integer, primary_key=True, autoincrement=True)
    action = Column(Text, nullable=False, index=True)
    performed_by = Column(Text, nullable=True)
    lead_id = Column(Integer, ForeignKey('prescreen_leads.id', ondelete='SET NULL'), nullable=True)
    batch_id = Column(Integer, ForeignKey('prescreen_batches.id'), nullable=True)
    ip_address = Column(Text, nullable=True)
    user_agent = Column(Text, nullable=True)
    details = Column(JSON, default=dict)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
