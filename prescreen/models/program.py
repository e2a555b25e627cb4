"""
Program model — one prescreen program definition, optionally mirrored upstream.

altair_program_id stays NULL until the program is successfully created on
Altair; once set it is the program's upstream identity and is never changed.
"""
from sqlalchemy import Column, Integer, Text, Boolean, DateTime, JSON
from sqlalchemy.sql import func

from prescreen.database import Base


class Program(Base):
    __tablename__ = 'prescreen_programs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    altair_program_id = Column(Integer, nullable=True)
    name = Column(Text, nullable=False, index=True)
    description = Column(Text, nullable=True)
    min_score = Column(Integer, default=500)
    max_score = Column(Integer, default=850)
    eq_enabled = Column(Boolean, default=True)
    tu_enabled = Column(Boolean, default=True)
    ex_enabled = Column(Boolean, default=False)
    config = Column(JSON, default=dict)   # opaque: score versions, outputs, fill markers
    status = Column(Text, nullable=False, default='active')
    created_by = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    @property
    def is_fill_program(self):
        return bool((self.config or {}).get('is_fill_program'))
