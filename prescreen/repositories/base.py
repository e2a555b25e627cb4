"""
Repository contracts — one per persisted entity.

Orchestrators only see these interfaces; the SQLAlchemy implementations live
in repositories/sql.py; tests run them over in-memory SQLite. Every write is committed
on its own: nothing in the pipeline spans a multi-statement transaction.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple


class ProgramRepository(ABC):

    @abstractmethod
    def get(self, program_id: int):
        ...

    @abstractmethod
    def find_active_by_name(self, name: str):
        """First active program with exactly this name, or None."""
        ...

    @abstractmethod
    def find_template(self):
        """Earliest-created active program that already has an Altair id."""
        ...

    @abstractmethod
    def list(self, status: Optional[str] = None) -> List[Any]:
        ...

    @abstractmethod
    def add(self, program):
        ...

    @abstractmethod
    def save(self, program):
        ...

    @abstractmethod
    def usage_counts(self, program_id: int) -> Dict[str, int]:
        """{'leads': n, 'batches': n} attached to the program."""
        ...


class BatchRepository(ABC):

    @abstractmethod
    def get(self, batch_id: int):
        ...

    @abstractmethod
    def add(self, batch):
        ...

    @abstractmethod
    def save(self, batch):
        ...

    @abstractmethod
    def list_recent(self, limit: int = 50, program_id: Optional[int] = None) -> List[Any]:
        ...

    @abstractmethod
    def totals(self) -> Dict[str, int]:
        """Batch count and summed record/qualified/failed counts over every batch."""
        ...


class LeadRepository(ABC):

    @abstractmethod
    def get(self, lead_id: int):
        ...

    @abstractmethod
    def add(self, lead):
        ...

    @abstractmethod
    def save(self, lead):
        ...

    @abstractmethod
    def delete_many(self, lead_ids: Iterable[int]) -> int:
        ...

    @abstractmethod
    def find_scored_by_name(self, program_id: int, first_name: str, last_name: str):
        """A lead in this program with the same name (case-insensitive) that already has a score or scored tier."""
        ...

    @abstractmethod
    def find_stale_by_names(self, program_id: int, names: Iterable[Tuple[str, str]],
                            exclude_batch_id: Optional[int] = None) -> List[Any]:
        """Leads in other batches of the program, matching any name, stuck in api_error/pending."""
        ...

    @abstractmethod
    def list_matched_with_pii(self) -> List[Any]:
        """Matched leads that still hold both encrypted SSN and DOB, ordered by id."""
        ...

    @abstractmethod
    def list_by_batch(self, batch_id: int, match_status: Optional[str] = None) -> List[Any]:
        ...

    @abstractmethod
    def tier_counts(self) -> Dict[str, int]:
        ...

    @abstractmethod
    def search(self, filters: Optional[Dict[str, Any]] = None, offset: int = 0, limit: int = 25,
               sort_by: str = 'created_at', sort_dir: str = 'desc') -> Tuple[List[Any], int]:
        """
        One page of leads plus the total matching count.

        filters: search (name or SSN last four), tier ('unqualified' = below
        or matched-but-filtered), match_status, program_id, batch_id, lead_ids,
        min_score, max_score. lead_ids takes precedence over batch_id.
        """
        ...

    @abstractmethod
    def monthly_usage(self, months: int = 12) -> List[Dict[str, Any]]:
        """Newest-first [{'month': 'YYYY-MM', 'leads': n, 'pulls': n}] by lead creation month."""
        ...


class ResultRepository(ABC):

    @abstractmethod
    def add(self, result):
        ...

    @abstractmethod
    def upsert(self, lead_id: int, bureau: str, credit_score, is_hit: bool, raw_output=None):
        """Create or overwrite the single Result keyed by (lead_id, bureau)."""
        ...

    @abstractmethod
    def list_for_lead(self, lead_id: int) -> List[Any]:
        ...

    @abstractmethod
    def list_for_leads(self, lead_ids: Iterable[int]) -> Dict[int, List[Any]]:
        ...

    @abstractmethod
    def delete_for_leads(self, lead_ids: Iterable[int]) -> int:
        ...

    @abstractmethod
    def bureau_counts(self) -> Dict[str, int]:
        """Result rows per bureau, i.e. bureau pulls on file."""
        ...


class AuditLogRepository(ABC):

    @abstractmethod
    def add(self, entry):
        ...

    @abstractmethod
    def list(self, offset: int = 0, limit: int = 50, action: Optional[str] = None,
             lead_id: Optional[int] = None, performed_by: Optional[str] = None) -> Tuple[List[Any], int]:
        """Newest-first page of entries plus the total matching count."""
        ...


@dataclass
class Repositories:
    """Bundle handed to the orchestrators."""
    programs: ProgramRepository
    batches: BatchRepository
    leads: LeadRepository
    results: ResultRepository
    audit: AuditLogRepository
