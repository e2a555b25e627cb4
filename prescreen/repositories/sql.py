"""
SQLAlchemy-backed repositories.

All repositories in a bundle share one session. Each write commits
immediately and rolls back on failure before re-raising, so a failed write
never poisons the shared session for the next step.
"""
import logging
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import and_, case, func, or_, select

from prescreen.models.program import Program
from prescreen.models.batch import Batch
from prescreen.models.lead import Lead
from prescreen.models.result import Result
from prescreen.models.audit_log import AuditLogEntry
from prescreen.repositories.base import (
    ProgramRepository, BatchRepository, LeadRepository,
    ResultRepository, AuditLogRepository, Repositories,
)

logger = logging.getLogger('repositories.sql')

SCORED_TIERS = ('tier_1', 'tier_2', 'tier_3', 'below')
STALE_MATCH_STATUSES = ('api_error', 'pending')

# tier_1 first, then tier_2, tier_3, below, unqualified (filtered but matched), no match, pending
TIER_RANK = case(
    (Lead.tier == 'tier_1', 1),
    (Lead.tier == 'tier_2', 2),
    (Lead.tier == 'tier_3', 3),
    (Lead.tier == 'below', 4),
    (and_(Lead.tier == 'filtered', Lead.match_status != 'no_match'), 5),
    (and_(Lead.tier == 'filtered', Lead.match_status == 'no_match'), 6),
    else_=7,
)

# Latest bureau result for the lead, or its creation when it has none
LAST_ACTIVITY = func.coalesce(
    select(func.max(Result.updated_at))
    .where(Result.lead_id == Lead.id)
    .correlate(Lead)
    .scalar_subquery(),
    Lead.created_at,
)

LEAD_SORT_COLUMNS = {
    'first_name': Lead.first_name,
    'last_name': Lead.last_name,
    'match_status': Lead.match_status,
    'tier': TIER_RANK,
    'created_at': LAST_ACTIVITY,
}


class _SqlRepository:

    def __init__(self, session):
        self.session = session

    def _commit(self, obj=None):
        try:
            if obj is not None:
                self.session.add(obj)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        return obj


class SqlProgramRepository(_SqlRepository, ProgramRepository):

    def get(self, program_id):
        return self.session.get(Program, program_id)

    def find_active_by_name(self, name):
        return (
            self.session.query(Program)
            .filter_by(name=name, status='active')
            .order_by(Program.id.asc())
            .first()
        )

    def find_template(self):
        return (
            self.session.query(Program)
            .filter(Program.status == 'active', Program.altair_program_id.isnot(None))
            .order_by(Program.created_at.asc(), Program.id.asc())
            .first()
        )

    def list(self, status=None):
        query = self.session.query(Program).order_by(Program.created_at.desc())
        if status:
            query = query.filter_by(status=status)
        return query.all()

    def add(self, program):
        return self._commit(program)

    def save(self, program):
        return self._commit(program)

    def usage_counts(self, program_id):
        leads = self.session.query(func.count(Lead.id)).filter(Lead.program_id == program_id).scalar()
        batches = self.session.query(func.count(Batch.id)).filter(Batch.program_id == program_id).scalar()
        return {'leads': leads or 0, 'batches': batches or 0}


class SqlBatchRepository(_SqlRepository, BatchRepository):

    def get(self, batch_id):
        return self.session.get(Batch, batch_id)

    def add(self, batch):
        return self._commit(batch)

    def save(self, batch):
        return self._commit(batch)

    def list_recent(self, limit=50, program_id=None):
        query = self.session.query(Batch).order_by(Batch.created_at.desc(), Batch.id.desc())
        if program_id is not None:
            query = query.filter_by(program_id=program_id)
        return query.limit(limit).all()

    def totals(self):
        count, records, qualified, failed = self.session.query(
            func.count(Batch.id),
            func.coalesce(func.sum(Batch.total_records), 0),
            func.coalesce(func.sum(Batch.qualified_count), 0),
            func.coalesce(func.sum(Batch.failed_count), 0),
        ).one()
        return {
            'totalBatches': int(count),
            'totalRecords': int(records),
            'qualifiedRecords': int(qualified),
            'failedRecords': int(failed),
        }


class SqlLeadRepository(_SqlRepository, LeadRepository):

    def get(self, lead_id):
        return self.session.get(Lead, lead_id)

    def add(self, lead):
        return self._commit(lead)

    def save(self, lead):
        return self._commit(lead)

    def delete_many(self, lead_ids):
        lead_ids = list(lead_ids)
        if not lead_ids:
            return 0
        try:
            count = (
                self.session.query(Lead)
                .filter(Lead.id.in_(lead_ids))
                .delete(synchronize_session='fetch')
            )
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        return count

    def find_scored_by_name(self, program_id, first_name, last_name):
        return (
            self.session.query(Lead)
            .filter(
                Lead.program_id == program_id,
                func.lower(Lead.first_name) == first_name.strip().lower(),
                func.lower(Lead.last_name) == last_name.strip().lower(),
                or_(Lead.middle_score.isnot(None), Lead.tier.in_(SCORED_TIERS)),
            )
            .order_by(Lead.id.asc())
            .first()
        )

    def find_stale_by_names(self, program_id, names, exclude_batch_id=None):
        names = {(f.strip().lower(), l.strip().lower()) for f, l in names}
        if not names:
            return []
        name_clauses = [
            and_(func.lower(Lead.first_name) == f, func.lower(Lead.last_name) == l)
            for f, l in names
        ]
        query = self.session.query(Lead).filter(
            Lead.program_id == program_id,
            Lead.match_status.in_(STALE_MATCH_STATUSES),
            or_(*name_clauses),
        )
        if exclude_batch_id is not None:
            query = query.filter(or_(Lead.batch_id.is_(None), Lead.batch_id != exclude_batch_id))
        return query.order_by(Lead.id.asc()).all()

    def list_matched_with_pii(self):
        return (
            self.session.query(Lead)
            .filter(
                Lead.match_status == 'matched',
                Lead.ssn_encrypted.isnot(None),
                Lead.dob_encrypted.isnot(None),
            )
            .order_by(Lead.id.asc())
            .all()
        )

    def list_by_batch(self, batch_id, match_status=None):
        query = self.session.query(Lead).filter_by(batch_id=batch_id)
        if match_status:
            query = query.filter_by(match_status=match_status)
        return query.order_by(Lead.input_id.asc(), Lead.id.asc()).all()

    def tier_counts(self):
        rows = self.session.query(Lead.tier, func.count(Lead.id)).group_by(Lead.tier).all()
        return {tier: count for tier, count in rows}

    def search(self, filters=None, offset=0, limit=25, sort_by='created_at', sort_dir='desc'):
        filters = filters or {}
        query = self.session.query(Lead)

        text = (filters.get('search') or '').strip()
        if text:
            pattern = f'%{text.lower()}%'
            query = query.filter(or_(
                func.lower(Lead.first_name).like(pattern),
                func.lower(Lead.last_name).like(pattern),
                Lead.ssn_last_four.like(f'%{text}%'),
            ))

        tier = filters.get('tier')
        if tier == 'unqualified':
            query = query.filter(or_(
                Lead.tier == 'below',
                and_(Lead.tier == 'filtered', Lead.match_status == 'matched'),
            ))
        else:
            if tier:
                query = query.filter(Lead.tier == tier)
            if filters.get('match_status'):
                query = query.filter(Lead.match_status == filters['match_status'])

        if filters.get('program_id') is not None:
            query = query.filter(Lead.program_id == filters['program_id'])
        if filters.get('lead_ids'):
            query = query.filter(Lead.id.in_(filters['lead_ids']))
        elif filters.get('batch_id') is not None:
            query = query.filter(Lead.batch_id == filters['batch_id'])
        if filters.get('min_score') is not None:
            query = query.filter(Lead.middle_score >= filters['min_score'])
        if filters.get('max_score') is not None:
            query = query.filter(Lead.middle_score <= filters['max_score'])

        total = query.count()
        descending = sort_dir == 'desc'
        if sort_by == 'middle_score':
            # Unscored leads always sort last
            key = Lead.middle_score.desc() if descending else Lead.middle_score.asc()
            order = [Lead.middle_score.is_(None), key]
        else:
            column = LEAD_SORT_COLUMNS.get(sort_by, LAST_ACTIVITY)
            order = [column.desc() if descending else column.asc()]
        order.append(Lead.id.desc() if sort_dir == 'desc' else Lead.id.asc())

        items = query.order_by(*order).offset(offset).limit(limit).all()
        return items, total

    def monthly_usage(self, months=12):
        rows = (
            self.session.query(Lead.created_at, func.count(Result.id))
            .outerjoin(Result, Result.lead_id == Lead.id)
            .group_by(Lead.id, Lead.created_at)
            .all()
        )
        usage = {}
        for created_at, pulls in rows:
            if created_at is None:
                continue
            month = created_at.strftime('%Y-%m')
            bucket = usage.setdefault(month, {'month': month, 'leads': 0, 'pulls': 0})
            bucket['leads'] += 1
            bucket['pulls'] += int(pulls)
        return [usage[m] for m in sorted(usage, reverse=True)[:months]]


class SqlResultRepository(_SqlRepository, ResultRepository):

    def add(self, result):
        return self._commit(result)

    def bureau_counts(self):
        rows = self.session.query(Result.bureau, func.count(Result.id)).group_by(Result.bureau).all()
        return {bureau: count for bureau, count in rows}

    def upsert(self, lead_id, bureau, credit_score, is_hit, raw_output=None):
        result = (
            self.session.query(Result)
            .filter_by(lead_id=lead_id, bureau=bureau)
            .first()
        )
        if result is None:
            result = Result(lead_id=lead_id, bureau=bureau)
        result.credit_score = credit_score
        result.is_hit = is_hit
        result.raw_output = raw_output
        return self._commit(result)

    def list_for_lead(self, lead_id):
        return (
            self.session.query(Result)
            .filter_by(lead_id=lead_id)
            .order_by(Result.id.asc())
            .all()
        )

    def list_for_leads(self, lead_ids):
        lead_ids = list(lead_ids)
        grouped: Dict[int, List[Result]] = {lead_id: [] for lead_id in lead_ids}
        if not lead_ids:
            return grouped
        rows = (
            self.session.query(Result)
            .filter(Result.lead_id.in_(lead_ids))
            .order_by(Result.id.asc())
            .all()
        )
        for row in rows:
            grouped.setdefault(row.lead_id, []).append(row)
        return grouped

    def delete_for_leads(self, lead_ids):
        lead_ids = list(lead_ids)
        if not lead_ids:
            return 0
        try:
            count = (
                self.session.query(Result)
                .filter(Result.lead_id.in_(lead_ids))
                .delete(synchronize_session='fetch')
            )
            # Audit rows outlive the leads they point at
            self.session.query(AuditLogEntry).filter(
                AuditLogEntry.lead_id.in_(lead_ids)
            ).update({AuditLogEntry.lead_id: None}, synchronize_session='fetch')
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        return count


class SqlAuditLogRepository(_SqlRepository, AuditLogRepository):

    def add(self, entry):
        return self._commit(entry)

    def list(self, offset=0, limit=50, action=None, lead_id=None,
             performed_by=None) -> Tuple[List[AuditLogEntry], int]:
        query = self.session.query(AuditLogEntry)
        if action:
            query = query.filter_by(action=action)
        if lead_id is not None:
            query = query.filter_by(lead_id=lead_id)
        if performed_by:
            query = query.filter_by(performed_by=performed_by)
        total = query.count()
        items = (
            query.order_by(AuditLogEntry.created_at.desc(), AuditLogEntry.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        return items, total


def build_repositories(session) -> Repositories:
    """Bundle SQL repositories sharing one session."""
    return Repositories(
        programs=SqlProgramRepository(session),
        batches=SqlBatchRepository(session),
        leads=SqlLeadRepository(session),
        results=SqlResultRepository(session),
        audit=SqlAuditLogRepository(session),
    )
