"""
Submission orchestrator — bulk load of identity records into a program.

Flow per submit_batch() call:
  validate → dedup against already-scored leads → batch row → Altair submit
  → persist leads + bureau results → stale cleanup → finalize + audit

A program without an Altair id runs in manual mode: leads are stored as
pending and nothing is sent upstream.
"""
import logging
from datetime import datetime, timezone
from typing import Dict, List, Any, Optional

from prescreen.config import BUREAUS, MAX_RECORDS_PER_SUBMISSION
from prescreen.models.batch import Batch
from prescreen.models.lead import Lead
from prescreen.pipeline.base import (
    NotFoundError, SubmissionFailedError, SubmissionResult, ValidationError,
)
from prescreen.pipeline.scoring import extract_bureau_scores, score_lead
from prescreen.services import audit
from prescreen.services.altair import format_record
from prescreen.services.encryption import DecryptionError

logger = logging.getLogger('pipeline.submission')

REQUIRED_NAME_FIELDS = ('first_name', 'last_name')
REQUIRED_ADDRESS_FIELDS = ('address', 'city', 'state', 'zip')
OPTIONAL_TEXT_FIELDS = ('middle_initial', 'address2', 'ssn', 'dob')
NO_RESULT_MESSAGE = 'No result returned'

# Incoming record keys (API camelCase or snake_case) → internal record keys
_RECORD_KEYS = {
    'firstName': 'first_name', 'first_name': 'first_name',
    'lastName': 'last_name', 'last_name': 'last_name',
    'middleInitial': 'middle_initial', 'middle_initial': 'middle_initial',
    'address': 'address',
    'address2': 'address2', 'address_2': 'address2',
    'city': 'city', 'state': 'state', 'zip': 'zip',
    'ssn': 'ssn',
    'dob': 'dob', 'dateOfBirth': 'dob', 'date_of_birth': 'dob',
}


def normalize_record(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Map an incoming record onto internal keys, dropping unknown fields."""
    if not isinstance(raw, dict):
        return {}
    record = {}
    for key, value in raw.items():
        internal = _RECORD_KEYS.get(key)
        if internal is None or value is None:
            continue
        record[internal] = value.strip() if isinstance(value, str) else value
    return record


def _now():
    return datetime.now(timezone.utc)


def _is_text(value) -> bool:
    return isinstance(value, str) and bool(value.strip())


def _name_key(record) -> tuple:
    return (str(record['first_name']).strip().lower(), str(record['last_name']).strip().lower())


class SubmissionOrchestrator:

    def __init__(self, repos, client, cipher):
        self.repos = repos
        self.client = client
        self.cipher = cipher

    # ── Public API ────────────────────────────────────────────────────

    def submit_batch(self, program_id, records, batch_name=None, actor=None) -> SubmissionResult:
        program = self._validate(program_id, records)

        surviving, skipped = self._dedup(program.id, records)
        if not surviving:
            logger.info("All %d records already scored in program %s, nothing to submit",
                        len(records), program.id)
            return SubmissionResult(batch_id=None, status='skipped', skipped=skipped)

        batch = self.repos.batches.add(Batch(
            program_id=program.id,
            name=batch_name or f'Batch {_now():%Y-%m-%d}',
            status='processing',
            total_records=len(surviving),
            submitted_by=actor.label if actor else None,
            submitted_at=_now(),
        ))

        if not program.altair_program_id:
            return self._store_for_manual_processing(program, batch, surviving, skipped, actor)

        altair_records = [format_record(r, idx + 1) for idx, r in enumerate(surviving)]
        logger.info("Batch %s: submitting %d records to Altair program %s (%d skipped)",
                    batch.id, len(altair_records), program.altair_program_id, len(skipped))
        response = self.client.submit_records(program.altair_program_id, altair_records)

        if not response.get('success'):
            self._record_submission_failure(program, batch, surviving, response.get('error'), actor)

        qualified_count, failed_count = self._persist_results(program, batch, surviving, response)

        try:
            self._cleanup_stale_leads(program.id, surviving, batch.id)
        except Exception as e:
            logger.warning("Stale lead cleanup failed for batch %s: %s", batch.id, e, exc_info=True)

        if failed_count == 0:
            status = 'completed'
        elif qualified_count == 0:
            status = 'failed'
        else:
            status = 'partial'

        batch.status = status
        batch.qualified_count = qualified_count
        batch.failed_count = failed_count
        batch.completed_at = _now()
        self.repos.batches.save(batch)

        audit.record_action(
            self.repos.audit, 'submit', actor=actor, batch_id=batch.id,
            details={
                'programId': program.id,
                'batchId': batch.id,
                'totalRecords': len(surviving),
                'qualifiedCount': qualified_count,
                'failedCount': failed_count,
                'skippedCount': len(skipped),
            },
        )
        logger.info("Batch %s %s: %d qualified, %d failed",
                    batch.id, status, qualified_count, failed_count)

        return SubmissionResult(
            batch_id=batch.id,
            total_submitted=len(surviving),
            qualified_count=qualified_count,
            failed_count=failed_count,
            status=status,
            skipped=skipped,
        )

    def retry_batch(self, batch_id, actor=None) -> SubmissionResult:
        """
        Resubmit a failed batch's api_error leads into a new batch.

        The stale cleanup inside submit_batch() then removes the old api_error
        leads and zeroes the old batch's counts.
        """
        if not batch_id:
            raise ValidationError('batchId is required')
        batch = self.repos.batches.get(batch_id)
        if batch is None:
            raise NotFoundError('Batch not found')
        if batch.status != 'failed':
            raise ValidationError('Only failed batches can be retried')

        error_leads = self.repos.leads.list_by_batch(batch.id, match_status='api_error')
        if not error_leads:
            raise ValidationError('No failed leads to retry in this batch')

        program = self.repos.programs.get(batch.program_id)
        if program is None or program.status != 'active':
            raise ValidationError('Program is no longer active')
        if not program.altair_program_id:
            raise ValidationError('Program has no Altair program ID')

        records = [self._record_from_lead(lead) for lead in error_leads]
        try:
            result = self.submit_batch(program.id, records,
                                       batch_name=f'{batch.name} (retry)', actor=actor)
        except SubmissionFailedError as e:
            audit.record_action(
                self.repos.audit, 'batch_retry_failed', actor=actor, batch_id=batch.id,
                details={'retryBatchId': e.batch_id, 'recordCount': len(records), 'error': e.message},
            )
            raise

        audit.record_action(
            self.repos.audit, 'batch_retried', actor=actor, batch_id=batch.id,
            details={
                'programId': program.id,
                'retryBatchId': result.batch_id,
                'totalRecords': len(records),
                'qualifiedCount': result.qualified_count,
                'failedCount': result.failed_count,
                'retryStatus': result.status,
            },
        )
        return result

    # ── Validation + dedup ───────────────────────────────────────────

    def _validate(self, program_id, records):
        if not program_id:
            raise ValidationError('programId is required')
        if not isinstance(records, list) or not records:
            raise ValidationError('records array is required and must not be empty')
        if len(records) > MAX_RECORDS_PER_SUBMISSION:
            raise ValidationError(f'Maximum {MAX_RECORDS_PER_SUBMISSION} records per submission')

        program = self.repos.programs.get(program_id)
        if program is None:
            raise NotFoundError('Program not found')
        if program.status != 'active':
            raise ValidationError('Program is not active')

        for idx, record in enumerate(records, start=1):
            if not isinstance(record, dict):
                raise ValidationError(f'Record {idx} must be an object')
            if not all(_is_text(record.get(f)) for f in REQUIRED_NAME_FIELDS):
                raise ValidationError(f'Record {idx}: firstName and lastName are required')
            if not all(_is_text(record.get(f)) for f in REQUIRED_ADDRESS_FIELDS):
                raise ValidationError(f'Record {idx}: address, city, state, and zip are required')
            for f in OPTIONAL_TEXT_FIELDS:
                if record.get(f) is not None and not isinstance(record[f], str):
                    raise ValidationError(f'Record {idx}: {f} must be a string')
        return program

    def _dedup(self, program_id, records):
        surviving, skipped, seen = [], [], set()
        for idx, record in enumerate(records, start=1):
            key = _name_key(record)
            name = f"{record['first_name']} {record['last_name']}"
            if key in seen:
                skipped.append({'index': idx, 'name': name,
                                'reason': 'Duplicate of an earlier record in this submission'})
                continue
            seen.add(key)

            existing = self.repos.leads.find_scored_by_name(
                program_id, record['first_name'], record['last_name'])
            if existing is not None:
                score = existing.middle_score if existing.middle_score is not None else existing.tier
                skipped.append({'index': idx, 'name': name,
                                'reason': f'Already scored in this program (lead {existing.id}, {score})'})
                continue
            surviving.append(record)
        return surviving, skipped

    # ── Persistence ──────────────────────────────────────────────────

    def _build_lead(self, record, program, batch, input_id, **fields):
        ssn = record.get('ssn')
        dob = record.get('dob')
        lead = Lead(
            batch_id=batch.id,
            program_id=program.id,
            input_id=input_id,
            first_name=record['first_name'],
            last_name=record['last_name'],
            middle_initial=record.get('middle_initial') or None,
            address=record.get('address') or None,
            address_2=record.get('address2') or None,
            city=record.get('city') or None,
            state=record.get('state') or None,
            zip=record.get('zip') or None,
            ssn_encrypted=self.cipher.encrypt(ssn) if ssn else None,
            ssn_last_four=self.cipher.last_four_of(ssn) if ssn else None,
            dob_encrypted=self.cipher.encrypt(dob) if dob else None,
        )
        for key, value in fields.items():
            setattr(lead, key, value)
        return self.repos.leads.add(lead)

    def _store_for_manual_processing(self, program, batch, records, skipped, actor):
        for idx, record in enumerate(records, start=1):
            self._build_lead(record, program, batch, idx, tier='pending', match_status='pending')

        batch.status = 'pending'
        batch.completed_at = _now()
        self.repos.batches.save(batch)

        audit.record_action(
            self.repos.audit, 'submit', actor=actor, batch_id=batch.id,
            details={
                'programId': program.id,
                'batchId': batch.id,
                'totalRecords': len(records),
                'skippedCount': len(skipped),
                'mode': 'manual',
            },
        )
        logger.info("Program %s has no Altair id: batch %s stored for manual processing (%d leads)",
                    program.id, batch.id, len(records))
        return SubmissionResult(batch_id=batch.id, total_submitted=len(records),
                                status='pending', skipped=skipped)

    def _record_submission_failure(self, program, batch, records, error, actor):
        error = error or 'API submission failed'
        for idx, record in enumerate(records, start=1):
            self._build_lead(record, program, batch, idx, tier='pending',
                             match_status='api_error', error_message=error)

        batch.status = 'failed'
        batch.error_message = error
        batch.failed_count = len(records)
        batch.completed_at = _now()
        self.repos.batches.save(batch)

        audit.record_action(
            self.repos.audit, 'submit_failed', actor=actor, batch_id=batch.id,
            details={'programId': program.id, 'batchId': batch.id,
                     'totalRecords': len(records), 'error': error},
        )
        logger.error("Batch %s failed upstream: %s", batch.id, error)
        raise SubmissionFailedError(f'Altair submission failed: {error}', batch_id=batch.id)

    def _persist_results(self, program, batch, records, response):
        by_input_id = {idx: record for idx, record in enumerate(records, start=1)}
        handled = set()
        qualified_count = failed_count = 0

        for item in response.get('qualified') or []:
            input_id = item.get('input_id')
            record = by_input_id.get(input_id)
            if record is None or input_id in handled:
                logger.warning("Batch %s: ignoring qualified result for unknown input_id %s",
                               batch.id, input_id)
                continue
            handled.add(input_id)

            outputs = item.get('outputs') or {}
            summary = score_lead(extract_bureau_scores(outputs))
            lead = self._build_lead(
                record, program, batch, input_id,
                middle_score=int(summary.middle_score) if summary.middle_score is not None else None,
                tier=summary.tier,
                is_qualified=summary.is_qualified,
                match_status='matched',
                segment_name=item.get('segment_name') or None,
            )
            for bureau in BUREAUS:
                if bureau not in outputs:
                    continue
                output = outputs[bureau]
                score = output.get('credit_score') if isinstance(output, dict) else None
                self.repos.results.upsert(
                    lead.id, bureau,
                    credit_score=int(score) if score is not None else None,
                    is_hit=score is not None,
                    raw_output=output or None,
                )
            qualified_count += 1

        for item in response.get('failed') or []:
            input_id = item.get('input_id')
            record = by_input_id.get(input_id)
            if record is None or input_id in handled:
                logger.warning("Batch %s: ignoring failed result for unknown input_id %s",
                               batch.id, input_id)
                continue
            handled.add(input_id)

            matched = bool(item.get('match'))
            if matched:
                message = 'No bureau scores returned (all bureaus returned null outputs)'
            else:
                message = item.get('error') or item.get('reason') or 'No match found'
            self._build_lead(
                record, program, batch, input_id,
                tier='filtered',
                is_qualified=False,
                match_status='matched' if matched else 'no_match',
                error_message=message,
            )
            failed_count += 1

        # Records Altair never reported on are kept as failed leads
        for input_id, record in by_input_id.items():
            if input_id in handled:
                continue
            logger.warning("Batch %s: no result returned for input_id %s", batch.id, input_id)
            self._build_lead(
                record, program, batch, input_id,
                tier='filtered',
                is_qualified=False,
                match_status='no_match',
                error_message=NO_RESULT_MESSAGE,
            )
            failed_count += 1

        return qualified_count, failed_count

    def _cleanup_stale_leads(self, program_id, records, batch_id):
        """
        Remove api_error/pending leads for the same names left in older batches
        of this program, and reconcile those batches' counts.
        """
        names = [(r['first_name'], r['last_name']) for r in records]
        stale = self.repos.leads.find_stale_by_names(program_id, names, exclude_batch_id=batch_id)
        if not stale:
            return 0

        removed_per_batch: Dict[Optional[int], int] = {}
        for lead in stale:
            removed_per_batch[lead.batch_id] = removed_per_batch.get(lead.batch_id, 0) + 1

        stale_ids = [lead.id for lead in stale]
        self.repos.results.delete_for_leads(stale_ids)
        self.repos.leads.delete_many(stale_ids)

        for old_batch_id, removed in removed_per_batch.items():
            if old_batch_id is None:
                continue
            old_batch = self.repos.batches.get(old_batch_id)
            if old_batch is None:
                continue
            if not self.repos.leads.list_by_batch(old_batch_id):
                old_batch.total_records = 0
                old_batch.qualified_count = 0
                old_batch.failed_count = 0
            else:
                old_batch.failed_count = max(0, (old_batch.failed_count or 0) - removed)
            self.repos.batches.save(old_batch)

        logger.info("Removed %d stale leads from %d older batches",
                    len(stale_ids), len(removed_per_batch))
        return len(stale_ids)

    def _record_from_lead(self, lead) -> Dict[str, Any]:
        record = {
            'first_name': lead.first_name,
            'last_name': lead.last_name,
            'middle_initial': lead.middle_initial,
            'address': lead.address,
            'address2': lead.address_2,
            'city': lead.city,
            'state': lead.state,
            'zip': lead.zip,
        }
        for field, column in (('ssn', 'ssn_encrypted'), ('dob', 'dob_encrypted')):
            token = getattr(lead, column)
            if not token:
                continue
            try:
                record[field] = self.cipher.decrypt(token)
            except DecryptionError:
                logger.error("Could not decrypt %s for lead %s, resubmitting without it", field, lead.id)
        return {k: v for k, v in record.items() if v is not None}
