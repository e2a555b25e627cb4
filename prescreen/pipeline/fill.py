"""
Bureau fill — backfill bureaus a matched lead was never queried against.

scan()    → which matched leads are missing which bureaus (read-only)
execute() → per bureau, submit the missing leads to a single-bureau fill
            program and merge the new scores into each lead's result set

Bureaus are processed one after another; a failure on one bureau is recorded
in its result and never stops the others. Result rows are upserted per
(lead, bureau), so re-running a fill is idempotent.
"""
import logging
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Any

from prescreen.config import BUREAUS
from prescreen.models.batch import Batch
from prescreen.pipeline.base import BureauFillResult, FillResult, FillScan, ValidationError
from prescreen.pipeline.programs import ProgramRegistry
from prescreen.pipeline.scoring import score_lead, scores_from_results
from prescreen.services import audit
from prescreen.services.altair import format_record
from prescreen.services.encryption import DecryptionError

logger = logging.getLogger('pipeline.fill')


def _now():
    return datetime.now(timezone.utc)


def parse_selections(selections) -> Dict[int, List[str]]:
    """{lead_id: [bureau, ...]} with int keys and lowercase bureau codes."""
    if not isinstance(selections, dict):
        raise ValidationError('selections must be an object of leadId → bureaus')
    parsed = {}
    for lead_id, bureaus in selections.items():
        try:
            key = int(lead_id)
        except (TypeError, ValueError):
            raise ValidationError(f'Invalid lead id in selections: {lead_id}')
        if not isinstance(bureaus, (list, tuple)):
            raise ValidationError(f'Bureaus for lead {lead_id} must be a list')
        parsed[key] = [str(b).lower() for b in bureaus]
    return parsed


class BureauFillOrchestrator:

    def __init__(self, repos, client, cipher, registry=None):
        self.repos = repos
        self.client = client
        self.cipher = cipher
        self.registry = registry or ProgramRegistry(repos, client)

    # ── Scan ──────────────────────────────────────────────────────────

    def scan(self) -> FillScan:
        leads = self.repos.leads.list_matched_with_pii()
        results_by_lead = self.repos.results.list_for_leads([lead.id for lead in leads])

        scan = FillScan(missing_by_bureau={b: [] for b in BUREAUS})
        for lead in leads:
            results = results_by_lead.get(lead.id, [])
            existing = {r.bureau for r in results}
            missing = [b for b in BUREAUS if b not in existing]
            if not missing:
                continue

            scan.leads.append({
                'id': lead.id,
                'firstName': lead.first_name,
                'lastName': lead.last_name,
                'tier': lead.tier,
                'middleScore': lead.middle_score,
                'existingScores': {r.bureau: r.credit_score for r in results},
                'missingBureaus': missing,
            })
            for bureau in missing:
                scan.missing_by_bureau[bureau].append(lead)

        logger.info("Fill scan: %d leads missing bureaus (eq=%d tu=%d ex=%d)",
                    len(scan.leads), *(len(scan.missing_by_bureau[b]) for b in BUREAUS))
        return scan

    # ── Execute ───────────────────────────────────────────────────────

    def execute(self, selections=None, lead_ids=None, actor=None) -> FillResult:
        """
        Fill missing bureaus.

        selections: {lead_id: [bureaus]} restricts both leads and bureaus.
        lead_ids:   restricts leads only. Neither → fill everything missing.
        """
        if selections is not None:
            selections = parse_selections(selections)
            selected_ids = set(selections)
        elif lead_ids is not None:
            try:
                selected_ids = {int(i) for i in lead_ids}
            except (TypeError, ValueError):
                raise ValidationError('leadIds must be a list of lead ids')
        else:
            selected_ids = None

        scan = self.scan()
        fill = FillResult()

        for bureau in BUREAUS:
            candidates = scan.missing_by_bureau[bureau]
            if selected_ids is not None:
                candidates = [l for l in candidates if l.id in selected_ids]
            if selections is not None:
                candidates = [l for l in candidates if bureau in selections.get(l.id, [])]

            try:
                result = self._fill_bureau(bureau, candidates, actor)
            except Exception as e:
                logger.error("Fill %s failed: %s", bureau.upper(), e, exc_info=True)
                result = BureauFillResult(error=str(e))

            fill.results[bureau] = result
            fill.total_updated += result.qualified

        audit.record_action(
            self.repos.audit, 'fill_missing_bureaus', actor=actor,
            details=fill.to_dict(),
        )
        logger.info("Fill complete: %d leads updated", fill.total_updated)
        return fill

    def _fill_bureau(self, bureau, leads, actor) -> BureauFillResult:
        if not leads:
            return BureauFillResult()

        program = self.registry.get_or_create_fill_program(bureau)
        if program is None:
            return BureauFillResult(error='Failed to create single-bureau program on Altair')

        records, lead_map = self._prepare_records(leads)
        if not records:
            return BureauFillResult(error='No records could be prepared')

        batch = self.repos.batches.add(Batch(
            program_id=program.id,
            name=f'Fill {bureau.upper()} - {_now():%Y-%m-%d}',
            status='processing',
            total_records=len(records),
            lead_ids=[lead.id for lead in leads],
            submitted_by=actor.label if actor else None,
            submitted_at=_now(),
        ))

        logger.info("Fill %s: submitting %d leads to program %s (batch %s)",
                    bureau.upper(), len(records), program.altair_program_id, batch.id)
        response = self.client.submit_records(program.altair_program_id, records)
        qualified_items = response.get('qualified') or []
        failed_items = response.get('failed') or []

        qualified = failed = 0
        if response.get('success') or qualified_items or failed_items:
            handled = set()
            for item in qualified_items:
                input_id = item.get('input_id')
                lead = lead_map.get(input_id)
                if lead is None or input_id in handled:
                    continue
                handled.add(input_id)
                output = (item.get('outputs') or {}).get(bureau)
                score = output.get('credit_score') if isinstance(output, dict) else None
                self.repos.results.upsert(
                    lead.id, bureau,
                    credit_score=int(score) if score is not None else None,
                    is_hit=score is not None,
                    raw_output=output or None,
                )
                self._rescore(lead)
                qualified += 1

            for item in failed_items:
                input_id = item.get('input_id')
                lead = lead_map.get(input_id)
                if lead is None or input_id in handled:
                    continue
                handled.add(input_id)
                # Queried, no data: the row keeps the bureau out of the next scan
                self.repos.results.upsert(lead.id, bureau, credit_score=None, is_hit=False, raw_output=None)
                failed += 1

            # Unreported leads stay unqueried for this bureau so the next scan picks them up
            unreported = len(set(lead_map) - handled)
            if unreported:
                logger.warning("Fill %s batch %s: no result returned for %d leads",
                               bureau.upper(), batch.id, unreported)
                failed += unreported

            # No match is not a failure of the submission itself
            batch.status = 'completed'
            batch.qualified_count = qualified
            batch.failed_count = failed
        else:
            failed = len(records)
            batch.status = 'failed'
            batch.error_message = response.get('error')
            batch.failed_count = failed
            logger.error("Fill %s batch %s failed upstream: %s", bureau.upper(), batch.id, response.get('error'))

        batch.completed_at = _now()
        self.repos.batches.save(batch)

        return BureauFillResult(
            submitted=len(records),
            qualified=qualified,
            failed=failed,
            batch_id=batch.id,
            error=response.get('error'),
        )

    def _prepare_records(self, leads: Iterable[Any]):
        """Decrypt PII and format records; input ids are contiguous over prepared leads."""
        records, lead_map = [], {}
        for lead in leads:
            try:
                ssn = self.cipher.decrypt(lead.ssn_encrypted)
                dob = self.cipher.decrypt(lead.dob_encrypted)
            except DecryptionError:
                logger.error("Failed to decrypt PII for lead %s, skipping", lead.id)
                continue

            input_id = len(records) + 1
            lead_map[input_id] = lead
            records.append(format_record({
                'first_name': lead.first_name,
                'last_name': lead.last_name,
                'middle_initial': lead.middle_initial,
                'address': lead.address,
                'address2': lead.address_2,
                'city': lead.city,
                'state': lead.state,
                'zip': lead.zip,
                'ssn': ssn,
                'dob': dob,
            }, input_id))
        return records, lead_map

    def _rescore(self, lead):
        """Recompute middle score + tier from every result on file for the lead."""
        summary = score_lead(scores_from_results(self.repos.results.list_for_lead(lead.id)))
        lead.middle_score = int(summary.middle_score) if summary.middle_score is not None else None
        lead.tier = summary.tier
        lead.is_qualified = summary.is_qualified
        self.repos.leads.save(lead)
