"""
Results API — lead listing, lead detail, notes and audited PII reveal.

Lead payloads only carry the masked SSN. Plaintext SSN/DOB leaves the server
through the admin-only decrypt route alone, and every reveal is audited
before the value is returned.
"""
import logging

from flask import Blueprint, jsonify, request

from prescreen.auth import current_actor, require_admin, require_auth
from prescreen.config import BUREAUS, BUREAU_NAMES, LEAD_TIERS, MATCH_STATUSES
from prescreen.extensions import get_cipher
from prescreen.pipeline.base import NotFoundError, PrescreenError, ValidationError
from prescreen.routes.prescreen import int_arg, pipeline_repos
from prescreen.services import audit
from prescreen.services.encryption import DecryptionError, mask_ssn

logger = logging.getLogger('routes.results')

bp = Blueprint('results', __name__, url_prefix='/api/prescreen')

SORT_FIELDS = ('created_at', 'tier', 'middle_score', 'first_name', 'last_name', 'match_status')
TIER_FILTERS = LEAD_TIERS + ['unqualified']
DETAIL_AUDIT_ENTRIES = 20


def _optional_int(name):
    value = request.args.get(name)
    if value in (None, ''):
        return None
    try:
        return int(value)
    except ValueError:
        raise ValidationError(f'{name} must be an integer')


def _choice(name, allowed, default=None):
    value = request.args.get(name) or default
    if value is not None and value not in allowed:
        raise ValidationError(f"{name} must be one of: {', '.join(allowed)}")
    return value


def _iso(value):
    return value.isoformat() if value else None


def _last_activity(lead, results):
    dates = [d for d in [lead.created_at] + [r.updated_at or r.created_at for r in results] if d]
    return max(dates) if dates else None


def _get_lead(repos, lead_id):
    lead = repos.leads.get(lead_id)
    if lead is None:
        raise NotFoundError('Lead not found')
    return lead


def lead_to_summary(lead, results, program=None, batch=None):
    return {
        'id': lead.id,
        'firstName': lead.first_name,
        'lastName': lead.last_name,
        'ssnMasked': mask_ssn(lead.ssn_last_four),
        'ssnLastFour': lead.ssn_last_four,
        'middleScore': lead.middle_score,
        'tier': lead.tier,
        'isQualified': bool(lead.is_qualified),
        'matchStatus': lead.match_status,
        'bureauScores': {r.bureau: r.credit_score for r in results},
        'bureauHits': {r.bureau: bool(r.is_hit) for r in results},
        'programId': lead.program_id,
        'programName': program.name if program else None,
        'programBureaus': {b: bool(getattr(program, f'{b}_enabled')) for b in BUREAUS} if program else None,
        'batchId': lead.batch_id,
        'batchName': batch.name if batch else None,
        'createdAt': _iso(lead.created_at),
        'lastActivity': _iso(_last_activity(lead, results)),
    }


# ── Listing ──────────────────────────────────────────────────────────────────

@bp.route('/results')
@require_auth
def list_results():
    """Paginated, filtered leads with their bureau scores."""
    page = int_arg('page', 1)
    limit = int_arg('limit', 25, maximum=100)
    filters = {
        'search': request.args.get('search') or None,
        'tier': _choice('tier', TIER_FILTERS),
        'match_status': _choice('matchStatus', MATCH_STATUSES),
        'program_id': _optional_int('programId'),
        'batch_id': _optional_int('batchId'),
        'min_score': _optional_int('minScore'),
        'max_score': _optional_int('maxScore'),
    }
    sort_by = _choice('sortBy', SORT_FIELDS, default='created_at')
    sort_dir = _choice('sortDir', ('asc', 'desc'), default='desc')

    with pipeline_repos() as repos:
        if filters['batch_id'] is not None:
            # Fill batches list the leads they touched instead of owning them
            batch = repos.batches.get(filters['batch_id'])
            if batch is not None and batch.lead_ids:
                filters['lead_ids'] = list(batch.lead_ids)

        leads, total = repos.leads.search(filters, offset=(page - 1) * limit, limit=limit,
                                          sort_by=sort_by, sort_dir=sort_dir)
        results = repos.results.list_for_leads([lead.id for lead in leads])
        programs = {p.id: p for p in repos.programs.list()}
        batches = {}
        for batch_id in {lead.batch_id for lead in leads if lead.batch_id}:
            batches[batch_id] = repos.batches.get(batch_id)

        items = [
            lead_to_summary(lead, results.get(lead.id, []),
                            programs.get(lead.program_id), batches.get(lead.batch_id))
            for lead in leads
        ]

        audit.record_action(
            repos.audit, 'view_results', actor=current_actor(),
            details={
                'page': page,
                'limit': limit,
                'filters': {k: v for k, v in filters.items() if v is not None and k not in ('search', 'lead_ids')},
                'searched': bool(filters['search']),
            },
        )

    return jsonify({
        'items': items,
        'pagination': {
            'page': page,
            'limit': limit,
            'total': total,
            'totalPages': (total + limit - 1) // limit,
        },
    })


# ── Detail ───────────────────────────────────────────────────────────────────

@bp.route('/results/<int:lead_id>')
@require_auth
def lead_detail(lead_id):
    with pipeline_repos() as repos:
        lead = _get_lead(repos, lead_id)
        results = repos.results.list_for_lead(lead.id)
        program = repos.programs.get(lead.program_id)
        batch = repos.batches.get(lead.batch_id) if lead.batch_id else None
        history, _ = repos.audit.list(limit=DETAIL_AUDIT_ENTRIES, lead_id=lead.id)

        payload = lead_to_summary(lead, results, program, batch)
        payload.update({
            'middleInitial': lead.middle_initial,
            'address': lead.address,
            'address2': lead.address_2,
            'city': lead.city,
            'state': lead.state,
            'zip': lead.zip,
            'hasSsn': bool(lead.ssn_encrypted),
            'hasDob': bool(lead.dob_encrypted),
            'segmentName': lead.segment_name,
            'errorMessage': lead.error_message,
            'notes': lead.notes,
            'bureauResults': [
                {
                    'bureau': r.bureau,
                    'bureauName': BUREAU_NAMES.get(r.bureau, r.bureau.upper()),
                    'creditScore': r.credit_score,
                    'isHit': bool(r.is_hit),
                    'rawOutput': r.raw_output,
                    'createdAt': _iso(r.created_at),
                    'updatedAt': _iso(r.updated_at),
                }
                for r in results
            ],
            'missingBureaus': [b for b in BUREAUS if b not in {r.bureau for r in results}],
            'batchSubmittedAt': _iso(batch.submitted_at) if batch else None,
            'auditLog': [
                {'action': e.action, 'performedBy': e.performed_by, 'createdAt': _iso(e.created_at)}
                for e in history
            ],
        })

        audit.record_action(repos.audit, 'view_detail', actor=current_actor(), lead_id=lead.id)
    return jsonify(payload)


# ── Notes ────────────────────────────────────────────────────────────────────

@bp.route('/results/<int:lead_id>/notes')
@require_auth
def get_notes(lead_id):
    with pipeline_repos() as repos:
        lead = _get_lead(repos, lead_id)
        payload = {'id': lead.id, 'notes': lead.notes}
    return jsonify(payload)


@bp.route('/results/<int:lead_id>/notes', methods=['PUT'])
@require_admin
def update_notes(lead_id):
    """Replace the lead's notes; empty text clears them."""
    data = request.get_json(silent=True) or {}
    notes = data.get('notes')
    if notes is not None and not isinstance(notes, str):
        raise ValidationError('notes must be a string')

    with pipeline_repos() as repos:
        lead = _get_lead(repos, lead_id)
        lead.notes = (notes or '').strip() or None
        repos.leads.save(lead)
        audit.record_action(repos.audit, 'update_notes', actor=current_actor(), lead_id=lead.id,
                            details={'cleared': lead.notes is None})
        payload = {'id': lead.id, 'notes': lead.notes}
    return jsonify(payload)


# ── PII reveal ───────────────────────────────────────────────────────────────

@bp.route('/results/<int:lead_id>/decrypt', methods=['POST'])
@require_admin
def decrypt_field(lead_id):
    data = request.get_json(silent=True) or {}
    field = data.get('field')
    if field not in ('ssn', 'dob'):
        raise ValidationError('field must be "ssn" or "dob"')

    with pipeline_repos() as repos:
        lead = _get_lead(repos, lead_id)
        token = lead.ssn_encrypted if field == 'ssn' else lead.dob_encrypted
        if not token:
            raise NotFoundError(f'No {field.upper()} on file')
        try:
            value = get_cipher().decrypt(token)
        except DecryptionError:
            logger.error("Failed to decrypt %s for lead %s", field, lead.id)
            raise PrescreenError('Failed to decrypt field')

        audit.record_action(repos.audit, f'decrypt_{field}', actor=current_actor(), lead_id=lead.id)
    return jsonify({'value': value})
