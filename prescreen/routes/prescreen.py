"""
Prescreen API — submission, batches, programs, stats, billing, audit log.

Every handler opens its own DB session and closes it when done. Pipeline
errors (PrescreenError) are turned into JSON by the app-level handler.
"""
import logging
import time
from contextlib import contextmanager

from flask import Blueprint, jsonify, request

from prescreen import config, database
from prescreen.auth import current_actor, require_admin, require_auth
from prescreen.extensions import get_cipher, get_matching_client
from prescreen.pipeline.base import ValidationError
from prescreen.pipeline.programs import ProgramRegistry, program_to_dict
from prescreen.pipeline.submission import SubmissionOrchestrator, normalize_record
from prescreen.repositories.sql import build_repositories
from prescreen.services import audit
from prescreen.services.altair import summarize_billing

logger = logging.getLogger('routes.prescreen')

bp = Blueprint('prescreen', __name__, url_prefix='/api/prescreen')


@contextmanager
def pipeline_repos():
    """Repository bundle over a fresh session, closed on exit."""
    with database.session_scope() as session:
        yield build_repositories(session)


def int_arg(name, default, maximum=None):
    try:
        value = int(request.args.get(name, default))
    except (TypeError, ValueError):
        raise ValidationError(f'{name} must be an integer')
    value = max(1, value)
    return min(value, maximum) if maximum else value


def _batch_to_dict(batch, program_names=None):
    return {
        'id': batch.id,
        'name': batch.name,
        'programId': batch.program_id,
        'programName': (program_names or {}).get(batch.program_id),
        'status': batch.status,
        'totalRecords': batch.total_records,
        'qualifiedCount': batch.qualified_count,
        'failedCount': batch.failed_count,
        'leadIds': batch.lead_ids,
        'submittedBy': batch.submitted_by,
        'submittedAt': batch.submitted_at.isoformat() if batch.submitted_at else None,
        'completedAt': batch.completed_at.isoformat() if batch.completed_at else None,
        'errorMessage': batch.error_message,
        'createdAt': batch.created_at.isoformat() if batch.created_at else None,
    }


# ── Submission ───────────────────────────────────────────────────────────────

@bp.route('/submit', methods=['POST'])
@require_admin
def submit():
    """Submit identity records to a program."""
    data = request.get_json(silent=True) or {}
    records = data.get('records')
    if isinstance(records, list):
        records = [normalize_record(r) for r in records]

    with pipeline_repos() as repos:
        orchestrator = SubmissionOrchestrator(repos, get_matching_client(), get_cipher())
        result = orchestrator.submit_batch(
            data.get('programId'), records,
            batch_name=data.get('batchName'),
            actor=current_actor(),
        )
    return jsonify(result.to_dict())


# ── Batches ──────────────────────────────────────────────────────────────────

@bp.route('/batches')
@require_auth
def list_batches():
    limit = int_arg('limit', 25, maximum=100)
    program_id = request.args.get('programId', type=int)
    with pipeline_repos() as repos:
        batches = repos.batches.list_recent(limit=limit, program_id=program_id)
        names = {p.id: p.name for p in repos.programs.list()}
        items = [_batch_to_dict(b, names) for b in batches]
    return jsonify({'items': items})


@bp.route('/batches/retry', methods=['POST'])
@require_admin
def retry_batch():
    """Resubmit a failed batch's api_error leads."""
    data = request.get_json(silent=True) or {}
    with pipeline_repos() as repos:
        orchestrator = SubmissionOrchestrator(repos, get_matching_client(), get_cipher())
        result = orchestrator.retry_batch(data.get('batchId'), actor=current_actor())
    payload = result.to_dict()
    payload['retriedBatchId'] = data.get('batchId')
    return jsonify(payload)


# ── Programs ─────────────────────────────────────────────────────────────────

@bp.route('/programs')
@require_auth
def list_programs():
    with pipeline_repos() as repos:
        registry = ProgramRegistry(repos, get_matching_client())
        items = [program_to_dict(p) for p in registry.list_programs(status=request.args.get('status'))]
    return jsonify({'items': items})


@bp.route('/programs', methods=['POST'])
@require_admin
def create_program():
    data = request.get_json(silent=True) or {}
    with pipeline_repos() as repos:
        registry = ProgramRegistry(repos, get_matching_client())
        program, upstream = registry.create_program(
            data.get('name'),
            description=data.get('description'),
            min_score=data.get('minScore'),
            max_score=data.get('maxScore'),
            eq_enabled=data.get('eqEnabled'),
            tu_enabled=data.get('tuEnabled'),
            ex_enabled=data.get('exEnabled'),
            score_versions={
                'eq': data.get('eqScoreVersion'),
                'tu': data.get('tuScoreVersion'),
                'ex': data.get('exScoreVersion'),
            },
            filter_criteria=data.get('filterCriteria'),
            actor=current_actor(),
        )
        payload = program_to_dict(program)
    payload['altairConfigured'] = bool(upstream.get('success'))
    payload['altairError'] = upstream.get('error')
    return jsonify(payload), 201


# camelCase request keys → ProgramRegistry.update_program() keys
_PROGRAM_UPDATE_FIELDS = {
    'name': 'name',
    'description': 'description',
    'minScore': 'min_score',
    'maxScore': 'max_score',
    'eqEnabled': 'eq_enabled',
    'tuEnabled': 'tu_enabled',
    'exEnabled': 'ex_enabled',
    'eqScoreVersion': 'eq_score_version',
    'tuScoreVersion': 'tu_score_version',
    'exScoreVersion': 'ex_score_version',
    'status': 'status',
    'filterCriteria': 'filter_criteria',
}


@bp.route('/programs/<int:program_id>')
@require_auth
def get_program(program_id):
    """Program detail with usage counts and, when mirrored, the live Altair definition."""
    client = get_matching_client()
    with pipeline_repos() as repos:
        program = ProgramRegistry(repos, client).get_program(program_id)
        payload = program_to_dict(program)
        counts = repos.programs.usage_counts(program.id)
    payload['leadCount'] = counts['leads']
    payload['batchCount'] = counts['batches']

    payload['altairData'] = None
    if payload['altairProgramId']:
        remote = client.get_program(payload['altairProgramId'])
        if remote.get('success'):
            payload['altairData'] = remote.get('program')
    return jsonify(payload)


@bp.route('/programs/<int:program_id>', methods=['PUT'])
@require_admin
def update_program(program_id):
    data = request.get_json(silent=True) or {}
    changes = {internal: data[key] for key, internal in _PROGRAM_UPDATE_FIELDS.items() if key in data}
    with pipeline_repos() as repos:
        registry = ProgramRegistry(repos, get_matching_client())
        program, altair_error = registry.update_program(program_id, changes, actor=current_actor())
        payload = program_to_dict(program)
    payload['altairError'] = altair_error
    return jsonify(payload)


@bp.route('/programs/<int:program_id>', methods=['DELETE'])
@require_admin
def deactivate_program(program_id):
    with pipeline_repos() as repos:
        registry = ProgramRegistry(repos, get_matching_client())
        program = registry.deactivate_program(program_id, actor=current_actor())
        payload = {'id': program.id, 'status': program.status, 'message': 'Program deactivated'}
    return jsonify(payload)


# ── Billing ──────────────────────────────────────────────────────────────────

@bp.route('/billing')
@require_admin
def billing():
    """
    Local pull/batch usage, plus Altair's billing report when both
    startDate and endDate (YYYY-MM-DD) are given.
    """
    start_date = request.args.get('startDate')
    end_date = request.args.get('endDate')
    if bool(start_date) != bool(end_date):
        raise ValidationError('startDate and endDate must be given together')

    with pipeline_repos() as repos:
        bureau_pulls = repos.results.bureau_counts()
        totals = repos.batches.totals()
        monthly = repos.leads.monthly_usage()
        names = {p.id: p.name for p in repos.programs.list()}
        recent = [_batch_to_dict(b, names) for b in repos.batches.list_recent(limit=10)]

    total_pulls = sum(bureau_pulls.values())
    usage = dict(totals)
    usage.update({
        'totalPulls': total_pulls,
        'bureauPulls': bureau_pulls,
        'sandboxLimit': config.ALTAIR_SANDBOX_PULL_LIMIT,
        'sandboxRemaining': max(0, config.ALTAIR_SANDBOX_PULL_LIMIT - total_pulls),
    })

    altair_billing = altair_totals = altair_error = None
    if start_date and end_date:
        report = get_matching_client().get_billing_report(start_date, end_date)
        if report.get('success'):
            altair_billing = report.get('records') or []
            altair_totals = summarize_billing(altair_billing)
        else:
            altair_error = report.get('error')
            logger.warning("Billing report unavailable: %s", altair_error)

    return jsonify({
        'usage': usage,
        'monthlyUsage': monthly,
        'recentBatches': recent,
        'altairBilling': altair_billing,
        'altairTotals': altair_totals,
        'altairError': altair_error,
    })


# ── Stats + audit ────────────────────────────────────────────────────────────

@bp.route('/stats')
@require_auth
def stats():
    with pipeline_repos() as repos:
        tiers = repos.leads.tier_counts()
        programs = repos.programs.list()
        recent = repos.batches.list_recent(limit=5)
        names = {p.id: p.name for p in programs}
        recent_items = [_batch_to_dict(b, names) for b in recent]

    return jsonify({
        'totalLeads': sum(tiers.values()),
        'qualifiedCount': tiers.get('tier_1', 0) + tiers.get('tier_2', 0),
        'tier1Count': tiers.get('tier_1', 0),
        'tier2Count': tiers.get('tier_2', 0),
        'tier3Count': tiers.get('tier_3', 0),
        'belowCount': tiers.get('below', 0),
        'filteredCount': tiers.get('filtered', 0),
        'pendingCount': tiers.get('pending', 0),
        'totalPrograms': sum(1 for p in programs if p.status == 'active'),
        'recentBatches': recent_items,
    })


@bp.route('/audit-log')
@require_admin
def audit_log():
    lead_id = request.args.get('leadId', type=int)
    with pipeline_repos() as repos:
        payload = audit.list_entries(
            repos.audit,
            page=int_arg('page', 1),
            limit=int_arg('limit', 50, maximum=audit.MAX_PAGE_SIZE),
            action=request.args.get('action'),
            lead_id=lead_id,
            performed_by=request.args.get('performedBy'),
        )
    return jsonify(payload)


# ── Altair connectivity ──────────────────────────────────────────────────────

@bp.route('/test-connection')
@require_admin
def test_connection():
    client = get_matching_client()
    info = client.describe()
    if not info['isConfigured']:
        return jsonify({
            'status': 'not_configured',
            'message': 'Altair API credentials not set. Check ALTAIR_BASE_URL, ALTAIR_USERNAME, ALTAIR_PASSWORD.',
        })

    start = time.time()
    result = client.list_programs()
    latency_ms = int((time.time() - start) * 1000)

    if not result.get('success'):
        error = result.get('error') or ''
        blocked = 'IP blocked' in error or 'firewall' in error
        return jsonify({
            'status': 'blocked' if blocked else 'error',
            'message': error,
            'latencyMs': latency_ms,
            'baseUrl': info['baseUrl'],
            'companyId': info['companyId'],
        })

    programs = result.get('programs') or []
    return jsonify({
        'status': 'connected',
        'message': f'Connected successfully. {len(programs)} program(s) found.',
        'latencyMs': latency_ms,
        'programCount': len(programs),
        'baseUrl': info['baseUrl'],
        'companyId': info['companyId'],
    })
