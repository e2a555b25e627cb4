"""
Bureau fill API — preview and execute backfill of missing bureaus.
"""
import logging

from flask import Blueprint, jsonify, request

from prescreen.auth import current_actor, require_admin, require_auth
from prescreen.extensions import get_cipher, get_matching_client
from prescreen.pipeline.base import ValidationError
from prescreen.pipeline.fill import BureauFillOrchestrator
from prescreen.routes.prescreen import pipeline_repos

logger = logging.getLogger('routes.fill')

bp = Blueprint('fill', __name__, url_prefix='/api/prescreen')


@bp.route('/fill-missing')
@require_auth
def preview_fill():
    """Matched leads missing at least one bureau."""
    with pipeline_repos() as repos:
        scan = BureauFillOrchestrator(repos, get_matching_client(), get_cipher()).scan()
    return jsonify(scan.to_dict())


@bp.route('/fill-missing', methods=['POST'])
@require_admin
def execute_fill():
    """
    Body (optional):
      {"selections": {"<leadId>": ["eq", "tu"]}}  per-lead bureaus
      {"leadIds": [1, 2, 3]}                      these leads, every missing bureau
    No body fills everything the scan finds.
    """
    data = request.get_json(silent=True) or {}
    selections = data.get('selections')
    lead_ids = data.get('leadIds')
    if lead_ids is not None and not isinstance(lead_ids, list):
        raise ValidationError('leadIds must be a list')

    with pipeline_repos() as repos:
        orchestrator = BureauFillOrchestrator(repos, get_matching_client(), get_cipher())
        result = orchestrator.execute(
            selections=selections,
            lead_ids=None if selections is not None else lead_ids,
            actor=current_actor(),
        )
    return jsonify(result.to_dict())
