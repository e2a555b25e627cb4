"""
Health routes — liveness and circuit breaker state.
"""
import logging
from flask import Blueprint, jsonify

from prescreen.auth import require_admin
from prescreen.services.circuit_breaker import get_all_breakers

logger = logging.getLogger('routes.health')

bp = Blueprint('health', __name__)


@bp.route('/health')
def health_check():
    """Health check endpoint."""
    return jsonify({"status": "healthy"}), 200


@bp.route('/api/health')
def api_health():
    """Circuit breaker state per external service."""
    services = {name: cb.get_health() for name, cb in get_all_breakers().items()}
    return jsonify({'services': services})


@bp.route('/api/health/<service>/reset', methods=['POST'])
@require_admin
def reset_circuit(service):
    breaker = get_all_breakers().get(service)
    if breaker is None:
        return jsonify({'ok': False, 'error': f'Unknown service: {service}'}), 404
    breaker.reset()
    logger.info("Circuit '%s' reset via API", service)
    return jsonify({'ok': True, 'service': service, 'state': breaker.state})
