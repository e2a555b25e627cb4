"""
Session password auth — admin and viewer roles.

ADMIN_PASSWORD logs in as admin, VIEWER_PASSWORD as viewer. With neither set
nobody can log in and every protected route answers 401, unless AUTH_DISABLED
opts into open local-dev mode where each caller is a local admin.
Auth failures answer JSON 401/403 before any pipeline work.
"""
import hmac
import logging
from functools import wraps

from flask import Blueprint, jsonify, request, session

from prescreen import config
from prescreen.pipeline.base import Actor

logger = logging.getLogger('prescreen.auth')

bp = Blueprint('auth', __name__)


def passwords_configured():
    return bool(config.ADMIN_PASSWORD or config.VIEWER_PASSWORD)


def open_mode():
    """AUTH_DISABLED only takes effect while no password is configured."""
    return config.AUTH_DISABLED and not passwords_configured()


def _client_ip():
    forwarded = request.headers.get('X-Forwarded-For')
    if forwarded:
        return forwarded.split(',')[0].strip()
    return request.headers.get('X-Real-IP') or request.remote_addr


def _session_role():
    if open_mode():
        return 'admin'
    return session.get('role')


def current_actor():
    """Actor for the current request, from the session."""
    if open_mode():
        role, user = 'admin', 'local'
    else:
        role, user = session.get('role'), session.get('user')
    return Actor(
        user_id=user,
        role=role or 'viewer',
        ip_address=_client_ip(),
        user_agent=request.headers.get('User-Agent'),
    )


def _role_for(password):
    if not password or not isinstance(password, str):
        return None
    if config.ADMIN_PASSWORD and hmac.compare_digest(password, config.ADMIN_PASSWORD):
        return 'admin'
    if config.VIEWER_PASSWORD and hmac.compare_digest(password, config.VIEWER_PASSWORD):
        return 'viewer'
    return None


def require_auth(view):
    @wraps(view)
    def wrapper(*args, **kwargs):
        if not _session_role():
            return jsonify({'error': 'Authentication required'}), 401
        return view(*args, **kwargs)
    return wrapper


def require_admin(view):
    @wraps(view)
    def wrapper(*args, **kwargs):
        role = _session_role()
        if not role:
            return jsonify({'error': 'Authentication required'}), 401
        if role != 'admin':
            return jsonify({'error': 'Admin access required'}), 403
        return view(*args, **kwargs)
    return wrapper


@bp.route('/login', methods=['POST'])
def login():
    if request.is_json:
        password = (request.get_json(silent=True) or {}).get('password')
    else:
        password = request.form.get('password')

    role = _role_for(password)
    if role is None:
        logger.warning("Failed login from %s", _client_ip())
        return jsonify({'error': 'Wrong password'}), 401

    session.clear()
    session['role'] = role
    session['user'] = role
    logger.info("Login as %s from %s", role, _client_ip())
    return jsonify({'ok': True, 'role': role})


@bp.route('/logout', methods=['GET', 'POST'])
def logout():
    session.clear()
    return jsonify({'ok': True})


@bp.route('/api/session')
def session_info():
    if not _session_role():
        return jsonify({'authenticated': False})
    actor = current_actor()
    return jsonify({'authenticated': True, 'role': actor.role, 'user': actor.user_id})
