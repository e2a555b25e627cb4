"""
Audit trail helpers — append-only.

Details must only carry ids and counts. Never pass record dicts here: they
hold SSN/DOB plaintext.
"""
import logging

from prescreen.models.audit_log import AuditLogEntry

logger = logging.getLogger('services.audit')

MAX_PAGE_SIZE = 100


def record_action(audit_repo, action, actor=None, lead_id=None, batch_id=None, details=None):
    """Append one audit entry and return it."""
    entry = AuditLogEntry(
        action=action,
        performed_by=actor.label if actor else None,
        lead_id=lead_id,
        batch_id=batch_id,
        ip_address=actor.ip_address if actor else None,
        user_agent=actor.user_agent if actor else None,
        details=details or {},
    )
    audit_repo.add(entry)
    logger.info("Audit %s by %s (batch=%s lead=%s)",
                action, entry.performed_by or '-', batch_id, lead_id)
    return entry


def list_entries(audit_repo, page=1, limit=50, action=None, lead_id=None, performed_by=None):
    """Paginated audit listing, newest first."""
    page = max(1, int(page))
    limit = max(1, min(int(limit), MAX_PAGE_SIZE))
    items, total = audit_repo.list(
        offset=(page - 1) * limit,
        limit=limit,
        action=action or None,
        lead_id=lead_id,
        performed_by=performed_by or None,
    )
    return {
        'items': [
            {
                'id': e.id,
                'leadId': e.lead_id,
                'batchId': e.batch_id,
                'action': e.action,
                'performedBy': e.performed_by,
                'ipAddress': e.ip_address,
                'details': e.details,
                'createdAt': e.created_at.isoformat() if e.created_at else None,
            }
            for e in items
        ],
        'pagination': {
            'page': page,
            'limit': limit,
            'total': total,
            'totalPages': (total + limit - 1) // limit,
        },
    }
