"""
Altair InstaPrescreen client — program management + record submission.

BureauMatchingClient is the contract the pipeline depends on; AltairClient is
the HTTP implementation. Client methods never raise on network/HTTP trouble:
they return {'success': False, 'error': ...} and the orchestrators decide what
a failure means for their batch.

Request payloads carry SSN/DOB plaintext and are never logged.
"""
import logging
import re
import time
from abc import ABC, abstractmethod
from typing import Dict, List, Any, Optional

import requests

from prescreen import config
from prescreen.services.circuit_breaker import CircuitOpenError, get_breaker

logger = logging.getLogger('services.altair')


class AltairError(Exception):
    """Authentication or transport failure talking to Altair."""


# ── Contract ─────────────────────────────────────────────────────────────────

class BureauMatchingClient(ABC):
    """Remote matching/scoring service used by the prescreen pipeline."""

    @abstractmethod
    def create_program(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Returns {'success', 'program'?, 'error'?}."""
        ...

    @abstractmethod
    def get_program(self, remote_id: int) -> Dict[str, Any]:
        """Returns {'success', 'program'?, 'error'?}."""
        ...

    @abstractmethod
    def update_program(self, remote_id: int, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Replace the remote program definition. Returns {'success', 'program'?, 'error'?}."""
        ...

    @abstractmethod
    def get_billing_report(self, start_date: str, end_date: str) -> Dict[str, Any]:
        """Returns {'success', 'records'?, 'error'?}."""
        ...

    @abstractmethod
    def submit_records(self, remote_program_id: int, records: List[Dict[str, Any]]) -> Dict[str, Any]:
        """
        Returns {'success', 'qualified': [...], 'failed': [...], 'error'?}.

        qualified items: {'input_id', 'outputs': {'eq'?, 'tu'?, 'ex'?}, 'segment_name'?}
        failed items:    {'input_id', 'match'?, 'error'?, 'reason'?}
        """
        ...


# ── Record formatting ────────────────────────────────────────────────────────

def format_record(record: Dict[str, Any], input_id: int) -> Dict[str, Any]:
    """
    Build an Altair record from a submission record.

    Uppercases names and address lines, strips SSN to digits, trims zip to
    five digits. DOB is passed through (expected YYYY-MM-DD).
    """
    formatted = {
        'input_id': input_id,
        'first_name': record['first_name'].upper().strip(),
        'last_name': record['last_name'].upper().strip(),
    }
    for src, dest in (('middle_initial', 'middle_initial'), ('address', 'address'),
                      ('address2', 'address_2'), ('city', 'city'), ('state', 'state')):
        if record.get(src):
            formatted[dest] = str(record[src]).upper().strip()
    if record.get('zip'):
        formatted['zip'] = re.sub(r'\D', '', str(record['zip']))[:5]
    if record.get('ssn'):
        formatted['ssn'] = re.sub(r'\D', '', record['ssn'])
    if record.get('dob'):
        formatted['date_of_birth'] = record['dob']
    return formatted


# ── HTTP client ──────────────────────────────────────────────────────────────

class AltairClient(BureauMatchingClient):
    """
    Token-authenticated Altair DataBridge client.

    Tokens are valid 30 minutes and refreshed 5 minutes early. A 401 clears
    the cached token and retries the request once. All traffic goes through
    the 'altair' circuit breaker.
    """

    TOKEN_TTL = 30 * 60
    TOKEN_REFRESH_BUFFER = 5 * 60
    AUTH_TIMEOUT = 5

    def __init__(self, base_url=None, username=None, password=None,
                 company_id=None, timeout=None):
        self.base_url = (base_url if base_url is not None else config.ALTAIR_BASE_URL).rstrip('/')
        self.username = username if username is not None else config.ALTAIR_USERNAME
        self.password = password if password is not None else config.ALTAIR_PASSWORD
        self.company_id = company_id or config.ALTAIR_COMPANY_ID
        self.timeout = timeout or config.ALTAIR_TIMEOUT
        self._token = None
        self._token_expires_at = 0.0

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url and self.username and self.password)

    def describe(self) -> Dict[str, Any]:
        return {
            'isConfigured': self.is_configured,
            'baseUrl': self.base_url,
            'companyId': self.company_id,
        }

    # ── Auth ──────────────────────────────────────────────────────────

    def clear_token(self):
        self._token = None
        self._token_expires_at = 0.0

    def _get_token(self) -> str:
        if self._token and time.time() < self._token_expires_at - self.TOKEN_REFRESH_BUFFER:
            return self._token

        if not self.is_configured:
            raise AltairError(
                'Altair API not configured. Set ALTAIR_BASE_URL, ALTAIR_USERNAME, and ALTAIR_PASSWORD.'
            )

        logger.info("Authenticating as %s", self.username)
        response = self._send(
            'POST', f'{self.base_url}/auth/tokens',
            data={'username': self.username, 'password': self.password},
            timeout=self.AUTH_TIMEOUT,
        )
        content_type = response.headers.get('content-type', '')
        logger.info("Auth response: %d (%s)", response.status_code, content_type)

        if not response.ok:
            text = response.text or ''
            if 'Permission Required' in text or 'text/html' in content_type:
                logger.error("Auth failed: IP blocked by firewall")
                raise AltairError('IP blocked by Altair firewall. Contact Altair support.')
            logger.error("Auth failed: %d %s", response.status_code, text[:500])
            raise AltairError(f'Authentication failed: {response.status_code}')

        try:
            data = response.json()
        except ValueError:
            raise AltairError('Auth response was not JSON')

        token = data.get('token') or data.get('access_token')
        if not token:
            raise AltairError('No token in auth response')

        self._token = token
        self._token_expires_at = time.time() + self.TOKEN_TTL
        logger.info("Auth successful, token cached for 30 min")
        return token

    # ── Transport ─────────────────────────────────────────────────────

    def _send(self, method, url, **kwargs):
        """Single HTTP call through the breaker; 5xx counts as a breaker failure."""
        def _do():
            resp = requests.request(method, url, **kwargs)
            if resp.status_code >= 500:
                raise requests.HTTPError(f'{resp.status_code} from Altair', response=resp)
            return resp
        return get_breaker('altair').call(_do)

    def _request(self, method, path, prefix='/instaprescreen', retried=False, **kwargs):
        token = self._get_token()
        headers = {
            'Content-Type': 'application/json',
            'Authorization': f'Bearer {token}',
        }
        response = self._send(method, f'{self.base_url}{prefix}{path}',
                              headers=headers, timeout=self.timeout, **kwargs)
        if response.status_code == 401 and not retried:
            self.clear_token()
            return self._request(method, path, prefix=prefix, retried=True, **kwargs)
        return response

    def _program_call(self, method, path, action, **kwargs) -> Dict[str, Any]:
        try:
            response = self._request(method, path, **kwargs)
        except (requests.RequestException, AltairError, CircuitOpenError) as e:
            logger.error("Failed to %s: %s", action, e)
            return {'success': False, 'error': str(e)}
        if not response.ok:
            return {'success': False, 'error': f'Failed to {action}: {response.status_code} {response.text}'}
        try:
            return {'success': True, 'program': response.json()}
        except ValueError:
            return {'success': False, 'error': f'Failed to {action}: response was not JSON'}

    # ── Programs ──────────────────────────────────────────────────────

    def _programs_path(self, program_id=None):
        path = f'/companies/{self.company_id}/programs'
        return f'{path}/{program_id}' if program_id is not None else path

    def list_programs(self) -> Dict[str, Any]:
        try:
            response = self._request('GET', self._programs_path())
        except (requests.RequestException, AltairError, CircuitOpenError) as e:
            return {'success': False, 'error': str(e)}
        if not response.ok:
            return {'success': False, 'error': f'Failed to list programs: {response.status_code} {response.text}'}
        try:
            data = response.json()
        except ValueError:
            return {'success': False, 'error': 'Failed to list programs: response was not JSON'}
        programs = data if isinstance(data, list) else data.get('programs', [])
        return {'success': True, 'programs': programs}

    def create_program(self, payload):
        logger.info("Creating program '%s'", payload.get('name'))
        return self._program_call('POST', self._programs_path(), 'create program', json=payload)

    def get_program(self, remote_id):
        return self._program_call('GET', self._programs_path(remote_id), 'get program')

    def update_program(self, remote_id, payload):
        return self._program_call('PUT', self._programs_path(remote_id), 'update program', json=payload)

    # ── Records ───────────────────────────────────────────────────────

    def submit_records(self, remote_program_id, records):
        endpoint = f'{self._programs_path(remote_program_id)}/records'
        logger.info("Submitting %d records to %s", len(records), endpoint)

        try:
            response = self._request('POST', endpoint, json={'records': records})
        except (requests.RequestException, AltairError, CircuitOpenError) as e:
            logger.error("Submit error: %s", e)
            return {'success': False, 'qualified': [], 'failed': [], 'error': str(e)}

        logger.info("Submit response status: %d", response.status_code)

        # Altair answers 404 when nothing qualifies but still sends the arrays
        try:
            data = response.json()
        except ValueError:
            return {
                'success': False, 'qualified': [], 'failed': [],
                'error': f'Submit failed: {response.status_code} {response.text[:500]}',
            }

        if not isinstance(data, dict) or (not response.ok and 'qualified' not in data and 'failed' not in data):
            return {
                'success': False, 'qualified': [], 'failed': [],
                'error': f'Submit failed: {response.status_code} {response.text[:500]}',
            }

        qualified = data.get('qualified') or []
        failed = data.get('failed') or []
        logger.info("Qualified: %d, Failed: %d", len(qualified), len(failed))
        return {'success': True, 'qualified': qualified, 'failed': failed}

    # ── Billing ───────────────────────────────────────────────────────

    def get_billing_report(self, start_date: str, end_date: str) -> Dict[str, Any]:
        """Per-day, per-bureau match counts and costs from the reporting API."""
        path = f'/reports/instaprescreen/basic/company/{self.company_id}'
        try:
            response = self._request('GET', path, prefix='',
                                     params={'startDate': start_date, 'endDate': end_date})
        except (requests.RequestException, AltairError, CircuitOpenError) as e:
            logger.error("Billing report error: %s", e)
            return {'success': False, 'error': str(e)}
        if not response.ok:
            logger.error("Billing report error: %d %s", response.status_code, response.text[:500])
            return {'success': False, 'error': f'Report API returned {response.status_code}'}
        try:
            data = response.json()
        except ValueError:
            return {'success': False, 'error': 'Report API returned non-JSON'}
        if isinstance(data, list):
            records = data
        else:
            records = data.get('records') or data.get('data') or []
        return {'success': True, 'records': records}


BILLING_ADD_ON_FIELDS = ('income_est', 'cltv', 'est_value', 'owner_status')


def summarize_billing(records: List[Dict[str, Any]]) -> Optional[Dict[str, float]]:
    """Cost, match and add-on totals over billing report rows, or None when there are none."""
    if not records:
        return None
    totals = {'cost': 0, 'matches': 0, 'baseCost': 0, 'addOns': 0}
    for row in records:
        totals['cost'] += row.get('total') or 0
        totals['matches'] += row.get('matches') or 0
        totals['baseCost'] += row.get('base_cost') or 0
        totals['addOns'] += sum(row.get(f) or 0 for f in BILLING_ADD_ON_FIELDS)
    return totals
