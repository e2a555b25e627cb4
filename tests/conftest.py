"""Shared test fixtures."""
import copy
import pytest
from unittest.mock import patch
from cryptography.fernet import Fernet
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from prescreen.database import Base
from prescreen.models.lead import Lead
from prescreen.models.program import Program
from prescreen.repositories.sql import build_repositories
from prescreen.services import circuit_breaker
from prescreen.services.altair import BureauMatchingClient
from prescreen.services.encryption import PiiCipher


# ── Redis ────────────────────────────────────────────────────────────────────

class FakeRedis:
    """Minimal in-memory Redis fake for circuit breaker state."""

    def __init__(self):
        self.get_store = {}
        self.hash_store = {}

    def get(self, key):
        return self.get_store.get(key)

    def set(self, key, value):
        self.get_store[key] = value

    def incr(self, key):
        val = int(self.get_store.get(key, 0)) + 1
        self.get_store[key] = str(val)
        return val

    def delete(self, *keys):
        for k in keys:
            self.get_store.pop(k, None)
            self.hash_store.pop(k, None)

    def hset(self, key, field, value):
        self.hash_store.setdefault(key, {})[field] = value

    def hincrby(self, key, field, amount):
        h = self.hash_store.setdefault(key, {})
        h[field] = str(int(h.get(field, 0)) + amount)

    def hgetall(self, key):
        return dict(self.hash_store.get(key, {}))

    def pipeline(self):
        return FakePipeline(self)


class FakePipeline:
    """Fake Redis pipeline that executes on execute()."""

    def __init__(self, redis):
        self._redis = redis
        self._ops = []

    def set(self, key, value):
        self._ops.append(('set', (key, value)))
        return self

    def delete(self, *keys):
        self._ops.append(('delete', keys))
        return self

    def hincrby(self, key, field, amount):
        self._ops.append(('hincrby', (key, field, amount)))
        return self

    def hset(self, key, field, value):
        self._ops.append(('hset', (key, field, value)))
        return self

    def execute(self):
        for name, args in self._ops:
            getattr(self._redis, name)(*args)
        self._ops = []


@pytest.fixture
def fake_redis():
    """In-memory Redis fake with dict-backed storage."""
    return FakeRedis()


@pytest.fixture(autouse=True)
def breaker_registry(fake_redis):
    """Fresh breaker registry per test, backed by the fake Redis."""
    saved = dict(circuit_breaker._registry)
    circuit_breaker._registry.clear()
    circuit_breaker.init_breakers(fake_redis)
    yield circuit_breaker._registry
    circuit_breaker._registry.clear()
    circuit_breaker._registry.update(saved)


# ── Database ─────────────────────────────────────────────────────────────────

@pytest.fixture
def db_engine():
    """In-memory SQLite engine with schema created."""
    engine = create_engine('sqlite:///:memory:')
    import prescreen.models.program
    import prescreen.models.batch
    import prescreen.models.lead
    import prescreen.models.result
    import prescreen.models.audit_log
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(db_engine):
    """SQLAlchemy session bound to in-memory SQLite. Rolls back after each test."""
    Session = sessionmaker(bind=db_engine)
    session = Session()
    yield session
    session.rollback()
    session.close()


@pytest.fixture(autouse=True)
def patch_get_session(db_session):
    """Route all get_session() calls to the test session.

    We disable close() so that route handlers closing their session
    don't invalidate the shared test session.
    """
    _real_close = db_session.close
    db_session.close = lambda: None
    with patch('prescreen.database.get_session', return_value=db_session):
        yield db_session
    db_session.close = _real_close


@pytest.fixture
def repos(db_session):
    return build_repositories(db_session)


# ── Pipeline collaborators ───────────────────────────────────────────────────

class FakeMatchingClient(BureauMatchingClient):
    """
    In-memory Altair stand-in.

    submit_handler(program, records) → response dict; defaults to an empty
    success. Programs created here get ids from 900 up.
    """

    def __init__(self):
        self.programs = {}
        self.created = []
        self.submissions = []
        self.submit_handler = None
        self.create_error = None
        self.updated = []
        self.update_error = None
        self.billing_records = []
        self.billing_error = None
        self.billing_requests = []
        self._next_id = 900

    def add_remote_program(self, remote_id, payload):
        self.programs[remote_id] = dict(copy.deepcopy(payload), id=remote_id)

    def create_program(self, payload):
        if self.create_error:
            return {'success': False, 'error': self.create_error}
        self._next_id += 1
        self.created.append(copy.deepcopy(payload))
        self.add_remote_program(self._next_id, payload)
        return {'success': True, 'program': {'id': self._next_id, 'name': payload.get('name')}}

    def get_program(self, remote_id):
        if remote_id not in self.programs:
            return {'success': False, 'error': 'Failed to get program: 404'}
        return {'success': True, 'program': copy.deepcopy(self.programs[remote_id])}

    def update_program(self, remote_id, payload):
        if self.update_error:
            return {'success': False, 'error': self.update_error}
        self.updated.append((remote_id, copy.deepcopy(payload)))
        self.add_remote_program(remote_id, payload)
        return {'success': True, 'program': copy.deepcopy(self.programs[remote_id])}

    def get_billing_report(self, start_date, end_date):
        self.billing_requests.append((start_date, end_date))
        if self.billing_error:
            return {'success': False, 'error': self.billing_error}
        return {'success': True, 'records': copy.deepcopy(self.billing_records)}

    def submit_records(self, remote_program_id, records):
        self.submissions.append((remote_program_id, copy.deepcopy(records)))
        if self.submit_handler is None:
            return {'success': True, 'qualified': [], 'failed': []}
        return self.submit_handler(self.programs.get(remote_program_id, {}), records)

    def fill_bureau_of(self, program):
        """Bureau a cloned fill program targets, e.g. 'tu'."""
        return (program.get('bureau_priority') or {}).get('bureau_1', '').lower()


@pytest.fixture
def matching_client():
    return FakeMatchingClient()


@pytest.fixture
def cipher():
    return PiiCipher(Fernet.generate_key())


MAIN_TEMPLATE = {
    'name': 'Main Program',
    'description': 'Tri-bureau firm offer',
    'match_mode': 'all',
    'min_bureau_matches': 1,
    'credit_score_mode': 'middle',
    'created_at': '2026-01-01T00:00:00Z',
    'updated_at': '2026-01-01T00:00:00Z',
    'eq_enabled': True,
    'tu_enabled': True,
    'ex_enabled': True,
    'segments': [
        {
            'name': 'Prime',
            'criteria': {
                'eq': {'credit_score': {'min': 580, 'max': 850}, 'bk_flag': False},
                'tu': {'credit_score': {'min': 580, 'max': 850}},
                'ex': {'credit_score': {'min': 580, 'max': 850}},
            },
            'outputs': {
                'eq': {'credit_score': True, 'mortgage_balance': True},
                'tu': {'credit_score': True},
                'ex': {'credit_score': True},
            },
        },
    ],
}


@pytest.fixture
def main_program(repos, matching_client):
    """Active program mirrored on the fake Altair as remote id 101."""
    matching_client.add_remote_program(101, MAIN_TEMPLATE)
    return repos.programs.add(Program(
        altair_program_id=101,
        name='Main Program',
        status='active',
        config={
            'eq_score_version': 'FICO_8',
            'tu_score_version': 'FICO_4',
            'outputs': ['credit_score', 'mortgage_balance', 'bk_flag', 'fc_flag'],
        },
    ))


@pytest.fixture
def make_lead(repos, cipher, main_program):
    """Factory fixture: persists a matched lead plus its bureau results."""
    def _make(first='Jane', last='Doe', scores=None, **overrides):
        fields = dict(
            program_id=main_program.id,
            first_name=first,
            last_name=last,
            address='1 Main St',
            city='Austin',
            state='TX',
            zip='78701',
            ssn_encrypted=cipher.encrypt('123-45-6789'),
            ssn_last_four='6789',
            dob_encrypted=cipher.encrypt('1980-01-31'),
            tier='tier_2',
            match_status='matched',
        )
        fields.update(overrides)
        lead = repos.leads.add(Lead(**fields))
        for bureau, score in (scores or {}).items():
            repos.results.upsert(lead.id, bureau, credit_score=score, is_hit=score is not None,
                                 raw_output={'credit_score': score} if score is not None else None)
        return lead
    return _make


@pytest.fixture
def sample_records():
    """Submission records as the orchestrator receives them."""
    return [
        {
            'first_name': 'Alice', 'last_name': 'Smith', 'address': '10 Oak Ave',
            'city': 'Denver', 'state': 'co', 'zip': '80202-1234',
            'ssn': '111-22-3333', 'dob': '1975-05-05',
        },
        {
            'first_name': 'Bob', 'last_name': 'Jones', 'address': '20 Elm St',
            'city': 'Boulder', 'state': 'CO', 'zip': '80301',
            'ssn': '444-55-6666', 'dob': '1982-08-08',
        },
    ]


# ── Flask ────────────────────────────────────────────────────────────────────

ADMIN_PASSWORD = 'admin-pw'
VIEWER_PASSWORD = 'viewer-pw'


@pytest.fixture
def app(fake_redis, matching_client, cipher):
    """Flask test app with both passwords set and Altair and the cipher swapped for test doubles."""
    with patch('prescreen.config.ADMIN_PASSWORD', ADMIN_PASSWORD), \
         patch('prescreen.config.VIEWER_PASSWORD', VIEWER_PASSWORD), \
         patch('prescreen.config.AUTH_DISABLED', False), \
         patch('prescreen.config.SECRET_KEY', 'test-secret'), \
         patch('prescreen.extensions.redis_client', fake_redis), \
         patch('prescreen.routes.prescreen.get_matching_client', return_value=matching_client), \
         patch('prescreen.routes.prescreen.get_cipher', return_value=cipher), \
         patch('prescreen.routes.fill.get_matching_client', return_value=matching_client), \
         patch('prescreen.routes.fill.get_cipher', return_value=cipher), \
         patch('prescreen.routes.results.get_cipher', return_value=cipher):
        from prescreen import create_app
        app = create_app()
        app.config['TESTING'] = True
        yield app


@pytest.fixture
def anon_client(app):
    """Flask test client with no session."""
    with app.test_client() as c:
        yield c


@pytest.fixture
def client(app):
    """Flask test client logged in as admin."""
    with app.test_client() as c:
        c.post('/login', json={'password': ADMIN_PASSWORD})
        yield c


@pytest.fixture
def viewer_client(app):
    """Flask test client logged in as viewer."""
    with app.test_client() as c:
        c.post('/login', json={'password': VIEWER_PASSWORD})
        yield c
