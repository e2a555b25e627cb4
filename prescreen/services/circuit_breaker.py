"""
Circuit breaker with Redis-backed state, guarding calls to Altair.

States:
  - CLOSED    → requests pass through
  - OPEN      → too many consecutive failures, calls raise CircuitOpenError
  - HALF_OPEN → reset_timeout elapsed, the next call is let through as a trial

Redis being unreachable never blocks a call: state reads fail open to CLOSED.
Health counters are kept in a Redis hash for /api/health.
"""
import logging
import time
from functools import wraps

logger = logging.getLogger('services.circuit_breaker')

CLOSED = 'closed'
OPEN = 'open'
HALF_OPEN = 'half_open'


class CircuitOpenError(Exception):
    """Raised when calling through an open circuit breaker."""
    def __init__(self, name, retry_after=None):
        self.name = name
        self.retry_after = retry_after
        super().__init__(f"Circuit breaker '{name}' is OPEN — service unavailable")


class CircuitBreaker:
    """
    Usage:
        cb = CircuitBreaker('altair', redis_client, failure_threshold=3, reset_timeout=120)
        response = cb.call(session.post, url, json=payload)
    """

    PREFIX = 'cb'

    def __init__(self, name, redis_client, failure_threshold=3, reset_timeout=120):
        self.name = name
        self.redis = redis_client
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout

    def _key(self, suffix):
        return f'{self.PREFIX}:{self.name}:{suffix}'

    # ── State ─────────────────────────────────────────────────────────

    @property
    def state(self):
        try:
            current = self.redis.get(self._key('state'))
            if current is None:
                return CLOSED
            if current == OPEN and self._seconds_since_failure() > self.reset_timeout:
                self.redis.set(self._key('state'), HALF_OPEN)
                return HALF_OPEN
            return current
        except Exception:
            return CLOSED

    @property
    def failure_count(self):
        try:
            val = self.redis.get(self._key('failures'))
            return int(val) if val else 0
        except Exception:
            return 0

    def _seconds_since_failure(self):
        last = self.redis.get(self._key('last_failure'))
        if not last:
            return float('inf')
        return time.time() - float(last)

    # ── Call path ─────────────────────────────────────────────────────

    def call(self, func, *args, **kwargs):
        """Execute func through the breaker; exceptions count as failures and re-raise."""
        if self.state == OPEN:
            try:
                retry_after = max(0.0, self.reset_timeout - self._seconds_since_failure())
            except Exception:
                retry_after = None
            raise CircuitOpenError(self.name, retry_after=retry_after)

        try:
            result = func(*args, **kwargs)
        except Exception as e:
            self._on_failure(e)
            raise
        self._on_success()
        return result

    def protect(self, func):
        """Decorator form of call()."""
        @wraps(func)
        def wrapper(*args, **kwargs):
            return self.call(func, *args, **kwargs)
        return wrapper

    def _on_success(self):
        try:
            pipe = self.redis.pipeline()
            pipe.set(self._key('state'), CLOSED)
            pipe.set(self._key('failures'), 0)
            pipe.hincrby(self._key('health'), 'success', 1)
            pipe.hset(self._key('health'), 'last_success', str(time.time()))
            pipe.execute()
        except Exception:
            logger.debug("Could not record success for '%s'", self.name)

    def _on_failure(self, error):
        try:
            failures = self.redis.incr(self._key('failures'))
            self.redis.set(self._key('last_failure'), str(time.time()))
            pipe = self.redis.pipeline()
            pipe.hincrby(self._key('health'), 'failure', 1)
            pipe.hset(self._key('health'), 'last_failure', str(time.time()))
            pipe.hset(self._key('health'), 'last_error', str(error)[:200])
            pipe.execute()
        except Exception:
            logger.debug("Could not record failure for '%s'", self.name)
            return

        if failures >= self.failure_threshold:
            try:
                self.redis.set(self._key('state'), OPEN)
            except Exception:
                pass
            logger.warning(
                "Circuit '%s' OPENED after %d failures (threshold=%d): %s",
                self.name, failures, self.failure_threshold, error,
            )
        else:
            logger.info("Circuit '%s' failure %d/%d: %s",
                        self.name, failures, self.failure_threshold, error)

    def reset(self):
        """Manually close the breaker."""
        try:
            pipe = self.redis.pipeline()
            pipe.set(self._key('state'), CLOSED)
            pipe.set(self._key('failures'), 0)
            pipe.delete(self._key('last_failure'))
            pipe.execute()
            logger.info("Circuit '%s' manually reset to CLOSED", self.name)
        except Exception as e:
            logger.error("Failed to reset circuit '%s': %s", self.name, e)

    def get_health(self):
        """Health metrics dict for /api/health."""
        health = {
            'name': self.name,
            'state': 'unknown',
            'failure_count': 0,
            'failure_threshold': self.failure_threshold,
            'reset_timeout': self.reset_timeout,
            'total_success': 0,
            'total_failure': 0,
            'last_success': None,
            'last_failure': None,
            'last_error': '',
        }
        try:
            data = self.redis.hgetall(self._key('health'))
            health.update({
                'state': self.state,
                'failure_count': self.failure_count,
                'total_success': int(data.get('success', 0)),
                'total_failure': int(data.get('failure', 0)),
                'last_success': float(data['last_success']) if data.get('last_success') else None,
                'last_failure': float(data['last_failure']) if data.get('last_failure') else None,
                'last_error': data.get('last_error', ''),
            })
        except Exception:
            pass
        return health


# ── Registry ──────────────────────────────────────────────────────────────

_registry = {}


def get_breaker(name, redis_client=None, **kwargs):
    """Get or create a named circuit breaker (singleton per name)."""
    if name not in _registry:
        if redis_client is None:
            from prescreen.extensions import redis_client as rc
            redis_client = rc
        _registry[name] = CircuitBreaker(name, redis_client, **kwargs)
    return _registry[name]


def get_all_breakers():
    return dict(_registry)


def init_breakers(redis_client):
    """Register breakers for every external service."""
    breakers = {
        'altair': CircuitBreaker('altair', redis_client, failure_threshold=3, reset_timeout=120),
    }
    _registry.update(breakers)
    return breakers
