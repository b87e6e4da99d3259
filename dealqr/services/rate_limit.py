import secrets, time, threading
import redis
from flask import current_app

from ..app_logger import get_logger

log = get_logger(__name__)

_EXT_KEY = 'dealqr.guard_store'
_lock = threading.Lock()


class _MemStore:
    """Process-local stand-in for the handful of Redis commands the guard uses."""

    def __init__(self):
        self._zsets = {}
        self._exp = {}
        self._lock = threading.RLock()

    def _cleanup(self):
        now = time.time()
        expired = [k for k, ts in self._exp.items() if ts <= now]
        for k in expired:
            self._zsets.pop(k, None)
            self._exp.pop(k, None)

    def zadd(self, key, mapping):
        with self._lock:
            self._cleanup()
            self._zsets.setdefault(key, {}).update(mapping)
            return len(mapping)

    def zremrangebyscore(self, key, lo, hi):
        with self._lock:
            self._cleanup()
            zs = self._zsets.get(key, {})
            gone = [m for m, score in zs.items() if lo <= score <= hi]
            for m in gone:
                del zs[m]
            return len(gone)

    def zcard(self, key):
        with self._lock:
            self._cleanup()
            return len(self._zsets.get(key, {}))

    def expire(self, key, ttl):
        with self._lock:
            self._cleanup()
            if key in self._zsets:
                self._exp[key] = time.time() + ttl

    def pipeline(self, transaction=True):
        return _MemPipeline(self)


class _MemPipeline:
    def __init__(self, store):
        self._store = store
        self._calls = []

    def __getattr__(self, name):
        fn = getattr(self._store, name)

        def queue(*args, **kwargs):
            self._calls.append((fn, args, kwargs))
            return self
        return queue

    def execute(self):
        calls, self._calls = self._calls, []
        with self._store._lock:
            return [fn(*a, **kw) for fn, a, kw in calls]


def _connect():
    url = current_app.config.get('REDIS_URL')
    if current_app.config.get('USE_REDIS') and url:
        client = redis.from_url(url, decode_responses=True)
        try:
            client.ping()
            return client
        except redis.RedisError as exc:
            log.warning('redis unavailable at %s (%s); using in-process guard store', url, exc)
    return _MemStore()


def r():
    ext = current_app.extensions
    store = ext.get(_EXT_KEY)
    if store is not None:
        return store
    with _lock:
        store = ext.get(_EXT_KEY)
        if store is None:
            store = _connect()
            ext[_EXT_KEY] = store
        return store


def reset_store():
    current_app.extensions.pop(_EXT_KEY, None)


# sliding windows over sorted sets: score = unix time of each hit

def _count(key: str, window: int, now: float) -> int:
    pipe = r().pipeline()
    pipe.zremrangebyscore(key, 0, now - window)
    pipe.zcard(key)
    _, count = pipe.execute()
    return int(count)


def _hit(key: str, window: int, now: float) -> int:
    member = f"{now:.6f}:{secrets.token_hex(4)}"
    pipe = r().pipeline()
    pipe.zremrangebyscore(key, 0, now - window)
    pipe.zadd(key, {member: now})
    pipe.zcard(key)
    pipe.expire(key, window)
    res = pipe.execute()
    return int(res[2])


def regen_key(user_id: str, deal_id: str) -> str:
    return f"rl:regen:{user_id}:{deal_id}"


def scan_key(scanner_session_id: str) -> str:
    return f"rl:scan:{scanner_session_id}"


# fresh-token mints per (user, deal)

def regeneration_allowed(user_id: str, deal_id: str, now: float | None = None) -> bool:
    cfg = current_app.config
    now = time.time() if now is None else now
    try:
        return _count(regen_key(user_id, deal_id), cfg['REGEN_WINDOW_SECONDS'], now) < cfg['REGEN_LIMIT']
    except redis.RedisError:
        log.exception("regeneration check failed for user %s deal %s; allowing", user_id, deal_id)
        return True


def record_regeneration(user_id: str, deal_id: str, now: float | None = None) -> int:
    now = time.time() if now is None else now
    try:
        return _hit(regen_key(user_id, deal_id), current_app.config['REGEN_WINDOW_SECONDS'], now)
    except redis.RedisError:
        log.exception("could not record regeneration for user %s deal %s", user_id, deal_id)
        return 0


# scan velocity per scanner session: flag, never block

def hit_scan(scanner_session_id: str, now: float | None = None) -> bool:
    cfg = current_app.config
    now = time.time() if now is None else now
    try:
        n = _hit(scan_key(scanner_session_id), cfg['SCAN_VELOCITY_WINDOW_SECONDS'], now)
    except redis.RedisError:
        log.exception('scan velocity check failed for session %s', scanner_session_id)
        return False
    if n > cfg['SCAN_VELOCITY_LIMIT']:
        log.warning('scan velocity alert: session %s made %d scans in %ss',
                    scanner_session_id, n, cfg['SCAN_VELOCITY_WINDOW_SECONDS'])
        return True
    return False
