#!/usr/bin/env python3
import sys, json, time, redis

# Usage: python scripts/check_redis.py <REDIS_URL> [SCANNER_SESSION_ID]
# Lists the guard's sliding windows: regeneration per user/deal and scans per session

if len(sys.argv) < 2:
    print("Usage: check_redis.py <REDIS_URL> [SCANNER_SESSION_ID]")
    sys.exit(1)

url = sys.argv[1].strip()
session = sys.argv[2].strip() if len(sys.argv) > 2 else None

r = redis.from_url(url, decode_responses=True)
now = time.time()

def window(key):
    hits = r.zrange(key, 0, -1, withscores=True)
    return {
        'key': key,
        'hits': len(hits),
        'oldest_age_s': int(now - hits[0][1]) if hits else None,
        'ttl': r.ttl(key),
    }

pattern = f"rl:scan:{session}" if session else "rl:*"
print(json.dumps({
    'redis': url,
    'windows': [window(k) for k in sorted(r.scan_iter(match=pattern))],
}, indent=2))
