"""Per-IP fixed window counters stored in the database."""
from datetime import timedelta

try:
    from .models import db, AuthRateLimitBucket
    from .utils import utc_now_naive, get_request_ip
except ImportError:  # pragma: no cover - fallback when running from helpdesk/ cwd
    from models import db, AuthRateLimitBucket
    from utils import utc_now_naive, get_request_ip


def prune_expired_buckets(now=None):
    """Delete windows that have already ended, across every scope."""
    now = now or utc_now_naive()
    removed = AuthRateLimitBucket.query.filter(AuthRateLimitBucket.reset_at < now).delete(synchronize_session=False)
    db.session.commit()
    return removed


def get_bucket(scope, window_seconds):
    ip = get_request_ip()
    now = utc_now_naive()
    bucket = AuthRateLimitBucket.query.filter_by(scope=scope, ip=ip).first()
    if not bucket:
        # New visitors are the only source of new rows, so expired ones go here.
        prune_expired_buckets(now)
        bucket = AuthRateLimitBucket(
            scope=scope,
            ip=ip,
            count=0,
            reset_at=now + timedelta(seconds=window_seconds),
        )
        db.session.add(bucket)
        db.session.commit()
        return bucket
    if bucket.reset_at <= now:
        bucket.count = 0
        bucket.reset_at = now + timedelta(seconds=window_seconds)
        db.session.commit()
    return bucket


def is_rate_limited(scope, limit, window_seconds):
    """Return ``(limited, retry_after_seconds)`` for the current request IP."""
    bucket = get_bucket(scope, window_seconds)
    if bucket.count < limit:
        return False, 0
    seconds = max(1, int((bucket.reset_at - utc_now_naive()).total_seconds()))
    return True, seconds


def register_hit(scope, window_seconds):
    bucket = get_bucket(scope, window_seconds)
    bucket.count += 1
    db.session.commit()
    return bucket.count


def clear_hits(scope):
    ip = get_request_ip()
    bucket = AuthRateLimitBucket.query.filter_by(scope=scope, ip=ip).first()
    if bucket:
        db.session.delete(bucket)
        db.session.commit()
