from datetime import datetime, timezone
from typing import Optional


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """Ensure a datetime is timezone-aware (UTC).

    GitHub timestamps carry a trailing 'Z', but GHES proxies and test
    stubs sometimes drop it. Naive values are taken to be UTC so they
    compare safely with the pipeline clock.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt
