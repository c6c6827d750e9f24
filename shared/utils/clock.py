"""
ChronoHeal - Clock Helpers
==========================
"""

from datetime import datetime, timezone


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)
