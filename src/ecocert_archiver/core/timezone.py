"""UTC timezone enforcement.

Sets the TZ environment variable to UTC and provides the single clock used for
all persisted timestamps. Timestamps are stored naive (UTC implied) so the same
values compare correctly on PostgreSQL and SQLite.
"""

import os
from datetime import datetime, timezone

# Set UTC timezone for the entire application
os.environ["TZ"] = "UTC"


def utcnow() -> datetime:
    """Return the current UTC time as a naive datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
