# =================================================================
#   Online Teaching ERP - Time Helpers
#   All timestamps are stored as 'YYYY-MM-DD HH:MM:SS' in UTC,
#   the same shape SQLite's CURRENT_TIMESTAMP produces.
# =================================================================

import datetime

DB_FORMAT = '%Y-%m-%d %H:%M:%S'


def utc_now():
    return datetime.datetime.now(datetime.timezone.utc).replace(microsecond=0)


def to_db(value):
    """Formats an aware (or UTC-naive) datetime for storage."""
    if value.tzinfo is not None:
        value = value.astimezone(datetime.timezone.utc)
    return value.strftime(DB_FORMAT)


def from_db(value):
    """Parses a stored timestamp back into an aware UTC datetime."""
    if value is None:
        return None
    if isinstance(value, datetime.datetime):
        parsed = value
    else:
        text = str(value)
        if '.' in text:
            text = text.split('.', 1)[0]
        parsed = datetime.datetime.strptime(text, DB_FORMAT)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)
    return parsed


def parse_iso(value):
    """
    Parses client supplied ISO-8601 text ('2025-01-31T10:00:00Z',
    '2025-01-31T10:00:00+05:30', '2025-01-31 10:00:00').
    Naive values are taken as UTC. Returns None when unparseable.
    """
    if isinstance(value, datetime.datetime):
        parsed = value
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith('Z') or text.endswith('z'):
            text = text[:-1] + '+00:00'
        try:
            parsed = datetime.datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=datetime.timezone.utc)
    return parsed.astimezone(datetime.timezone.utc).replace(microsecond=0)
