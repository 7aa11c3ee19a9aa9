"""Column codecs and small helpers shared by the storage modules.

List-typed columns (facts, tags, related_files, related_people) are stored
as JSON text. Decoding is forgiving: anything that is not a JSON list of
strings reads back as an empty list so one bad cell never breaks a row.
"""

import hashlib
import json
import logging
import posixpath
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

DAY_MS = 86_400_000

# Token estimation safety margin (stored text is shorter than what a prompt renders)
TOKEN_ESTIMATION_SAFETY_MARGIN = 1.3


def to_json(values: Optional[Iterable[str]]) -> str:
    """Encode a list column. ``None`` encodes as an empty list."""
    return json.dumps(list(values or []), ensure_ascii=False)


def from_json(raw: Optional[str]) -> List[str]:
    """Decode a list column, falling back to ``[]`` on any malformed value."""
    if raw is None or raw == "":
        return []
    try:
        value = json.loads(raw)
    except (TypeError, ValueError) as e:
        logger.debug(f"Undecodable list column, treating as empty: {e}")
        return []
    if not isinstance(value, list):
        logger.debug(f"List column holds {type(value).__name__}, treating as empty")
        return []
    return [str(item) for item in value if item is not None]


def dict_from_json(raw: Optional[str]) -> Dict[str, Any]:
    """Decode a JSON object column (people facts). Malformed values read as ``{}``."""
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except (TypeError, ValueError):
        return {}
    return value if isinstance(value, dict) else {}


def observation_hash(title: str, facts: List[str]) -> str:
    """SHA-256 over the title and each fact, each terminated by a NUL byte.

    Fact order is significant: the same facts in a different order hash
    differently.
    """
    hasher = hashlib.sha256()
    hasher.update(title.encode("utf-8"))
    hasher.update(b"\0")
    for fact in facts:
        hasher.update(fact.encode("utf-8"))
        hasher.update(b"\0")
    return hasher.hexdigest()


def fts_query(text: str) -> str:
    """Build an FTS5 MATCH expression from free text.

    Every whitespace-separated token is quoted (embedded quotes become
    spaces) and the tokens are OR-ed, so partial overlap still matches and
    bm25 ranks documents with more matching terms higher.
    """
    tokens = [t.strip() for t in text.split()]
    quoted = ['"{}"'.format(t.replace('"', " ")) for t in tokens if t]
    return " OR ".join(quoted)


def escape_like_pattern(pattern: str) -> str:
    """Escape LIKE pattern special characters to prevent pattern injection."""
    return pattern.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def normalize_file_path(path: str) -> str:
    """Canonical form for ``related_files`` entries and file lookups.

    Backslashes become forward slashes, ``./`` prefixes and duplicate
    separators are collapsed. A trailing slash is dropped.
    """
    cleaned = (path or "").strip().replace("\\", "/")
    if not cleaned:
        return ""
    normalized = posixpath.normpath(cleaned)
    return "" if normalized == "." else normalized


# === Time ===


def ms_from_dt(dt: datetime) -> int:
    """Milliseconds since the epoch. Naive datetimes are taken as UTC."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def dt_from_ms(ms: Optional[int]) -> Optional[datetime]:
    if ms is None:
        return None
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


def now_ms() -> int:
    return ms_from_dt(datetime.now(timezone.utc))


# === Tokens ===


def estimate_tokens(text: str, include_safety_margin: bool = True) -> int:
    """Estimate token count from text.

    Uses the simple heuristic of ~4 characters per token, with a safety
    margin on top.

    Args:
        text: The text to estimate tokens for
        include_safety_margin: If True, multiply by safety margin (default: True)

    Returns:
        Estimated token count
    """
    if not text:
        return 0
    base_estimate = len(text) // 4
    if include_safety_margin:
        return int(base_estimate * TOKEN_ESTIMATION_SAFETY_MARGIN)
    return base_estimate


def observation_token_count(title: str, narrative: str, facts: List[str]) -> int:
    """Estimated tokens for an observation's title, narrative and facts."""
    text = title
    if narrative:
        text += " " + narrative
    if facts:
        text += " " + "; ".join(facts)
    return estimate_tokens(text)
