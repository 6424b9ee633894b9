import hashlib
import hmac
import json
from datetime import datetime

from models import format_timestamp

REPORT_FIELDS = ("generatedAt", "healthScore", "riskLevel", "issues", "stats")
ISSUE_FIELDS = ("code", "severity", "message")
STATS_FIELDS = (
    "pendingAI",
    "voteAnomalies",
    "staleProfiles",
    "governanceStability",
    "projectedStability",
    "healthDrift",
    "stateHealth",
)
STATE_HEALTH_FIELDS = ("state", "healthScore")


def _scalar(value):
    if value is None:
        return "null"
    if isinstance(value, bool):
        raise TypeError("booleans are not part of the canonical report form")
    if isinstance(value, int):
        return str(value)
    if isinstance(value, str):
        return json.dumps(value, ensure_ascii=True)
    if isinstance(value, datetime):
        return json.dumps(format_timestamp(value))
    raise TypeError(f"cannot canonicalize value of type {type(value).__name__}")


def _object(data, fields, nested):
    parts = []
    for name in fields:
        value = data[name]
        if name in nested:
            child_fields = nested[name]
            encoded = "[" + ",".join(_object(item, child_fields, {}) for item in value) + "]"
        elif name == "stats":
            encoded = _object(value, STATS_FIELDS, {"stateHealth": STATE_HEALTH_FIELDS})
        else:
            encoded = _scalar(value)
        parts.append(json.dumps(name) + ":" + encoded)
    return "{" + ",".join(parts) + "}"


def canonical_bytes(report):
    """Encode a report with a fixed key order and integer-only numbers."""
    body = _object(report.to_dict(), REPORT_FIELDS, {"issues": ISSUE_FIELDS})
    return body.encode("ascii")


def digest_of(report):
    return hashlib.sha256(canonical_bytes(report)).hexdigest()


def verify_digest(report, digest):
    if not isinstance(digest, str):
        return False
    return hmac.compare_digest(digest_of(report), digest.strip().lower())
