import hmac
import logging

from flask import Flask, jsonify, request
from flask_cors import CORS

import config
import scoring
from anchor import Anchor
from audit_service import AuditService
from models import ALREADY_VOTED, RATE_LIMIT_EXCEEDED, VoteRejection, format_timestamp
from snapshot_store import PostgresSnapshotStore
from stats_collector import PostgresRegistry, StatsCollector
from vote_guard import InvalidVote, VoteIntegrityGuard

config.configure_logging()
logger = logging.getLogger(__name__)

app = Flask(__name__)
CORS(app)

REJECTION_STATUS = {ALREADY_VOTED: 409, RATE_LIMIT_EXCEEDED: 429}

_guard = None
_service = None


def get_guard():
    global _guard
    if _guard is None:
        _guard = VoteIntegrityGuard()
    return _guard


def get_service():
    global _service
    if _service is None:
        _service = AuditService(
            collector=StatsCollector(PostgresRegistry(), get_guard()),
            snapshots=PostgresSnapshotStore(),
            anchor=Anchor(),
        )
    return _service


def _tenant():
    return (request.headers.get("x-tenant") or "").strip() or None


def _client_ip():
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    return request.remote_addr


def _has_cron_secret():
    secret = config.CRON_SECRET
    if not secret:
        return False
    header = request.headers.get("Authorization", "")
    return hmac.compare_digest(header.encode("utf-8"), f"Bearer {secret}".encode("utf-8"))


@app.route("/votes", methods=["POST"])
def cast_vote():
    data = request.get_json(silent=True) or {}
    try:
        result = get_guard().cast_vote(
            _tenant(),
            data.get("subjectId"),
            data.get("voterId"),
            data.get("voteType"),
            _client_ip(),
        )
    except InvalidVote as exc:
        return jsonify({"error": "invalid_vote", "reason": str(exc)}), 400

    if isinstance(result, VoteRejection):
        return jsonify({"error": result.reason, "subjectId": result.subject_id}), REJECTION_STATUS[result.reason]
    return jsonify({"success": True, "vote": result.to_dict()})


@app.route("/cron/system-audit", methods=["GET", "POST"])
def cron_system_audit():
    if not _has_cron_secret():
        logger.warning("unauthorized system audit trigger from %s", _client_ip())
        return jsonify({"ok": False, "error": "unauthorized"}), 401

    run = get_service().compute_audit(_tenant(), snapshot=True, anchor=True)
    return jsonify(
        {
            "ok": True,
            "tenant": run.tenant_id,
            "healthScore": run.report.health_score,
            "riskLevel": run.report.risk_level,
            "hash": run.digest,
            "snapshotId": run.snapshot.id if run.snapshot else None,
            "anchorRequested": run.anchor is not None,
            "errors": run.errors,
        }
    )


def _latest_or_404():
    latest = get_service().latest(_tenant())
    if latest is None:
        return None, (jsonify({"error": "no_audit_yet"}), 404)
    return latest, None


@app.route("/public/system-health", methods=["GET"])
def public_system_health():
    latest, error = _latest_or_404()
    if error:
        return error
    body = latest.report.to_dict()
    body["hash"] = latest.digest
    body["computedAt"] = format_timestamp(latest.computed_at)
    return jsonify(body)


@app.route("/public/integrity-score", methods=["GET"])
def public_integrity_score():
    latest, error = _latest_or_404()
    if error:
        return error
    return jsonify({"integrityScore": scoring.integrity_score(latest.report), "hash": latest.digest})


@app.route("/public/alerts", methods=["GET"])
def public_alerts():
    return jsonify({"alerts": get_service().alerts(request.args.get("limit", 20), _tenant())})


@app.route("/public/verify-anchor", methods=["GET"])
def public_verify_anchor():
    digest = request.args.get("hash")
    if not digest:
        latest, error = _latest_or_404()
        if error:
            return error
        digest = latest.digest
    return jsonify(get_service().verify(digest, _tenant()))


@app.route("/admin/system-audit", methods=["GET"])
def admin_system_audit():
    if not _has_cron_secret():
        return jsonify({"error": "unauthorized"}), 401
    run = get_service().compute_audit(_tenant())
    body = run.report.to_dict()
    body["hash"] = run.digest
    body["errors"] = run.errors
    return jsonify(body)


@app.route("/admin/system-snapshots", methods=["GET"])
def admin_system_snapshots():
    if not _has_cron_secret():
        return jsonify({"error": "unauthorized"}), 401
    rows = get_service().snapshots_page(request.args.get("limit"), _tenant())
    return jsonify({"data": [row.to_dict() for row in rows]})


@app.route("/health")
def health():
    return "Backend running"


if __name__ == "__main__":
    from schema import ensure_schema

    ensure_schema()
    app.run(debug=True)
