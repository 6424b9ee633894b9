import json
from datetime import timezone

import config
from db import get_connection, release_connection
from models import RISK_HIGH, AuditReport, Snapshot, format_timestamp

MAX_SNAPSHOT_PAGE = 100

_SNAPSHOT_COLUMNS = "id, tenant_id, hash, health_score, risk_level, created_at, report"


def _aware(value):
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _snapshot_from_row(row):
    snapshot_id, tenant_id, digest, health_score, risk_level, created_at, report = row
    if isinstance(report, str):
        report = json.loads(report)
    return Snapshot(
        id=snapshot_id,
        tenant_id=tenant_id,
        hash=digest,
        health_score=int(health_score),
        risk_level=risk_level,
        created_at=_aware(created_at),
        report=AuditReport.from_dict(report),
    )


def clamp_limit(n):
    try:
        n = int(n)
    except (TypeError, ValueError):
        n = config.SNAPSHOT_HISTORY_LIMIT
    return max(1, min(MAX_SNAPSHOT_PAGE, n))


class PostgresSnapshotStore:
    """Append-only audit history; rows are never updated or deleted."""

    def append(self, report, digest, tenant_id=None):
        tenant_id = tenant_id or config.DEFAULT_TENANT
        conn = get_connection()
        cur = conn.cursor()
        try:
            cur.execute(
                f"""
                INSERT INTO system_audit_snapshots (tenant_id, hash, health_score, risk_level, report)
                VALUES (%s, %s, %s, %s, %s)
                RETURNING {_SNAPSHOT_COLUMNS}
                """,
                (
                    tenant_id,
                    digest,
                    report.health_score,
                    report.risk_level,
                    json.dumps(report.to_dict(), sort_keys=True),
                ),
            )
            row = cur.fetchone()
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            cur.close()
            release_connection(conn)
        return _snapshot_from_row(row)

    def latest(self, n=1, tenant_id=None):
        tenant_id = tenant_id or config.DEFAULT_TENANT
        conn = get_connection()
        cur = conn.cursor()
        try:
            cur.execute(
                f"""
                SELECT {_SNAPSHOT_COLUMNS}
                FROM system_audit_snapshots
                WHERE tenant_id = %s
                ORDER BY created_at DESC, id DESC
                LIMIT %s
                """,
                (tenant_id, clamp_limit(n)),
            )
            rows = cur.fetchall()
        finally:
            cur.close()
            release_connection(conn)
        return [_snapshot_from_row(row) for row in rows]

    def find_by_hash(self, digest, tenant_id=None):
        tenant_id = tenant_id or config.DEFAULT_TENANT
        conn = get_connection()
        cur = conn.cursor()
        try:
            cur.execute(
                f"""
                SELECT {_SNAPSHOT_COLUMNS}
                FROM system_audit_snapshots
                WHERE tenant_id = %s AND hash = %s
                ORDER BY created_at DESC, id DESC
                LIMIT 1
                """,
                (tenant_id, digest),
            )
            row = cur.fetchone()
        finally:
            cur.close()
            release_connection(conn)
        return _snapshot_from_row(row) if row else None

    def record_alerts(self, issues, tenant_id=None):
        high = [issue for issue in issues if issue.severity == RISK_HIGH]
        if not high:
            return 0
        tenant_id = tenant_id or config.DEFAULT_TENANT
        conn = get_connection()
        cur = conn.cursor()
        try:
            for issue in high:
                cur.execute(
                    "INSERT INTO system_alerts (tenant_id, code, severity, message) VALUES (%s, %s, %s, %s)",
                    (tenant_id, issue.code, issue.severity, issue.message),
                )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            cur.close()
            release_connection(conn)
        return len(high)

    def recent_alerts(self, limit=20, tenant_id=None):
        tenant_id = tenant_id or config.DEFAULT_TENANT
        conn = get_connection()
        cur = conn.cursor()
        try:
            cur.execute(
                """
                SELECT code, severity, message, created_at
                FROM system_alerts
                WHERE tenant_id = %s
                ORDER BY created_at DESC, id DESC
                LIMIT %s
                """,
                (tenant_id, clamp_limit(limit)),
            )
            rows = cur.fetchall()
        finally:
            cur.close()
            release_connection(conn)
        return [
            {
                "code": code,
                "severity": severity,
                "message": message,
                "createdAt": format_timestamp(created_at) if created_at else None,
            }
            for code, severity, message, created_at in rows
        ]
