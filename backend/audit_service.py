import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import config
import scoring
from models import SNAPSHOT_PERSIST_FAILED, AuditReport, AuditRun, utcnow
from report_hash import digest_of, verify_digest
from snapshot_store import clamp_limit

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LatestAudit:
    """The most recent computed audit for one tenant."""

    tenant_id: str
    report: AuditReport
    digest: str
    computed_at: datetime
    snapshot_id: Optional[int] = None


def _tenant(tenant_id):
    return (tenant_id or "").strip() or config.DEFAULT_TENANT


class AuditService:
    def __init__(self, collector, snapshots, anchor, clock=utcnow):
        self.collector = collector
        self.snapshots = snapshots
        self.anchor = anchor
        self.clock = clock
        self._lock = threading.Lock()
        self._latest = {}

    def _previous_report(self, tenant_id):
        try:
            rows = self.snapshots.latest(1, tenant_id)
        except Exception as exc:
            logger.warning("previous snapshot unavailable tenant=%s: %s", tenant_id, exc)
            return None
        return rows[0].report if rows else None

    def compute_audit(self, tenant_id=None, snapshot=False, anchor=False):
        started = time.monotonic()
        tenant_id = _tenant(tenant_id)

        stats = self.collector.collect(tenant_id)
        previous = self._previous_report(tenant_id)
        report = scoring.score(stats, previous)
        digest = digest_of(report)
        run = AuditRun(report=report, digest=digest, tenant_id=tenant_id)

        if snapshot:
            try:
                run.snapshot = self.snapshots.append(report, digest, tenant_id)
            except Exception as exc:
                logger.error("%s tenant=%s hash=%s: %s", SNAPSHOT_PERSIST_FAILED, tenant_id, digest, exc)
                run.errors.append(SNAPSHOT_PERSIST_FAILED)
            else:
                try:
                    self.snapshots.record_alerts(report.issues, tenant_id)
                except Exception as exc:
                    logger.warning("alert log write failed tenant=%s: %s", tenant_id, exc)

        if anchor:
            run.anchor = self.anchor.publish_async(digest)

        with self._lock:
            self._latest[tenant_id] = LatestAudit(
                tenant_id=tenant_id,
                report=report,
                digest=digest,
                computed_at=self.clock(),
                snapshot_id=run.snapshot.id if run.snapshot else None,
            )

        logger.info(
            "system audit tenant=%s score=%s risk=%s hash=%s duration_ms=%d",
            tenant_id,
            report.health_score,
            report.risk_level,
            digest,
            (time.monotonic() - started) * 1000,
        )
        return run

    def latest(self, tenant_id=None):
        tenant_id = _tenant(tenant_id)
        with self._lock:
            cached = self._latest.get(tenant_id)
        if cached is not None:
            return cached
        try:
            rows = self.snapshots.latest(1, tenant_id)
        except Exception as exc:
            logger.warning("latest snapshot unavailable tenant=%s: %s", tenant_id, exc)
            return None
        if not rows:
            return None
        row = rows[0]
        return LatestAudit(
            tenant_id=tenant_id,
            report=row.report,
            digest=row.hash,
            computed_at=row.created_at,
            snapshot_id=row.id,
        )

    def snapshots_page(self, n=None, tenant_id=None):
        return self.snapshots.latest(clamp_limit(n if n is not None else config.SNAPSHOT_HISTORY_LIMIT),
                                     _tenant(tenant_id))

    def alerts(self, limit=20, tenant_id=None):
        return self.snapshots.recent_alerts(limit, _tenant(tenant_id))

    def verify(self, digest, tenant_id=None):
        digest = (digest or "").strip().lower()
        snapshot = self.snapshots.find_by_hash(digest, _tenant(tenant_id))
        if snapshot is None:
            return {"hash": digest, "found": False, "intact": False, "anchorReference": None}
        return {
            "hash": digest,
            "found": True,
            "intact": verify_digest(snapshot.report, snapshot.hash),
            "snapshotId": snapshot.id,
            "createdAt": snapshot.to_dict()["createdAt"],
            "anchorReference": self.anchor.lookup(digest),
        }
