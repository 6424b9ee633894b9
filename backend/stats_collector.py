import logging
from datetime import timedelta

import config
from db import get_connection, release_connection
from models import COLLABORATOR_UNAVAILABLE, RawStats, RegionStats, utcnow

logger = logging.getLogger(__name__)

_TENANT_CLAUSE = "(%s IS NULL OR tenant_id = %s OR tenant_id IS NULL)"


class PostgresRegistry:
    """Read-only counts over the politicians table."""

    def _scalar(self, query, params):
        conn = get_connection()
        cur = conn.cursor()
        try:
            cur.execute(query, params)
            row = cur.fetchone()
            return int(row[0] or 0) if row else 0
        finally:
            cur.close()
            release_connection(conn)

    def count_pending_ai(self, tenant_id=None):
        return self._scalar(
            f"SELECT COUNT(*) FROM politicians WHERE ai_narrative IS NULL AND {_TENANT_CLAUSE}",
            (tenant_id, tenant_id),
        )

    def count_stale(self, before, tenant_id=None):
        return self._scalar(
            f"SELECT COUNT(*) FROM politicians WHERE updated_at < %s AND {_TENANT_CLAUSE}",
            (before, tenant_id, tenant_id),
        )

    def region_counts(self, before, tenant_id=None):
        conn = get_connection()
        cur = conn.cursor()
        try:
            cur.execute(
                f"""
                SELECT state,
                       COUNT(*) FILTER (WHERE ai_narrative IS NULL) AS pending_ai,
                       COUNT(*) FILTER (WHERE updated_at < %s) AS stale_profiles
                FROM politicians
                WHERE state IS NOT NULL
                  AND {_TENANT_CLAUSE}
                GROUP BY state
                """,
                (before, tenant_id, tenant_id),
            )
            return {state: (int(pending or 0), int(stale or 0)) for state, pending, stale in cur.fetchall()}
        finally:
            cur.close()
            release_connection(conn)


class StatsCollector:
    def __init__(self, registry, guard, clock=utcnow, stale_days=None):
        self.registry = registry
        self.guard = guard
        self.clock = clock
        self.stale_days = stale_days if stale_days is not None else config.STALE_PROFILE_DAYS

    def _attempt(self, name, func, *args):
        try:
            return func(*args)
        except Exception as exc:
            logger.warning("%s: %s query failed: %s", COLLABORATOR_UNAVAILABLE, name, exc)
            return None

    def collect(self, tenant_id=None):
        collected_at = self.clock()
        stale_before = collected_at - timedelta(days=self.stale_days)

        pending_ai = self._attempt("pending_ai", self.registry.count_pending_ai, tenant_id)
        stale_profiles = self._attempt("stale_profiles", self.registry.count_stale, stale_before, tenant_id)
        vote_anomalies = self._attempt("vote_anomalies", self.guard.count_anomalies, tenant_id)

        regions = ()
        region_counts = self._attempt("region_counts", self.registry.region_counts, stale_before, tenant_id)
        if region_counts:
            anomalies_by_region = self._attempt(
                "region_anomalies", self.guard.count_anomalies_by_region, tenant_id
            )
            regions = tuple(
                (
                    state,
                    RegionStats(
                        pending_ai=pending,
                        vote_anomalies=None if anomalies_by_region is None else anomalies_by_region.get(state, 0),
                        stale_profiles=stale,
                    ),
                )
                for state, (pending, stale) in sorted(region_counts.items())
            )

        stats = RawStats(
            collected_at=collected_at,
            pending_ai=pending_ai,
            vote_anomalies=vote_anomalies,
            stale_profiles=stale_profiles,
            regions=regions,
        )
        if stats.unavailable:
            logger.warning("audit stats degraded tenant=%s unavailable=%s", tenant_id, ",".join(stats.unavailable))
        return stats
