import logging
from contextlib import contextmanager
from datetime import timedelta

import config
from db import get_connection, release_connection
from models import (
    ALREADY_VOTED,
    RATE_LIMIT_EXCEEDED,
    VOTE_TYPES,
    VOTE_UP,
    VoteAuditEntry,
    VoteRecord,
    VoteRejection,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_APPROVAL = 50


class InvalidVote(ValueError):
    pass


class _Rollback(Exception):
    pass


def approval_rating(votes_up, votes_down):
    total = votes_up + votes_down
    if total == 0:
        return DEFAULT_APPROVAL
    # half-up in integers; round() would send 50.5 to 50
    return (votes_up * 200 + total) // (2 * total)


def anonymous_voter(voter_id, ip_address, now):
    """Return the caller's voter id, or a fallback when none was given.

    The fallback is keyed on the client IP when known, so one address gets
    one anonymous vote per subject; otherwise it is unique per millisecond.
    """
    if voter_id is not None and not isinstance(voter_id, str):
        voter_id = str(voter_id)
    voter_id = (voter_id or "").strip()
    if voter_id:
        return voter_id
    if ip_address:
        return f"anon_{ip_address}"
    return f"anon_{int(now.timestamp() * 1000)}"


class _PostgresVoteTx:
    def __init__(self, cur):
        self._cur = cur

    def count_entries_since(self, subject_id, since):
        self._cur.execute(
            """
            SELECT COUNT(*)
            FROM vote_audit_trail
            WHERE politician_id = %s
              AND created_at > %s
            """,
            (subject_id, since),
        )
        return int(self._cur.fetchone()[0])

    def insert_vote(self, record):
        self._cur.execute(
            """
            INSERT INTO votes (tenant_id, politician_id, voter_id, vote_type, ip_address, created_at)
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (tenant_id, politician_id, voter_id) DO NOTHING
            """,
            (
                record.tenant_id,
                record.subject_id,
                record.voter_id,
                record.vote_type,
                record.ip_address,
                record.created_at,
            ),
        )
        return self._cur.rowcount > 0

    def write_counters(self, subject_id, votes_up, votes_down, approval, updated_at):
        self._cur.execute(
            """
            UPDATE politicians
            SET votes_up = %s, votes_down = %s, approval_rating = %s, updated_at = %s
            WHERE id = %s
            """,
            (votes_up, votes_down, approval, updated_at, subject_id),
        )

    def append_audit(self, entry):
        self._cur.execute(
            """
            INSERT INTO vote_audit_trail (tenant_id, politician_id, previous_votes, new_votes, delta, created_at)
            VALUES (%s, %s, %s, %s, %s, %s)
            """,
            (
                entry.tenant_id,
                entry.subject_id,
                entry.previous_count,
                entry.new_count,
                entry.delta,
                entry.created_at,
            ),
        )


class PostgresVoteStore:
    """Votes, counters and the audit trail in Postgres.

    ``transaction`` locks the subject's politicians row, so every vote on a
    subject is serialized behind that lock and the unique index on
    (tenant_id, politician_id, voter_id) decides duplicates.
    """

    @contextmanager
    def transaction(self, subject_id):
        conn = get_connection()
        cur = conn.cursor()
        try:
            cur.execute(
                "SELECT COALESCE(votes_up, 0), COALESCE(votes_down, 0) FROM politicians WHERE id = %s FOR UPDATE",
                (subject_id,),
            )
            row = cur.fetchone()
            counters = (int(row[0]), int(row[1])) if row else None
            yield _PostgresVoteTx(cur), counters
            conn.commit()
        except BaseException:
            conn.rollback()
            raise
        finally:
            cur.close()
            release_connection(conn)

    def count_bursts(self, since, threshold, tenant_id=None):
        conn = get_connection()
        cur = conn.cursor()
        try:
            cur.execute(
                """
                SELECT COUNT(*)
                FROM (
                    SELECT politician_id
                    FROM vote_audit_trail
                    WHERE created_at > %s
                      AND delta = 1
                      AND (%s IS NULL OR tenant_id = %s)
                    GROUP BY politician_id
                    HAVING COUNT(*) > %s
                ) AS bursts
                """,
                (since, tenant_id, tenant_id, threshold),
            )
            return int(cur.fetchone()[0])
        finally:
            cur.close()
            release_connection(conn)

    def count_bursts_by_region(self, since, threshold, tenant_id=None):
        conn = get_connection()
        cur = conn.cursor()
        try:
            cur.execute(
                """
                SELECT p.state, COUNT(*)
                FROM (
                    SELECT politician_id
                    FROM vote_audit_trail
                    WHERE created_at > %s
                      AND delta = 1
                      AND (%s IS NULL OR tenant_id = %s)
                    GROUP BY politician_id
                    HAVING COUNT(*) > %s
                ) AS bursts
                JOIN politicians p ON p.id = bursts.politician_id
                WHERE p.state IS NOT NULL
                GROUP BY p.state
                """,
                (since, tenant_id, tenant_id, threshold),
            )
            return {state: int(count) for state, count in cur.fetchall()}
        finally:
            cur.close()
            release_connection(conn)


class VoteIntegrityGuard:
    def __init__(self, store=None, clock=utcnow, rate_limit=None, rate_window_minutes=None,
                 burst_threshold=None, burst_window_minutes=None):
        self.store = store or PostgresVoteStore()
        self.clock = clock
        self.rate_limit = rate_limit if rate_limit is not None else config.VOTE_RATE_LIMIT
        self.rate_window = timedelta(
            minutes=rate_window_minutes if rate_window_minutes is not None else config.VOTE_RATE_WINDOW_MINUTES
        )
        self.burst_threshold = burst_threshold if burst_threshold is not None else config.ANOMALY_BURST_THRESHOLD
        self.burst_window = timedelta(
            minutes=burst_window_minutes if burst_window_minutes is not None else config.ANOMALY_WINDOW_MINUTES
        )

    def cast_vote(self, tenant_id, subject_id, voter_id, vote_type, ip_address=None):
        tenant_id = (tenant_id or config.DEFAULT_TENANT).strip() or config.DEFAULT_TENANT
        subject_id = _validate_subject(subject_id)
        if vote_type not in VOTE_TYPES:
            raise InvalidVote(f"vote type must be one of {', '.join(VOTE_TYPES)}")

        now = self.clock()
        voter_id = anonymous_voter(voter_id, ip_address, now)
        rejection = None
        record = None
        try:
            with self.store.transaction(subject_id) as (tx, counters):
                if counters is None:
                    raise InvalidVote(f"unknown subject {subject_id}")

                recent = tx.count_entries_since(subject_id, now - self.rate_window)
                if recent >= self.rate_limit:
                    rejection = VoteRejection(RATE_LIMIT_EXCEEDED, subject_id)
                    raise _Rollback()

                record = VoteRecord(
                    tenant_id=tenant_id,
                    subject_id=subject_id,
                    voter_id=voter_id,
                    vote_type=vote_type,
                    ip_address=ip_address or None,
                    created_at=now,
                )
                if not tx.insert_vote(record):
                    rejection = VoteRejection(ALREADY_VOTED, subject_id)
                    raise _Rollback()

                previous_up, previous_down = counters
                votes_up, votes_down = previous_up, previous_down
                if vote_type == VOTE_UP:
                    votes_up += 1
                else:
                    votes_down += 1
                tx.write_counters(subject_id, votes_up, votes_down, approval_rating(votes_up, votes_down), now)
                tx.append_audit(
                    VoteAuditEntry(
                        tenant_id=tenant_id,
                        subject_id=subject_id,
                        previous_count=previous_up,
                        new_count=votes_up,
                        delta=votes_up - previous_up,
                        created_at=now,
                    )
                )
        except _Rollback:
            logger.info("vote rejected subject=%s reason=%s", subject_id, rejection.reason)
            return rejection
        return record

    def count_anomalies(self, tenant_id=None):
        since = self.clock() - self.burst_window
        return self.store.count_bursts(since, self.burst_threshold, tenant_id)

    def count_anomalies_by_region(self, tenant_id=None):
        since = self.clock() - self.burst_window
        return self.store.count_bursts_by_region(since, self.burst_threshold, tenant_id)


def _validate_subject(subject_id):
    if subject_id is None or isinstance(subject_id, bool):
        raise InvalidVote("subject id is required")
    try:
        value = int(subject_id)
    except (TypeError, ValueError):
        raise InvalidVote("subject id must be an integer")
    if value <= 0:
        raise InvalidVote("subject id must be positive")
    return value
