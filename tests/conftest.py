"""
Pytest fixtures and in-memory collaborators for the audit engine tests.
"""

import itertools
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

import pytest

from models import RawStats, RegionStats, Snapshot


class FakeClock:
    def __init__(self, start=None):
        self.now = start or datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class _MemoryVoteTx:
    def __init__(self, store):
        self.store = store
        self.votes = []
        self.counters = {}
        self.audit = []

    def count_entries_since(self, subject_id, since):
        return sum(
            1
            for entry in self.store.audit + self.audit
            if entry.subject_id == subject_id and entry.created_at > since
        )

    def insert_vote(self, record):
        key = (record.tenant_id, record.subject_id, record.voter_id)
        if key in self.store.votes or any(
            (v.tenant_id, v.subject_id, v.voter_id) == key for v in self.votes
        ):
            return False
        self.votes.append(record)
        return True

    def write_counters(self, subject_id, votes_up, votes_down, approval, updated_at):
        self.counters[subject_id] = (votes_up, votes_down, approval)

    def append_audit(self, entry):
        self.audit.append(entry)


class InMemoryVoteStore:
    """Vote store whose transactions commit only when the block exits cleanly."""

    def __init__(self, subjects=None):
        self.counters = {}
        self.approval = {}
        self.states = {}
        self.votes = {}
        self.audit = []
        self._lock = threading.Lock()
        for subject_id, state in (subjects or {}).items():
            self.add_subject(subject_id, state)

    def add_subject(self, subject_id, state=None, votes_up=0, votes_down=0):
        self.counters[subject_id] = (votes_up, votes_down)
        self.approval[subject_id] = 50
        self.states[subject_id] = state

    @contextmanager
    def transaction(self, subject_id):
        with self._lock:
            tx = _MemoryVoteTx(self)
            yield tx, self.counters.get(subject_id)
            for record in tx.votes:
                self.votes[(record.tenant_id, record.subject_id, record.voter_id)] = record
            for sid, (up, down, approval) in tx.counters.items():
                self.counters[sid] = (up, down)
                self.approval[sid] = approval
            self.audit.extend(tx.audit)

    def _bursts(self, since, threshold, tenant_id):
        per_subject = {}
        for entry in self.audit:
            if entry.delta != 1 or entry.created_at <= since:
                continue
            if tenant_id is not None and entry.tenant_id != tenant_id:
                continue
            per_subject[entry.subject_id] = per_subject.get(entry.subject_id, 0) + 1
        return [sid for sid, count in per_subject.items() if count > threshold]

    def count_bursts(self, since, threshold, tenant_id=None):
        return len(self._bursts(since, threshold, tenant_id))

    def count_bursts_by_region(self, since, threshold, tenant_id=None):
        regions = {}
        for sid in self._bursts(since, threshold, tenant_id):
            state = self.states.get(sid)
            if state is not None:
                regions[state] = regions.get(state, 0) + 1
        return regions


class FakeRegistry:
    def __init__(self, pending_ai=0, stale=0, regions=None, failing=()):
        self.pending_ai = pending_ai
        self.stale = stale
        self.regions = regions or {}
        self.failing = set(failing)
        self.stale_cutoffs = []

    def _check(self, name):
        if name in self.failing:
            raise ConnectionError(f"{name} collaborator down")

    def count_pending_ai(self, tenant_id=None):
        self._check("count_pending_ai")
        return self.pending_ai

    def count_stale(self, before, tenant_id=None):
        self._check("count_stale")
        self.stale_cutoffs.append(before)
        return self.stale

    def region_counts(self, before, tenant_id=None):
        self._check("region_counts")
        return dict(self.regions)


class FakeGuard:
    def __init__(self, anomalies=0, by_region=None, failing=False):
        self.anomalies = anomalies
        self.by_region = by_region or {}
        self.failing = failing

    def count_anomalies(self, tenant_id=None):
        if self.failing:
            raise TimeoutError("vote store timeout")
        return self.anomalies

    def count_anomalies_by_region(self, tenant_id=None):
        if self.failing:
            raise TimeoutError("vote store timeout")
        return dict(self.by_region)


class FakeSnapshotStore:
    def __init__(self, clock):
        self.clock = clock
        self.rows = []
        self.alerts = []
        self.fail_append = False
        self.fail_read = False
        self._ids = itertools.count(1)

    def append(self, report, digest, tenant_id=None):
        if self.fail_append:
            raise ConnectionError("snapshot table unavailable")
        snapshot = Snapshot(
            id=next(self._ids),
            tenant_id=tenant_id or "default",
            hash=digest,
            health_score=report.health_score,
            risk_level=report.risk_level,
            created_at=self.clock(),
            report=report,
        )
        self.rows.append(snapshot)
        return snapshot

    def latest(self, n=1, tenant_id=None):
        if self.fail_read:
            raise ConnectionError("snapshot table unavailable")
        tenant_id = tenant_id or "default"
        rows = [row for row in self.rows if row.tenant_id == tenant_id]
        rows.sort(key=lambda row: (row.created_at, row.id), reverse=True)
        return rows[:n]

    def find_by_hash(self, digest, tenant_id=None):
        for row in self.latest(len(self.rows) or 1, tenant_id):
            if row.hash == digest:
                return row
        return None

    def record_alerts(self, issues, tenant_id=None):
        high = [issue for issue in issues if issue.severity == "high"]
        self.alerts.extend(high)
        return len(high)

    def recent_alerts(self, limit=20, tenant_id=None):
        return [issue.to_dict() for issue in reversed(self.alerts)][: int(limit)]


class FakeAnchorClient:
    def __init__(self, configured=True, fail_send=False, fail_find=False):
        self.configured = configured
        self.fail_send = fail_send
        self.fail_find = fail_find
        self.chain = {}
        self.sent = []
        self._lock = threading.Lock()

    def is_configured(self):
        return self.configured

    def find(self, ref, digest):
        if self.fail_find:
            raise ConnectionError("indexer unreachable")
        return self.chain.get((ref, digest))

    def send(self, ref, digest):
        if self.fail_send:
            raise ConnectionError("algod unreachable")
        with self._lock:
            self.sent.append((ref, digest))
            txid = f"TX{len(self.sent):04d}"
        self.chain[(ref, digest)] = txid
        return txid


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def vote_store():
    return InMemoryVoteStore(subjects={1: "Kerala", 2: "Bihar", 3: "Kerala"})


@pytest.fixture
def raw_stats(clock):
    def _make(pending_ai=0, vote_anomalies=0, stale_profiles=0, regions=()):
        return RawStats(
            collected_at=clock(),
            pending_ai=pending_ai,
            vote_anomalies=vote_anomalies,
            stale_profiles=stale_profiles,
            regions=tuple((state, RegionStats(*counts)) for state, counts in regions),
        )

    return _make
