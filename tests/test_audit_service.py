"""
Tests for the collect -> score -> hash -> persist -> anchor pipeline.
"""
import pytest

from anchor import Anchor
from audit_service import AuditService
from conftest import FakeAnchorClient, FakeGuard, FakeRegistry, FakeSnapshotStore
from report_hash import digest_of
from stats_collector import StatsCollector


@pytest.fixture
def registry():
    return FakeRegistry(pending_ai=10, stale=0, regions={"Kerala": (10, 0)})


@pytest.fixture
def guard():
    return FakeGuard(anomalies=0)


@pytest.fixture
def snapshots(clock):
    return FakeSnapshotStore(clock)


@pytest.fixture
def anchor_client():
    return FakeAnchorClient()


@pytest.fixture
def service(registry, guard, snapshots, anchor_client, clock):
    collector = StatsCollector(registry, guard, clock=clock)
    return AuditService(collector, snapshots, Anchor(anchor_client), clock=clock)


class TestComputeAudit:
    def test_read_only_run_has_no_side_effects(self, service, snapshots, anchor_client):
        run = service.compute_audit()
        assert run.report.health_score == 95
        assert run.report.risk_level == "low"
        assert run.digest == digest_of(run.report)
        assert run.snapshot is None
        assert run.anchor is None
        assert snapshots.rows == []
        assert anchor_client.sent == []

    def test_snapshot_and_anchor(self, service, snapshots, anchor_client):
        run = service.compute_audit("t1", snapshot=True, anchor=True)
        assert run.snapshot.hash == run.digest
        assert run.snapshot.tenant_id == "t1"
        assert snapshots.rows == [run.snapshot]
        result = run.anchor.result(timeout=5)
        assert result.anchored
        assert anchor_client.sent == [("system_audit", run.digest)]

    def test_identical_state_gives_identical_digest(self, service):
        assert service.compute_audit().digest == service.compute_audit().digest

    def test_anomaly_change_changes_digest(self, service, guard):
        first = service.compute_audit()
        guard.anomalies = 1
        assert service.compute_audit().digest != first.digest

    def test_drift_against_previous_snapshot(self, service, registry, clock):
        service.compute_audit(snapshot=True)
        clock.advance(days=1)
        registry.stale = 10
        run = service.compute_audit(snapshot=True)
        assert run.report.health_score == 85
        assert run.report.stats.health_drift == -10

    def test_previous_snapshot_is_per_tenant(self, service, registry, clock):
        service.compute_audit("t1", snapshot=True)
        clock.advance(hours=1)
        registry.stale = 10
        run = service.compute_audit("t2", snapshot=True)
        assert run.report.stats.health_drift == 0

    def test_high_issues_are_recorded_as_alerts(self, service, guard, snapshots):
        guard.anomalies = 60
        service.compute_audit(snapshot=True)
        assert {a.code for a in snapshots.alerts} == {"vote_anomaly_spike", "governance_instability"}

    def test_alerts_not_recorded_without_snapshot(self, service, guard, snapshots):
        guard.anomalies = 60
        service.compute_audit()
        assert snapshots.alerts == []


class TestDegradation:
    def test_unavailable_vote_store(self, service, guard):
        guard.failing = True
        run = service.compute_audit()
        assert run.report.stats.vote_anomalies is None
        assert run.report.health_score == 65
        assert "vote_anomalies_unavailable" in [i.code for i in run.report.issues]

    def test_snapshot_persist_failure_still_returns_report(self, service, snapshots, caplog):
        snapshots.fail_append = True
        run = service.compute_audit(snapshot=True, anchor=True)
        assert run.errors == ["snapshot_persist_failed"]
        assert run.snapshot is None
        assert run.report.health_score == 95
        assert run.anchor.result(timeout=5).anchored
        assert "snapshot_persist_failed" in caplog.text

    def test_unreadable_history_means_no_drift(self, service, snapshots):
        service.compute_audit(snapshot=True)
        snapshots.fail_read = True
        run = service.compute_audit()
        assert run.report.stats.health_drift == 0

    def test_anchor_failure_does_not_affect_report(self, service, anchor_client):
        anchor_client.fail_send = True
        run = service.compute_audit(snapshot=True, anchor=True)
        assert run.anchor.result(timeout=5).error == "anchor_publish_failed"
        assert run.errors == []
        assert run.snapshot is not None


class TestReads:
    def test_no_record_yet(self, service):
        assert service.latest() is None
        assert service.latest("t9") is None

    def test_latest_after_compute(self, service):
        run = service.compute_audit("t1")
        latest = service.latest("t1")
        assert latest.digest == run.digest
        assert latest.report == run.report
        assert service.latest("t2") is None

    def test_latest_falls_back_to_snapshot(self, service, registry, guard, snapshots, anchor_client, clock):
        run = service.compute_audit(snapshot=True)
        restarted = AuditService(StatsCollector(registry, guard, clock=clock), snapshots, Anchor(anchor_client))
        latest = restarted.latest()
        assert latest.digest == run.digest
        assert latest.snapshot_id == run.snapshot.id

    def test_reads_do_not_recompute(self, service, snapshots):
        service.compute_audit(snapshot=True)
        before = len(snapshots.rows)
        service.latest()
        service.snapshots_page(10)
        assert len(snapshots.rows) == before

    def test_snapshots_newest_first(self, service, clock):
        ids = []
        for _ in range(3):
            ids.append(service.compute_audit(snapshot=True).snapshot.id)
            clock.advance(hours=1)
        assert [s.id for s in service.snapshots_page(2)] == [ids[2], ids[1]]

    def test_verify_snapshot(self, service):
        run = service.compute_audit(snapshot=True, anchor=True)
        run.anchor.result(timeout=5)
        result = service.verify(run.digest)
        assert result["found"]
        assert result["intact"]
        assert result["anchorReference"] == "TX0001"

    def test_verify_unknown_hash(self, service):
        result = service.verify("0" * 64)
        assert result == {"hash": "0" * 64, "found": False, "intact": False, "anchorReference": None}
