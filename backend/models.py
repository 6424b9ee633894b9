from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional, Tuple

RISK_LOW = "low"
RISK_MEDIUM = "medium"
RISK_HIGH = "high"
SEVERITY_RANK = {RISK_HIGH: 0, RISK_MEDIUM: 1, RISK_LOW: 2}

VOTE_UP = "up"
VOTE_DOWN = "down"
VOTE_TYPES = (VOTE_UP, VOTE_DOWN)

RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
ALREADY_VOTED = "already_voted"
ANCHOR_PUBLISH_FAILED = "anchor_publish_failed"
ANCHOR_NOT_CONFIGURED = "anchor_not_configured"
SNAPSHOT_PERSIST_FAILED = "snapshot_persist_failed"
COLLABORATOR_UNAVAILABLE = "collaborator_unavailable"


def utcnow():
    return datetime.now(timezone.utc).replace(microsecond=0)


def format_timestamp(value):
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value.replace(microsecond=0).isoformat() + "Z"


def parse_timestamp(text):
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    value = datetime.fromisoformat(text)
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _optional_int(value):
    return None if value is None else int(value)


@dataclass(frozen=True)
class RegionStats:
    pending_ai: Optional[int]
    vote_anomalies: Optional[int]
    stale_profiles: Optional[int]


@dataclass(frozen=True)
class RawStats:
    """Operational counts gathered for one audit run.

    A field is None when the collaborator that supplies it could not be
    reached. ``regions`` maps a state name to that state's own counts.
    """

    collected_at: datetime
    pending_ai: Optional[int]
    vote_anomalies: Optional[int]
    stale_profiles: Optional[int]
    regions: Tuple[Tuple[str, RegionStats], ...] = ()

    @property
    def unavailable(self):
        names = []
        if self.pending_ai is None:
            names.append("pending_ai")
        if self.vote_anomalies is None:
            names.append("vote_anomalies")
        if self.stale_profiles is None:
            names.append("stale_profiles")
        return tuple(names)


@dataclass(frozen=True)
class Issue:
    code: str
    severity: str
    message: str

    def to_dict(self):
        return {"code": self.code, "severity": self.severity, "message": self.message}


@dataclass(frozen=True)
class StateHealth:
    state: str
    health_score: int

    def to_dict(self):
        return {"state": self.state, "healthScore": self.health_score}


@dataclass(frozen=True)
class AuditStats:
    pending_ai: Optional[int]
    vote_anomalies: Optional[int]
    stale_profiles: Optional[int]
    governance_stability: Optional[int]
    projected_stability: Optional[int]
    health_drift: int
    state_health: Tuple[StateHealth, ...] = ()

    def to_dict(self):
        return {
            "pendingAI": self.pending_ai,
            "voteAnomalies": self.vote_anomalies,
            "staleProfiles": self.stale_profiles,
            "governanceStability": self.governance_stability,
            "projectedStability": self.projected_stability,
            "healthDrift": self.health_drift,
            "stateHealth": [s.to_dict() for s in self.state_health],
        }


@dataclass(frozen=True)
class AuditReport:
    generated_at: datetime
    health_score: int
    risk_level: str
    issues: Tuple[Issue, ...]
    stats: AuditStats

    def to_dict(self):
        return {
            "generatedAt": format_timestamp(self.generated_at),
            "healthScore": self.health_score,
            "riskLevel": self.risk_level,
            "issues": [i.to_dict() for i in self.issues],
            "stats": self.stats.to_dict(),
        }

    @classmethod
    def from_dict(cls, data):
        stats = data.get("stats") or {}
        return cls(
            generated_at=parse_timestamp(data["generatedAt"]),
            health_score=int(data["healthScore"]),
            risk_level=data["riskLevel"],
            issues=tuple(
                Issue(code=i["code"], severity=i["severity"], message=i["message"])
                for i in data.get("issues") or []
            ),
            stats=AuditStats(
                pending_ai=stats.get("pendingAI"),
                vote_anomalies=stats.get("voteAnomalies"),
                stale_profiles=stats.get("staleProfiles"),
                governance_stability=_optional_int(stats.get("governanceStability")),
                projected_stability=_optional_int(stats.get("projectedStability")),
                health_drift=int(stats.get("healthDrift", 0)),
                state_health=tuple(
                    StateHealth(state=s["state"], health_score=int(s["healthScore"]))
                    for s in stats.get("stateHealth") or []
                ),
            ),
        )


@dataclass(frozen=True)
class Snapshot:
    id: int
    tenant_id: str
    hash: str
    health_score: int
    risk_level: str
    created_at: datetime
    report: AuditReport

    def to_dict(self, include_report=False):
        data = {
            "id": self.id,
            "tenantId": self.tenant_id,
            "hash": self.hash,
            "healthScore": self.health_score,
            "riskLevel": self.risk_level,
            "createdAt": format_timestamp(self.created_at),
        }
        if include_report:
            data["report"] = self.report.to_dict()
        return data


@dataclass(frozen=True)
class VoteRecord:
    tenant_id: str
    subject_id: int
    voter_id: str
    vote_type: str
    ip_address: Optional[str]
    created_at: datetime

    def to_dict(self):
        return {
            "tenantId": self.tenant_id,
            "subjectId": self.subject_id,
            "voterId": self.voter_id,
            "voteType": self.vote_type,
            "ipAddress": self.ip_address,
            "createdAt": format_timestamp(self.created_at),
        }


@dataclass(frozen=True)
class VoteAuditEntry:
    tenant_id: str
    subject_id: int
    previous_count: int
    new_count: int
    delta: int
    created_at: datetime


@dataclass(frozen=True)
class VoteRejection:
    reason: str
    subject_id: Optional[int] = None


@dataclass(frozen=True)
class AnchorResult:
    digest: str
    anchored: bool
    reference: Optional[str] = None
    error: Optional[str] = None
    reused: bool = False

    def to_dict(self):
        return {
            "hash": self.digest,
            "anchored": self.anchored,
            "reference": self.reference,
            "error": self.error,
            "reused": self.reused,
        }


@dataclass
class AuditRun:
    report: AuditReport
    digest: str
    tenant_id: str
    snapshot: Optional[Snapshot] = None
    anchor: Optional[object] = None
    errors: list = field(default_factory=list)
