from models import (
    RISK_HIGH,
    RISK_LOW,
    RISK_MEDIUM,
    SEVERITY_RANK,
    AuditReport,
    AuditStats,
    Issue,
    StateHealth,
)

BASE_SCORE = 100

VOTE_ANOMALY_WEIGHT = 2
VOTE_ANOMALY_CAP = 30
STALE_PROFILE_WEIGHT = 1
STALE_PROFILE_CAP = 20
PENDING_AI_CAP = 15

LOW_RISK_MIN = 67
HIGH_RISK_MAX = 33

STABILITY_ANOMALY_WEIGHT = 3

VOTE_ANOMALY_SPIKE_THRESHOLD = 50
AI_BACKLOG_THRESHOLD = 50
STALE_PROFILES_THRESHOLD = 100
GOVERNANCE_INSTABILITY_THRESHOLD = 40
HEALTH_REGRESSION_THRESHOLD = -10

_FIELD_LABELS = {
    "pending_ai": "AI narrative backlog",
    "vote_anomalies": "vote anomaly",
    "stale_profiles": "stale profile",
}


def _clamp(value, low=0, high=100):
    return max(low, min(high, value))


def _penalties(pending_ai, vote_anomalies, stale_profiles):
    if vote_anomalies is None:
        anomaly_penalty = VOTE_ANOMALY_CAP
    else:
        anomaly_penalty = min(vote_anomalies * VOTE_ANOMALY_WEIGHT, VOTE_ANOMALY_CAP)

    if stale_profiles is None:
        stale_penalty = STALE_PROFILE_CAP
    else:
        stale_penalty = min(stale_profiles * STALE_PROFILE_WEIGHT, STALE_PROFILE_CAP)

    if pending_ai is None:
        backlog_penalty = PENDING_AI_CAP
    else:
        # floor(pending_ai * 0.5) without going through floats
        backlog_penalty = min(pending_ai // 2, PENDING_AI_CAP)

    return anomaly_penalty, stale_penalty, backlog_penalty


def health_score(pending_ai, vote_anomalies, stale_profiles):
    return _clamp(BASE_SCORE - sum(_penalties(pending_ai, vote_anomalies, stale_profiles)))


def risk_level(score):
    if score >= LOW_RISK_MIN:
        return RISK_LOW
    if score <= HIGH_RISK_MAX:
        return RISK_HIGH
    return RISK_MEDIUM


def governance_stability(vote_anomalies):
    if vote_anomalies is None:
        return 0
    return _clamp(BASE_SCORE - vote_anomalies * STABILITY_ANOMALY_WEIGHT)


def projected_stability(current, previous_stability):
    if previous_stability is None:
        return current
    return _clamp(current + (current - previous_stability))


def _state_health(regions):
    rows = []
    for state, region in sorted(regions, key=lambda item: item[0]):
        if region.pending_ai is None and region.vote_anomalies is None and region.stale_profiles is None:
            continue
        rows.append(
            StateHealth(
                state=state,
                health_score=health_score(region.pending_ai, region.vote_anomalies, region.stale_profiles),
            )
        )
    return tuple(rows)


def _issues(stats, stability, drift, state_health):
    issues = []
    if stats.vote_anomalies is not None and stats.vote_anomalies > VOTE_ANOMALY_SPIKE_THRESHOLD:
        issues.append(
            Issue(
                code="vote_anomaly_spike",
                severity=RISK_HIGH,
                message=f"{stats.vote_anomalies} subjects with abnormal vote bursts",
            )
        )
    if stats.vote_anomalies is not None and stability < GOVERNANCE_INSTABILITY_THRESHOLD:
        issues.append(
            Issue(
                code="governance_instability",
                severity=RISK_HIGH,
                message=f"Governance stability at {stability}",
            )
        )
    if stats.pending_ai is not None and stats.pending_ai > AI_BACKLOG_THRESHOLD:
        issues.append(
            Issue(
                code="ai_backlog",
                severity=RISK_MEDIUM,
                message=f"{stats.pending_ai} politicians missing AI narrative",
            )
        )
    if stats.stale_profiles is not None and stats.stale_profiles > STALE_PROFILES_THRESHOLD:
        issues.append(
            Issue(
                code="stale_profiles",
                severity=RISK_MEDIUM,
                message=f"{stats.stale_profiles} profiles not updated recently",
            )
        )
    if drift <= HEALTH_REGRESSION_THRESHOLD:
        issues.append(
            Issue(
                code="health_regression",
                severity=RISK_MEDIUM,
                message=f"Health score dropped {-drift} points since the previous snapshot",
            )
        )
    for name in stats.unavailable:
        issues.append(
            Issue(
                code=f"{name}_unavailable",
                severity=RISK_MEDIUM,
                message=f"{_FIELD_LABELS[name].capitalize()} data unavailable; penalty applied at cap",
            )
        )
    weak = [s.state for s in state_health if risk_level(s.health_score) != RISK_LOW]
    if weak:
        issues.append(
            Issue(
                code="regional_health_degraded",
                severity=RISK_LOW,
                message=f"Degraded health in {len(weak)} region(s): {', '.join(weak)}",
            )
        )
    issues.sort(key=lambda issue: (SEVERITY_RANK[issue.severity], issue.code))
    return tuple(issues)


def score(stats, previous=None):
    """Turn collected stats into an AuditReport.

    ``previous`` is the most recent earlier AuditReport (or None). The result
    depends only on the arguments; ``generated_at`` is taken from
    ``stats.collected_at`` so identical inputs give identical reports.
    """
    current = health_score(stats.pending_ai, stats.vote_anomalies, stats.stale_profiles)
    stability = governance_stability(stats.vote_anomalies)

    previous_stability = None
    drift = 0
    if previous is not None:
        previous_stability = previous.stats.governance_stability
        drift = current - previous.health_score

    state_health = _state_health(stats.regions)

    return AuditReport(
        generated_at=stats.collected_at,
        health_score=current,
        risk_level=risk_level(current),
        issues=_issues(stats, stability, drift, state_health),
        stats=AuditStats(
            pending_ai=stats.pending_ai,
            vote_anomalies=stats.vote_anomalies,
            stale_profiles=stats.stale_profiles,
            governance_stability=stability,
            projected_stability=projected_stability(stability, previous_stability),
            health_drift=drift,
            state_health=state_health,
        ),
    )


def integrity_score(report):
    anomalies = report.stats.vote_anomalies
    penalty = VOTE_ANOMALY_CAP if anomalies is None else anomalies * VOTE_ANOMALY_WEIGHT
    return _clamp(report.health_score - penalty)
