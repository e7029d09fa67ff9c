import pytest

from wifsync.core.advisor import (
    ACTION_CRITICAL,
    ACTION_HIGH,
    ACTION_LOW,
    ACTION_MEDIUM,
    ACTION_NONE,
    ResolutionAdvisor,
    generate_suggestions,
    is_updatable,
)
from wifsync.core.models import ConflictReport, FieldDifference, IdentityPool, ResourceKind, Severity, Strategy

SA = ResourceKind.SERVICE_ACCOUNT
POOL = ResourceKind.WORKLOAD_IDENTITY_POOL
PROVIDER = ResourceKind.WORKLOAD_IDENTITY_PROVIDER


def _report(kind, *diffs, exists=True):
    return ConflictReport(
        kind=kind,
        resource_id="res-1",
        exists=exists,
        differences=tuple(FieldDifference(f, "live", "desired", sev, f) for f, sev in diffs),
    )


SCENARIOS = {
    "sa_clean": _report(SA),
    "sa_missing_role": _report(SA, ("missing_roles", Severity.WARNING)),
    "sa_cosmetic": _report(SA, ("display_name", Severity.INFO), ("extra_roles", Severity.INFO)),
    "pool_cosmetic": _report(POOL, ("display_name", Severity.WARNING)),
    "pool_deleted": _report(POOL, ("state", Severity.CRITICAL)),
    "provider_issuer": _report(PROVIDER, ("issuer_uri", Severity.CRITICAL), ("display_name", Severity.WARNING)),
}


def _strategies(report):
    return [s.strategy for s in report.suggestions]


def test_missing_role_recommends_update_in_place():
    report = ResolutionAdvisor().advise(SCENARIOS["sa_missing_role"])
    assert _strategies(report) == [Strategy.SKIP, Strategy.UPDATE, Strategy.RENAME]
    assert report.recommended.strategy is Strategy.UPDATE
    assert report.implied_action == "update"


def test_cosmetic_service_account_drift_recommends_skip():
    report = ResolutionAdvisor().advise(SCENARIOS["sa_cosmetic"])
    assert _strategies(report) == [Strategy.SKIP, Strategy.UPDATE, Strategy.RENAME]
    assert report.recommended.strategy is Strategy.SKIP


def test_pool_without_updatable_fields_offers_no_update():
    report = ResolutionAdvisor().advise(SCENARIOS["pool_cosmetic"])
    assert _strategies(report) == [Strategy.SKIP, Strategy.RENAME]
    assert report.recommended.strategy is Strategy.SKIP
    assert not is_updatable(POOL, "display_name")


def test_critical_recommends_rename_and_offers_fail():
    report = ResolutionAdvisor().advise(SCENARIOS["pool_deleted"])
    assert _strategies(report) == [Strategy.SKIP, Strategy.RENAME, Strategy.FAIL]
    assert report.recommended.strategy is Strategy.RENAME
    skip = report.suggestions[0]
    assert skip.recommended is False and skip.automated is True
    assert report.suggestions[1].automated is False


@pytest.mark.parametrize("name", sorted(SCENARIOS))
def test_exactly_one_recommendation_and_unique_strategies(name):
    report = ResolutionAdvisor().advise(SCENARIOS[name])
    assert sum(1 for s in report.suggestions if s.recommended) == 1
    assert len(set(_strategies(report))) == len(report.suggestions)
    assert report.suggestions[0].strategy is Strategy.SKIP


def test_absent_resource_gets_no_suggestions():
    report = _report(SA, exists=False)
    assert ResolutionAdvisor().advise(report) is report
    assert generate_suggestions(_report(SA))[0].recommended is True


def test_aggregate_buckets_and_verdict():
    advisor = ResolutionAdvisor()
    reports = [advisor.advise(SCENARIOS[n]) for n in ("sa_missing_role", "pool_deleted", "sa_cosmetic")]
    result = advisor.aggregate(reports)
    assert (result.critical_count, result.high_count, result.medium_count, result.low_count) == (1, 0, 1, 1)
    assert result.total_conflicts == 3
    assert result.can_proceed is False
    assert result.recommended_action == ACTION_CRITICAL
    assert result.summary == "Found 3 resource conflict(s): 1 critical, 0 high, 1 medium, 1 low"


@pytest.mark.parametrize(
    "names, action",
    [
        (("pool_cosmetic", "sa_missing_role"), ACTION_HIGH),
        (("sa_missing_role",), ACTION_MEDIUM),
        (("sa_clean", "sa_cosmetic"), ACTION_LOW),
    ],
)
def test_recommended_action_follows_worst_bucket(names, action):
    advisor = ResolutionAdvisor()
    result = advisor.aggregate(advisor.advise(SCENARIOS[n]) for n in names)
    assert result.recommended_action == action
    assert result.can_proceed is True


def test_aggregate_without_existing_resources():
    advisor = ResolutionAdvisor()
    result = advisor.aggregate([_report(SA, exists=False), _report(POOL, exists=False)])
    assert result.has_conflicts is False
    assert result.can_proceed is True
    assert result.recommended_action == ACTION_NONE
    assert result.summary == "No resource conflicts detected"
    assert len(result.reports) == 2


def test_rename_hint_names_a_candidate_id():
    report = ResolutionAdvisor().advise(_report(POOL, ("state", Severity.CRITICAL)))
    rename = report.suggestions[1]
    assert rename.hints[0] == "Use --pool-id res-1-new or similar"


def test_advise_rejects_report_for_another_resource():
    desired = IdentityPool(pool_id="other-pool")
    with pytest.raises(ValueError):
        ResolutionAdvisor().advise(_report(POOL), desired)
    report = ResolutionAdvisor().advise(_report(POOL), IdentityPool(pool_id="res-1"))
    assert report.recommended.strategy is Strategy.SKIP
