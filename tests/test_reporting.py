import json

from wifsync.core.desired import build_desired_state
from wifsync.core.models import LiveResource, ResourceKind
from wifsync.core.reconciler import CREATED, ERROR, ApplyOutcome, StepResult, analyze_and_advise
from wifsync.core.reporting import print_outcome, print_plan, print_rows


class _StaticBackend:
    """Read-only backend returning canned live resources."""

    def __init__(self, pool=None):
        self.pool = pool

    def get_service_identity(self, account_id):
        return None

    def get_pool(self, pool_id):
        return self.pool

    def get_provider(self, pool_id, provider_id):
        return None


def _state():
    return build_desired_state(project_id="my-proj", project_number="1", trust_policy={"repository": "acme/api"})


def test_plan_table_hides_empty_columns(capsys):
    print_plan(analyze_and_advise(_state(), _StaticBackend()))
    lines = capsys.readouterr().out.splitlines()
    assert lines[0] == "No resource conflicts detected"
    assert lines[1].startswith("Recommended action: ")
    header = lines[3]
    assert header.startswith("| kind")
    assert "exists" in header and "action" in header
    assert "severity" not in header and "recommendation" not in header
    assert "| workload_identity_pool" in "\n".join(lines)
    assert "create" in lines[5]


def test_plan_table_lists_differences(capsys):
    pool = LiveResource(
        kind=ResourceKind.WORKLOAD_IDENTITY_POOL, resource_id="gh-acme-api-pool", exists=True,
        display_name="Legacy", description="Workload identity pool for acme/api", state="ACTIVE",
    )
    print_plan(analyze_and_advise(_state(), _StaticBackend(pool)))
    out = capsys.readouterr().out
    assert out.startswith("Found 1 resource conflict(s): 0 critical, 1 high, 0 medium, 0 low")
    assert "| display_name" in out
    assert "Legacy" in out and "warning" in out


def test_plan_json_is_machine_readable(capsys):
    print_plan(analyze_and_advise(_state(), _StaticBackend()), "json")
    payload = json.loads(capsys.readouterr().out)
    assert payload["has_conflicts"] is False
    assert [r["implied_action"] for r in payload["reports"]] == ["create", "create", "create"]


def test_outcome_table_and_counts(capsys):
    outcome = ApplyOutcome(
        None,
        (StepResult("pool", "gh-acme-api-pool", CREATED), StepResult("provider", "github-provider", ERROR, error="boom")),
        {CREATED: 1, ERROR: 1},
    )
    print_outcome(outcome)
    lines = capsys.readouterr().out.splitlines()
    assert lines[0].split("|")[1].strip() == "step"
    assert "reason" not in lines[0]
    assert "boom" in lines[3]
    assert lines[-1] == "CREATED=1 | ERROR=1"

    print_outcome(outcome, "json")
    payload = json.loads(capsys.readouterr().out)
    assert payload["counts"] == {"CREATED": 1, "ERROR": 1}
    assert "plan" not in payload


def test_long_cells_are_truncated(capsys):
    print_rows([{"a": "x" * 200, "b": True}], ["a", "b"])
    row = capsys.readouterr().out.splitlines()[2]
    assert "…" in row and "✓" in row
    assert len(row) < 100
