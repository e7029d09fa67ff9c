import pytest

from wifsync.core.desired import build_desired_state, default_account_id, default_pool_id
from wifsync.core.models import (
    ClaimsMapping,
    Severity,
    ValidationError,
    WifDefaults,
    split_repository,
    validate_account_id,
    validate_pool_id,
)


def test_default_names_for_short_repository():
    assert default_account_id("acme/api") == "github-acme-api"
    assert default_pool_id("acme/api") == "gh-acme-api-pool"
    assert default_account_id("Acme/My.Repo") == "github-acme-my-repo"


def test_default_names_are_shortened_to_fit():
    repo = "very-long-organization-name/extremely-long-repository-name"
    account = default_account_id(repo)
    pool = default_pool_id(repo)
    assert len(account) <= 30 and validate_account_id(account) == account
    assert len(pool) <= 32 and validate_pool_id(pool) == pool
    assert pool.startswith("gh-very") and pool.endswith("-pool")


def test_build_desired_state_defaults():
    state = build_desired_state(project_id="my-proj", project_number="123456",
                                trust_policy={"repository": "acme/api"})
    assert state.service_identity.roles == WifDefaults().roles
    assert state.pool.display_name == "GitHub acme/api"
    assert state.provider.pool_id == state.pool.pool_id
    assert state.service_account_email == "github-acme-api@my-proj.iam.gserviceaccount.com"
    assert state.provider_name == (
        "projects/123456/locations/global/workloadIdentityPools/gh-acme-api-pool/providers/github-provider"
    )
    assert state.binding_role == "roles/iam.workloadIdentityUser"


def test_explicit_names_are_validated():
    with pytest.raises(ValidationError):
        build_desired_state(project_id="p", service_account={"name": "Bad_Name"},
                            trust_policy={"repository": "acme/api"})
    with pytest.raises(ValidationError):
        build_desired_state(project_id="p", workload_identity={"pool_id": "gcp-reserved"},
                            trust_policy={"repository": "acme/api"})
    with pytest.raises(ValidationError):
        build_desired_state(project_id="p", project_number="12ab", trust_policy={"repository": "acme/api"})
    with pytest.raises(ValidationError):
        build_desired_state(project_id="p", service_account={"roles": ["run.admin"]},
                            trust_policy={"repository": "acme/api"})


@pytest.mark.parametrize("value", ["abc", "Upper-case", "1starts-with-digit", "ends-with-", "x" * 33])
def test_pool_id_rules(value):
    with pytest.raises(ValidationError):
        validate_pool_id(value)


@pytest.mark.parametrize("value", ["", "acme", "acme/api/x", "-acme/api", "acme/..", "acme/a b"])
def test_repository_shapes(value):
    with pytest.raises(ValidationError) as exc:
        split_repository(value)
    assert exc.value.message


def test_validation_error_carries_hints():
    err = ValidationError("bad", "try this", "or that")
    assert str(err) == "bad (try this; or that)"
    assert err.hints == ("try this", "or that")


def test_severity_is_ordered():
    assert Severity.INFO < Severity.WARNING < Severity.CRITICAL
    assert max(Severity.WARNING, Severity.CRITICAL) is Severity.CRITICAL
    assert Severity.CRITICAL.label == "critical"


def test_wif_defaults_overlay():
    d = WifDefaults.from_mapping({"roles": ["roles/viewer"], "claims": {"environment": None}, "issuer_uri": ""})
    assert d.roles == ("roles/viewer",)
    assert d.claims.environment == ""
    assert d.issuer_uri == "https://token.actions.githubusercontent.com"
    with pytest.raises(ValidationError):
        WifDefaults.from_mapping({"region": "eu"})


def test_claims_mapping_rules():
    with pytest.raises(ValidationError):
        ClaimsMapping().merged({"nickname": "assertion.nick"})
    with pytest.raises(ValidationError):
        ClaimsMapping(subject="").validate()
    with pytest.raises(ValidationError):
        ClaimsMapping(actor="assertion.actor'").validate()
    ClaimsMapping(base_ref="", head_ref="").validate()
