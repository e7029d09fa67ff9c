import pytest

from wifsync.core.backend import LiveStateReader, NotFoundError, PermissionDeniedError, TransportError
from wifsync.core.conditions import compile_trust_policy
from wifsync.core.desired import build_desired_state
from wifsync.core.models import LiveResource, ResourceKind, Severity, Strategy, ValidationError
from wifsync.core.reconciler import (
    ABORTED,
    ABSENT,
    BLOCKED,
    CREATED,
    DELETED,
    ERROR,
    PLANNED,
    UNCHANGED,
    UPDATED,
    Reconciler,
    analyze_and_advise,
)

ROLES = ("roles/run.admin", "roles/storage.admin", "roles/artifactregistry.admin")


class FakeBackend:
    """In-memory identity backend recording every call."""

    def __init__(self):
        self.accounts = {}
        self.pools = {}
        self.providers = {}
        self.grants = {}
        self.bindings = []
        self.calls = []
        self.fail = {}
        self.missing_raises = False

    def _call(self, name):
        self.calls.append(name)
        if name in self.fail:
            raise self.fail[name]

    def _lookup(self, store, key):
        if key in store:
            return store[key]
        if self.missing_raises:
            raise NotFoundError("not found", resource=str(key), status=404)
        return None

    # reads
    def get_service_identity(self, account_id):
        self._call("get_service_identity")
        return self._lookup(self.accounts, account_id)

    def get_pool(self, pool_id):
        self._call("get_pool")
        return self._lookup(self.pools, pool_id)

    def get_provider(self, pool_id, provider_id):
        self._call("get_provider")
        return self._lookup(self.providers, (pool_id, provider_id))

    def get_trust_bindings(self, service_account):
        self._call("get_trust_bindings")
        out = {}
        for sa, member, role, _ in self.bindings:
            if sa == service_account:
                out.setdefault(role, []).append(member)
        return out

    # writes
    def create_service_identity(self, desired):
        self._call("create_service_identity")
        self.accounts[desired.account_id] = LiveResource(
            kind=ResourceKind.SERVICE_ACCOUNT, resource_id=desired.account_id, exists=True,
            display_name=desired.display_name, description=desired.description,
        )
        return {}

    def update_service_identity(self, account_id, display_name, description):
        self._call("update_service_identity")
        self.updated = (account_id, display_name, description)
        return {}

    def create_pool(self, desired):
        self._call("create_pool")
        return {}

    def create_provider(self, desired, attribute_mapping, condition):
        self._call("create_provider")
        self.provider_args = (desired, attribute_mapping, condition)
        return {}

    def grant_roles(self, member, roles):
        self._call("grant_roles")
        have = self.grants.setdefault(member, set())
        new = [r for r in roles if r not in have]
        have.update(new)
        return new

    def revoke_roles(self, member, roles):
        self._call("revoke_roles")
        have = self.grants.setdefault(member, set())
        gone = [r for r in roles if r in have]
        have.difference_update(gone)
        return gone

    def create_trust_binding(self, service_account, member, role, condition):
        self._call("create_trust_binding")
        self.bindings.append((service_account, member, role, condition))
        return {"changed": True}

    def delete_service_identity(self, account_id):
        self._call("delete_service_identity")

    def delete_pool(self, pool_id):
        self._call("delete_pool")

    def delete_provider(self, pool_id, provider_id):
        self._call("delete_provider")


READS = ["get_service_identity", "get_pool", "get_provider"]
SEEDED_READS = ["get_service_identity", "get_trust_bindings", "get_pool", "get_provider"]


def _state(**policy):
    tp = {"repository": "acme/api", "branches": ["main"]}
    tp.update(policy)
    return build_desired_state(
        project_id="my-proj",
        project_number="123456",
        service_account={"roles": list(ROLES)},
        trust_policy=tp,
    )


def _statuses(outcome):
    return [(r.step, r.status) for r in outcome.results]


def _seed_all(backend, state, *, sa_roles=ROLES, pool_state="ACTIVE"):
    sa = state.service_identity
    backend.accounts[sa.account_id] = LiveResource(
        kind=ResourceKind.SERVICE_ACCOUNT, resource_id=sa.account_id, exists=True,
        display_name=sa.display_name, description=sa.description, roles=tuple(sa_roles),
    )
    backend.pools[state.pool.pool_id] = LiveResource(
        kind=ResourceKind.WORKLOAD_IDENTITY_POOL, resource_id=state.pool.pool_id, exists=True,
        display_name=state.pool.display_name, description=state.pool.description, state=pool_state,
    )
    _, expr = compile_trust_policy(state.provider.policy)
    backend.providers[(state.pool.pool_id, state.provider.provider_id)] = LiveResource(
        kind=ResourceKind.WORKLOAD_IDENTITY_PROVIDER, resource_id=state.provider.provider_id, exists=True,
        display_name=state.provider.display_name, description=state.provider.description, state="ACTIVE",
        attribute_condition=expr, issuer_uri=state.provider.policy.issuer_uri,
        allowed_audiences=state.provider.policy.allowed_audiences,
    )


def test_fresh_project_creates_everything_in_order():
    backend = FakeBackend()
    state = _state()
    outcome = Reconciler(backend).apply(state)

    assert backend.calls == READS + [
        "create_service_identity",
        "grant_roles",
        "create_pool",
        "create_provider",
        "create_trust_binding",
    ]
    assert _statuses(outcome) == [
        ("service_account", CREATED),
        ("roles", UPDATED),
        ("pool", CREATED),
        ("provider", CREATED),
        ("binding", CREATED),
    ]
    _, mapping, condition = backend.provider_args
    assert condition == compile_trust_policy(state.provider.policy)[1]
    assert mapping["attribute.repository"] == "assertion.repository"

    sa_email, member, role, cond = backend.bindings[0]
    assert sa_email == "github-acme-api@my-proj.iam.gserviceaccount.com"
    assert member == (
        "principalSet://iam.googleapis.com/projects/123456/locations/global/"
        "workloadIdentityPools/gh-acme-api-pool/attribute.repository/acme/api"
    )
    assert role == "roles/iam.workloadIdentityUser"
    assert cond == condition
    assert outcome.plan.summary == "No resource conflicts detected"


def test_dry_run_reads_but_never_writes():
    backend = FakeBackend()
    outcome = Reconciler(backend, dry_run=True).apply(_state())
    assert backend.calls == READS
    assert {s for _, s in _statuses(outcome)} == {PLANNED}


def test_existing_account_missing_role_only_grants_the_missing_one():
    backend = FakeBackend()
    state = _state()
    _seed_all(backend, state, sa_roles=ROLES[:2])
    outcome = Reconciler(backend).apply(state)

    member = "serviceAccount:github-acme-api@my-proj.iam.gserviceaccount.com"
    assert backend.grants[member] == {"roles/artifactregistry.admin"}
    assert "create_pool" not in backend.calls and "create_provider" not in backend.calls
    assert dict(_statuses(outcome)) == {
        "service_account": UNCHANGED,
        "roles": UPDATED,
        "pool": UNCHANGED,
        "provider": UNCHANGED,
        "binding": CREATED,
    }
    assert outcome.plan.medium_count == 1


def test_missing_trust_binding_on_existing_account_is_fixed_in_place():
    backend = FakeBackend()
    state = _state()
    _seed_all(backend, state)

    plan = Reconciler(backend).plan(state)
    assert backend.calls == SEEDED_READS
    sa_report = plan.report_for(ResourceKind.SERVICE_ACCOUNT)
    diff = sa_report.difference("missing_trust_binding")
    assert diff.severity is Severity.WARNING
    assert diff.live_value == ()
    assert diff.desired_value == state.binding_member
    assert sa_report.recommended.strategy is Strategy.UPDATE
    assert plan.can_proceed is True

    backend.calls = []
    outcome = Reconciler(backend).apply(state)
    assert backend.calls == SEEDED_READS + ["create_trust_binding"]
    assert dict(_statuses(outcome)) == {
        "service_account": UNCHANGED,
        "roles": UNCHANGED,
        "pool": UNCHANGED,
        "provider": UNCHANGED,
        "binding": CREATED,
    }


def test_present_trust_binding_is_not_rewritten():
    backend = FakeBackend()
    state = _state()
    _seed_all(backend, state)
    backend.bindings.append((state.service_account_email, state.binding_member, state.binding_role, ""))

    outcome = Reconciler(backend).apply(state)
    sa_report = outcome.plan.report_for(ResourceKind.SERVICE_ACCOUNT)
    assert sa_report.differences == ()
    assert sa_report.live_details["trust_members"] == (state.binding_member,)
    assert "create_trust_binding" not in backend.calls
    assert dict(_statuses(outcome))["binding"] == UNCHANGED


def test_binding_for_another_role_does_not_count():
    backend = FakeBackend()
    state = _state()
    _seed_all(backend, state)
    backend.bindings.append(
        (state.service_account_email, state.binding_member, "roles/iam.serviceAccountUser", "")
    )

    plan = Reconciler(backend).plan(state)
    assert plan.report_for(ResourceKind.SERVICE_ACCOUNT).difference("missing_trust_binding") is not None


def test_trust_binding_read_failure_stops_the_plan():
    backend = FakeBackend()
    state = _state()
    _seed_all(backend, state)
    backend.fail["get_trust_bindings"] = PermissionDeniedError(
        "denied", resource=state.service_account_email, status=403
    )
    with pytest.raises(PermissionDeniedError):
        Reconciler(backend).apply(state)
    assert backend.calls == ["get_service_identity", "get_trust_bindings"]


def test_critical_conflict_blocks_all_writes():
    backend = FakeBackend()
    state = _state()
    _seed_all(backend, state, pool_state="DELETED")
    outcome = Reconciler(backend).apply(state)

    assert backend.calls == SEEDED_READS
    assert outcome.blocked is True
    assert outcome.plan.can_proceed is False
    assert _statuses(outcome) == [("workload_identity_pool", BLOCKED)]
    pool_report = outcome.plan.report_for(ResourceKind.WORKLOAD_IDENTITY_POOL)
    assert pool_report.recommended.title.startswith("Create workload identity pool")
    assert pool_report.can_auto_resolve is False


def test_backend_failure_aborts_remaining_steps():
    backend = FakeBackend()
    backend.fail["create_pool"] = PermissionDeniedError("denied", resource="gh-acme-api-pool", status=403)
    outcome = Reconciler(backend).apply(_state())

    assert _statuses(outcome)[2:] == [("pool", ERROR), ("provider", ABORTED), ("binding", ABORTED)]
    assert "create_provider" not in backend.calls
    assert outcome.failed is True
    assert "denied" in outcome.results[2].error


def test_not_found_error_means_absent():
    backend = FakeBackend()
    backend.missing_raises = True
    state = _state()
    live = LiveStateReader(backend).read(state.pool)
    assert live.exists is False and live.kind is ResourceKind.WORKLOAD_IDENTITY_POOL

    result = analyze_and_advise(state, backend)
    assert all(r.implied_action == "create" for r in result.reports)


def test_read_failures_are_not_treated_as_absent():
    backend = FakeBackend()
    backend.fail["get_pool"] = TransportError("connection reset")
    with pytest.raises(TransportError):
        Reconciler(backend).apply(_state())
    assert not [c for c in backend.calls if c.startswith("create")]


def test_invalid_input_fails_before_backend_calls():
    backend = FakeBackend()
    with pytest.raises(ValidationError):
        Reconciler(backend).apply(_state(branches=["main'"]))
    assert backend.calls == []


def test_cleanup_deletes_in_reverse_order():
    backend = FakeBackend()
    state = _state()
    _seed_all(backend, state)
    member = f"serviceAccount:{state.service_account_email}"
    backend.grants[member] = set(ROLES)

    outcome = Reconciler(backend).cleanup(state)
    assert backend.calls[3:] == ["delete_provider", "delete_pool", "revoke_roles", "delete_service_identity"]
    assert dict(_statuses(outcome)) == {
        "provider": DELETED,
        "pool": DELETED,
        "roles": UPDATED,
        "service_account": DELETED,
    }
    assert backend.grants[member] == set()


def test_cleanup_of_missing_resources_is_a_no_op():
    backend = FakeBackend()
    outcome = Reconciler(backend).cleanup(_state())
    assert backend.calls == READS
    assert {s for _, s in _statuses(outcome)} == {ABSENT}
