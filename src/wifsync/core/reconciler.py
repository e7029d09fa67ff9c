"""
Reconciler: read -> analyze -> advise, then an ordered apply or cleanup.

Apply order: service account (+ roles) -> pool -> provider -> trust binding.
Cleanup order: provider -> pool -> role grants -> service account.

Planning reads the IAM policy of an existing service account so a missing
trust binding shows up as a difference before anything is written.

Nothing is written when any report is critical. A backend error stops the
pipeline; the remaining steps are reported as ABORTED. No retries here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, List, Optional, Tuple

from .advisor import ResolutionAdvisor
from .analyzer import ConflictAnalyzer
from .backend import BackendError, IdentityBackend, LiveStateReader
from .conditions import CompiledPolicy, ConditionCompiler
from .models import (
    AggregateConflictResult,
    ConflictReport,
    DesiredState,
    LiveResource,
    Severity,
    Strategy,
)

CREATED = "CREATED"
UPDATED = "UPDATED"
UNCHANGED = "UNCHANGED"
PLANNED = "PLANNED"
DELETED = "DELETED"
ABSENT = "ABSENT"
BLOCKED = "BLOCKED"
ERROR = "ERROR"
ABORTED = "ABORTED"


@dataclass(frozen=True)
class StepResult:
    step: str
    resource_id: str
    status: str
    reason: str = ""
    error: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {
            "step": self.step,
            "resource": self.resource_id,
            "status": self.status,
            "reason": self.reason,
            "error": self.error,
        }


@dataclass(frozen=True)
class ApplyOutcome:
    plan: Optional[AggregateConflictResult]
    results: Tuple[StepResult, ...] = ()
    counts: Dict[str, int] = field(default_factory=dict)

    @property
    def blocked(self) -> bool:
        return self.counts.get(BLOCKED, 0) > 0

    @property
    def failed(self) -> bool:
        return self.counts.get(ERROR, 0) > 0


Step = Tuple[str, str, Callable[[], Tuple[str, str]]]


class Reconciler:
    def __init__(
        self,
        backend: IdentityBackend,
        *,
        dry_run: bool = False,
        compiler: Optional[ConditionCompiler] = None,
        logger: Optional[logging.LoggerAdapter] = None,
    ) -> None:
        self.backend = backend
        self.dry_run = dry_run
        self.log = logger or logging.getLogger("wifsync.reconciler")
        self.compiler = compiler or ConditionCompiler(logger=self.log)
        self.reader = LiveStateReader(backend, logger=self.log)
        self.analyzer = ConflictAnalyzer(self.compiler, logger=self.log)
        self.advisor = ResolutionAdvisor(logger=self.log)

    # ----- Analysis -----

    def plan(self, state: DesiredState) -> AggregateConflictResult:
        state.validate()
        reports: List[ConflictReport] = []
        for desired in state.resources:
            live = self.reader.read(desired)
            trust_member = ""
            if desired is state.service_identity and live.exists:
                members = self.reader.trust_members(state.service_account_email, state.binding_role)
                live = replace(live, trust_members=members)
                trust_member = state.binding_member
            report = self.analyzer.analyze(desired, live, trust_member=trust_member)
            reports.append(self.advisor.advise(report, desired))
        return self.advisor.aggregate(reports)

    # ----- Apply -----

    def apply(self, state: DesiredState) -> ApplyOutcome:
        plan = self.plan(state)
        results: List[StepResult] = []
        counts: Dict[str, int] = {}

        if not plan.can_proceed:
            self.log.error("Apply blocked: %s", plan.recommended_action)
            for r in plan.reports:
                if r.severity == Severity.CRITICAL:
                    self._append(results, counts, StepResult(r.kind.value, r.resource_id, BLOCKED,
                                                             reason="critical conflict"))
            return ApplyOutcome(plan, tuple(results), counts)

        compiled = self.compiler.compile(state.provider.policy)
        sa, pool, provider = plan.reports

        steps: List[Step] = [
            ("service_account", state.service_identity.account_id, lambda: self._service_account(state, sa)),
            ("roles", state.service_account_email, lambda: self._roles(state, sa)),
            ("pool", state.pool.pool_id, lambda: self._pool(state, pool)),
            ("provider", state.provider.provider_id, lambda: self._provider(state, provider, compiled)),
            ("binding", state.binding_member, lambda: self._binding(state, sa, compiled)),
        ]
        self._run(steps, results, counts)
        self.log.info("Apply summary: %s", summarize_counts(counts))
        return ApplyOutcome(plan, tuple(results), counts)

    def _service_account(self, state: DesiredState, report: ConflictReport) -> Tuple[str, str]:
        desired = state.service_identity
        if not report.exists:
            if self.dry_run:
                return PLANNED, "create"
            self.backend.create_service_identity(desired)
            return CREATED, ""
        if report.implied_action != Strategy.UPDATE.value:
            return UNCHANGED, "reuse existing"
        display = report.difference("display_name")
        description = report.difference("description")
        if display is None and description is None:
            return UNCHANGED, "metadata up to date"
        if self.dry_run:
            return PLANNED, "update metadata"
        self.backend.update_service_identity(
            desired.account_id,
            desired.display_name if display else "",
            desired.description if description else "",
        )
        return UPDATED, "metadata"

    def _roles(self, state: DesiredState, report: ConflictReport) -> Tuple[str, str]:
        if report.exists:
            if report.implied_action != Strategy.UPDATE.value:
                return UNCHANGED, "reuse existing"
            diff = report.difference("missing_roles")
            roles = tuple(diff.desired_value) if diff else ()
        else:
            roles = state.service_identity.roles
        if not roles:
            return UNCHANGED, "roles up to date"
        if self.dry_run:
            return PLANNED, "grant " + ", ".join(roles)
        granted = self.backend.grant_roles(f"serviceAccount:{state.service_account_email}", roles)
        if not granted:
            return UNCHANGED, "roles up to date"
        return UPDATED, "granted " + ", ".join(granted)

    def _pool(self, state: DesiredState, report: ConflictReport) -> Tuple[str, str]:
        if report.exists:
            return UNCHANGED, "reuse existing"
        if self.dry_run:
            return PLANNED, "create"
        self.backend.create_pool(state.pool)
        return CREATED, ""

    def _provider(self, state: DesiredState, report: ConflictReport, compiled: CompiledPolicy) -> Tuple[str, str]:
        if report.exists:
            return UNCHANGED, "reuse existing"
        if self.dry_run:
            return PLANNED, "create"
        self.backend.create_provider(state.provider, compiled.attribute_mapping, compiled.expression)
        return CREATED, ""

    def _binding(self, state: DesiredState, report: ConflictReport, compiled: CompiledPolicy) -> Tuple[str, str]:
        if report.exists and report.difference("missing_trust_binding") is None:
            return UNCHANGED, state.binding_role
        if self.dry_run:
            return PLANNED, state.binding_role
        res = self.backend.create_trust_binding(
            state.service_account_email, state.binding_member, state.binding_role, compiled.expression
        )
        if res.get("changed", True):
            return CREATED, state.binding_role
        return UNCHANGED, state.binding_role

    # ----- Cleanup -----

    def cleanup(self, state: DesiredState) -> ApplyOutcome:
        state.validate()
        results: List[StepResult] = []
        counts: Dict[str, int] = {}
        sa_live = self.reader.read(state.service_identity)
        pool_live = self.reader.read(state.pool)
        provider_live = self.reader.read(state.provider)

        def delete(live: LiveResource, action: Callable[[], None]) -> Callable[[], Tuple[str, str]]:
            def run() -> Tuple[str, str]:
                if not live.exists:
                    return ABSENT, ""
                if self.dry_run:
                    return PLANNED, "delete"
                action()
                return DELETED, ""
            return run

        def revoke() -> Tuple[str, str]:
            if not sa_live.exists:
                return ABSENT, ""
            roles = [r for r in state.service_identity.roles if r in sa_live.roles]
            if not roles:
                return UNCHANGED, "no managed roles granted"
            if self.dry_run:
                return PLANNED, "revoke " + ", ".join(roles)
            revoked = self.backend.revoke_roles(f"serviceAccount:{state.service_account_email}", roles)
            return UPDATED, "revoked " + ", ".join(revoked)

        pool_id = state.pool.pool_id
        provider_id = state.provider.provider_id
        steps: List[Step] = [
            ("provider", provider_id,
             delete(provider_live, lambda: self.backend.delete_provider(pool_id, provider_id))),
            ("pool", pool_id, delete(pool_live, lambda: self.backend.delete_pool(pool_id))),
            ("roles", state.service_account_email, revoke),
            ("service_account", state.service_identity.account_id,
             delete(sa_live, lambda: self.backend.delete_service_identity(state.service_identity.account_id))),
        ]
        self._run(steps, results, counts)
        self.log.info("Cleanup summary: %s", summarize_counts(counts))
        return ApplyOutcome(None, tuple(results), counts)

    # ----- Helpers -----

    def _run(self, steps: List[Step], results: List[StepResult], counts: Dict[str, int]) -> None:
        failed = False
        for name, resource_id, action in steps:
            if failed:
                self._append(results, counts, StepResult(name, resource_id, ABORTED))
                continue
            try:
                status, reason = action()
            except BackendError as e:
                self.log.error("Step %s (%s) failed: %s", name, resource_id, e)
                self._append(results, counts, StepResult(name, resource_id, ERROR, error=str(e)))
                failed = True
                continue
            self.log.info("%s %s: %s %s", name, resource_id, status, reason)
            self._append(results, counts, StepResult(name, resource_id, status, reason=reason))

    @staticmethod
    def _append(results: List[StepResult], counts: Dict[str, int], res: StepResult) -> None:
        results.append(res)
        counts[res.status] = counts.get(res.status, 0) + 1


def summarize_counts(counts: Dict[str, int]) -> str:
    keys = [CREATED, UPDATED, UNCHANGED, PLANNED, DELETED, ABSENT, BLOCKED, ERROR, ABORTED]
    return " | ".join(f"{k}={counts[k]}" for k in keys if counts.get(k)) or "nothing to do"


def analyze_and_advise(
    desired_state: DesiredState,
    backend: IdentityBackend,
    *,
    logger: Optional[logging.LoggerAdapter] = None,
) -> AggregateConflictResult:
    return Reconciler(backend, logger=logger).plan(desired_state)
