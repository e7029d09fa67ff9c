"""
Resolution advisor.

- `advise(report, desired)` attaches ranked suggestions (skip, update, rename, fail)
- `aggregate(reports)` folds a batch into one go / no-go verdict

Suggestions come from a single generator; the only per-kind input is the
set of fields that can be fixed in place.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Dict, FrozenSet, Iterable, List, Optional, Tuple

from .models import (
    AggregateConflictResult,
    ConflictReport,
    DesiredResource,
    ResolutionSuggestion,
    ResourceKind,
    Severity,
    Strategy,
)

_UPDATABLE: Dict[ResourceKind, FrozenSet[str]] = {
    ResourceKind.SERVICE_ACCOUNT: frozenset(
        {"missing_roles", "missing_trust_binding", "display_name", "description"}
    ),
    ResourceKind.WORKLOAD_IDENTITY_POOL: frozenset(),
    ResourceKind.WORKLOAD_IDENTITY_PROVIDER: frozenset(),
}
if set(_UPDATABLE) != set(ResourceKind):
    raise RuntimeError("Updatable-field table must cover every resource kind")

_LABELS = {
    ResourceKind.SERVICE_ACCOUNT: "service account",
    ResourceKind.WORKLOAD_IDENTITY_POOL: "workload identity pool",
    ResourceKind.WORKLOAD_IDENTITY_PROVIDER: "identity provider",
}

# kind -> (config key, CLI flag, max id length)
_RENAME_TARGETS = {
    ResourceKind.SERVICE_ACCOUNT: ("service_account.name", "--service-account", 30),
    ResourceKind.WORKLOAD_IDENTITY_POOL: ("workload_identity.pool_id", "--pool-id", 32),
    ResourceKind.WORKLOAD_IDENTITY_PROVIDER: ("workload_identity.provider_id", "--provider-id", 32),
}

ACTION_NONE = "Proceed with resource creation"
ACTION_CRITICAL = "Review critical conflicts before proceeding"
ACTION_HIGH = "Review high-priority conflicts and consider alternative names"
ACTION_MEDIUM = "Review configuration differences and proceed with caution"
ACTION_LOW = "Minor conflicts detected, safe to proceed"


def is_updatable(kind: ResourceKind, field_name: str) -> bool:
    return field_name in _UPDATABLE[kind]


def _rename_hints(kind: ResourceKind, resource_id: str) -> Tuple[str, str]:
    key, flag, max_len = _RENAME_TARGETS[kind]
    candidate = resource_id[: max_len - 4].rstrip("-") + "-new"
    return (f"Use {flag} {candidate} or similar", f"or set {key} in the configuration file")


def generate_suggestions(report: ConflictReport) -> List[ResolutionSuggestion]:
    label = _LABELS[report.kind]
    severity = report.severity
    updatable = [d for d in report.differences if is_updatable(report.kind, d.field)]
    update_recommended = severity <= Severity.WARNING and any(
        d.severity >= Severity.WARNING for d in updatable
    )

    out: List[ResolutionSuggestion] = [
        ResolutionSuggestion(
            strategy=Strategy.SKIP,
            title=f"Use existing {label}",
            description=f"Keep {report.resource_id} as it is and continue with the remaining resources.",
            pros=("No changes to existing resources", "Fastest option"),
            cons=("Configuration differences remain",) if report.differences else (),
            automated=True,
            recommended=severity <= Severity.WARNING and not update_recommended,
        )
    ]
    if updatable:
        fields = ", ".join(d.field for d in updatable)
        out.append(
            ResolutionSuggestion(
                strategy=Strategy.UPDATE,
                title=f"Update existing {label}",
                description=f"Bring {report.resource_id} in line with the configuration ({fields}).",
                pros=("Keeps the existing resource id", "Applies the configured settings"),
                cons=("Modifies a resource that may be shared",),
                hints=("run `wifsync apply` to update in place",),
                automated=True,
                recommended=update_recommended,
            )
        )
    out.append(
        ResolutionSuggestion(
            strategy=Strategy.RENAME,
            title=f"Create {label} with a different id",
            description=f"Leave {report.resource_id} untouched and provision a new {label}.",
            pros=("No impact on existing resources", "Clean separation"),
            cons=("Leaves the old resource behind", "Requires a configuration change"),
            hints=_rename_hints(report.kind, report.resource_id),
            automated=False,
            recommended=severity == Severity.CRITICAL,
        )
    )
    if severity == Severity.CRITICAL:
        out.append(
            ResolutionSuggestion(
                strategy=Strategy.FAIL,
                title="Stop and investigate",
                description=f"Do not touch {report.resource_id} until the critical differences are understood.",
                pros=("Nothing is changed",),
                cons=("Blocks provisioning",),
                automated=True,
                recommended=False,
            )
        )
    return out


def _bucket(report: ConflictReport) -> str:
    severity = report.severity
    if severity == Severity.CRITICAL:
        return "critical"
    if severity == Severity.WARNING:
        rec = report.recommended
        if rec is not None and rec.strategy is Strategy.UPDATE:
            return "medium"
        return "high"
    return "low"


class ResolutionAdvisor:
    def __init__(self, *, logger: Optional[logging.LoggerAdapter] = None) -> None:
        self.log = logger or logging.getLogger("wifsync.advisor")

    def advise(self, report: ConflictReport, desired: Optional[DesiredResource] = None) -> ConflictReport:
        if desired is not None and (desired.kind is not report.kind or desired.resource_id != report.resource_id):
            raise ValueError(
                f"report for {report.kind.value} {report.resource_id} does not match "
                f"{desired.kind.value} {desired.resource_id}"
            )
        if not report.exists:
            return report
        suggestions = tuple(generate_suggestions(report))
        recommended = next(s for s in suggestions if s.recommended)
        self.log.debug(
            "%s %s: recommend %s", report.kind.value, report.resource_id, recommended.strategy.value
        )
        return replace(report, suggestions=suggestions, implied_action=recommended.strategy.value)

    def aggregate(self, reports: Iterable[ConflictReport]) -> AggregateConflictResult:
        reports = tuple(reports)
        counts = {"critical": 0, "high": 0, "medium": 0, "low": 0}
        for r in reports:
            if r.exists:
                counts[_bucket(r)] += 1
        total = sum(counts.values())

        if counts["critical"]:
            action = ACTION_CRITICAL
        elif counts["high"]:
            action = ACTION_HIGH
        elif counts["medium"]:
            action = ACTION_MEDIUM
        elif counts["low"]:
            action = ACTION_LOW
        else:
            action = ACTION_NONE

        if total:
            summary = (
                f"Found {total} resource conflict(s): {counts['critical']} critical, "
                f"{counts['high']} high, {counts['medium']} medium, {counts['low']} low"
            )
        else:
            summary = "No resource conflicts detected"

        result = AggregateConflictResult(
            reports=reports,
            total_conflicts=total,
            critical_count=counts["critical"],
            high_count=counts["high"],
            medium_count=counts["medium"],
            low_count=counts["low"],
            recommended_action=action,
            summary=summary,
        )
        level = logging.WARNING if not result.can_proceed else logging.INFO
        self.log.log(level, "%s (can_proceed=%s)", summary, result.can_proceed)
        return result
