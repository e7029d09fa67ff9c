"""
Conflict analyzer: compares one desired resource with its live snapshot.

Pure function of its inputs, no backend access. Per-kind rules live in
`_RULES`; every `ResourceKind` must have an entry (checked at import).
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

from .conditions import ConditionCompiler, extract_repositories, pinned_repository
from .models import (
    IMPLIED_CREATE,
    ConflictReport,
    DesiredResource,
    FieldDifference,
    IdentityPool,
    IdentityProvider,
    LiveResource,
    ResourceKind,
    ServiceIdentity,
    Severity,
)

Rule = Callable[[Any, LiveResource, ConditionCompiler], List[FieldDifference]]


def _text_diff(
    out: List[FieldDifference],
    name: str,
    live: str,
    desired: str,
    severity: Severity,
    description: str,
) -> None:
    # empty desired text means "not managed"
    if desired and live != desired:
        out.append(FieldDifference(name, live, desired, severity, description))


def _lifecycle_diff(out: List[FieldDifference], live: LiveResource, what: str) -> None:
    if not live.state:
        out.append(
            FieldDifference(
                "state", "", "ACTIVE", Severity.WARNING,
                f"{what} reported no lifecycle state; cannot confirm it is ACTIVE",
            )
        )
    elif live.state != "ACTIVE":
        out.append(
            FieldDifference(
                "state", live.state, "ACTIVE", Severity.CRITICAL,
                f"{what} is in state {live.state} and cannot be used",
            )
        )
    if live.disabled:
        out.append(
            FieldDifference("disabled", True, False, Severity.CRITICAL, f"{what} is disabled")
        )


def _trust_binding_diff(out: List[FieldDifference], live: LiveResource, member: str) -> None:
    if member not in live.trust_members:
        out.append(
            FieldDifference(
                "missing_trust_binding", live.trust_members, member, Severity.WARNING,
                f"{member} is not allowed to impersonate this service account",
            )
        )


# ----- Per-kind rules -----

def _service_account_rule(
    desired: ServiceIdentity, live: LiveResource, compiler: ConditionCompiler
) -> List[FieldDifference]:
    out: List[FieldDifference] = []
    _text_diff(out, "display_name", live.display_name, desired.display_name, Severity.INFO,
               "Display name differs")
    _text_diff(out, "description", live.description, desired.description, Severity.INFO,
               "Description differs")
    if live.disabled:
        out.append(
            FieldDifference("disabled", True, False, Severity.CRITICAL, "Service account is disabled")
        )

    live_roles = set(live.roles)
    missing = tuple(r for r in desired.roles if r not in live_roles)
    if missing:
        out.append(
            FieldDifference(
                "missing_roles", tuple(sorted(live_roles)), missing, Severity.WARNING,
                f"Missing {len(missing)} role grant(s): {', '.join(missing)}",
            )
        )
    desired_roles = set(desired.roles)
    extra = tuple(sorted(r for r in live_roles if r not in desired_roles))
    if extra:
        out.append(
            FieldDifference(
                "extra_roles", extra, desired.roles, Severity.INFO,
                f"Has {len(extra)} role grant(s) not in configuration (kept): {', '.join(extra)}",
            )
        )
    return out


def _pool_rule(
    desired: IdentityPool, live: LiveResource, compiler: ConditionCompiler
) -> List[FieldDifference]:
    out: List[FieldDifference] = []
    _text_diff(out, "display_name", live.display_name, desired.display_name, Severity.WARNING,
               "Display name differs and cannot be updated in place")
    _text_diff(out, "description", live.description, desired.description, Severity.WARNING,
               "Description differs and cannot be updated in place")
    _lifecycle_diff(out, live, "Workload identity pool")
    return out


def _provider_rule(
    desired: IdentityProvider, live: LiveResource, compiler: ConditionCompiler
) -> List[FieldDifference]:
    policy = desired.policy
    out: List[FieldDifference] = []
    _text_diff(out, "display_name", live.display_name, desired.display_name, Severity.WARNING,
               "Display name differs and cannot be updated in place")
    _text_diff(out, "description", live.description, desired.description, Severity.WARNING,
               "Description differs and cannot be updated in place")
    _lifecycle_diff(out, live, "Identity provider")

    if live.issuer_uri != policy.issuer_uri:
        out.append(
            FieldDifference(
                "issuer_uri", live.issuer_uri, policy.issuer_uri, Severity.CRITICAL,
                "Provider trusts a different token issuer",
            )
        )

    pinned = pinned_repository(live.attribute_condition)
    if pinned != policy.repository:
        found = pinned or ", ".join(extract_repositories(live.attribute_condition)) or "none"
        out.append(
            FieldDifference(
                "repository_condition", live.attribute_condition, policy.repository, Severity.CRITICAL,
                f"Trust condition does not start with assertion.repository=='{policy.repository}' "
                f"(found: {found})",
            )
        )
        return out

    missing_aud = tuple(a for a in policy.allowed_audiences if a not in live.allowed_audiences)
    if missing_aud:
        out.append(
            FieldDifference(
                "allowed_audiences", live.allowed_audiences, policy.allowed_audiences, Severity.WARNING,
                f"Provider does not accept audience(s): {', '.join(missing_aud)}",
            )
        )

    expected = compiler.compile(policy).expression
    if live.attribute_condition != expected:
        out.append(
            FieldDifference(
                "attribute_condition", live.attribute_condition, expected, Severity.INFO,
                "Trust condition differs from the configured policy",
            )
        )
    return out


_RULES: Dict[ResourceKind, Rule] = {
    ResourceKind.SERVICE_ACCOUNT: _service_account_rule,
    ResourceKind.WORKLOAD_IDENTITY_POOL: _pool_rule,
    ResourceKind.WORKLOAD_IDENTITY_PROVIDER: _provider_rule,
}

_missing_rules = [k.value for k in ResourceKind if k not in _RULES]
if _missing_rules:
    raise RuntimeError("No conflict rules registered for: " + ", ".join(_missing_rules))


def _desired_details(desired: DesiredResource) -> Dict[str, Any]:
    details: Dict[str, Any] = {"display_name": desired.display_name, "description": desired.description}
    if isinstance(desired, ServiceIdentity):
        details["roles"] = desired.roles
    elif isinstance(desired, IdentityProvider):
        details["repository"] = desired.policy.repository
        details["issuer_uri"] = desired.policy.issuer_uri
    return details


def _live_details(live: LiveResource) -> Dict[str, Any]:
    details: Dict[str, Any] = {
        "name": live.full_name,
        "display_name": live.display_name,
        "description": live.description,
    }
    if live.kind is ResourceKind.SERVICE_ACCOUNT:
        details["roles"] = live.roles
        if live.trust_members:
            details["trust_members"] = live.trust_members
    else:
        details["state"] = live.state
        details["disabled"] = live.disabled
    if live.kind is ResourceKind.WORKLOAD_IDENTITY_PROVIDER:
        details["issuer_uri"] = live.issuer_uri
        details["attribute_condition"] = live.attribute_condition
    if live.created_at is not None:
        details["created_at"] = live.created_at
    return details


class ConflictAnalyzer:
    def __init__(
        self,
        compiler: Optional[ConditionCompiler] = None,
        *,
        logger: Optional[logging.LoggerAdapter] = None,
    ) -> None:
        self.log = logger or logging.getLogger("wifsync.analyzer")
        self.compiler = compiler or ConditionCompiler(logger=self.log)

    def analyze(
        self, desired: DesiredResource, live: LiveResource, *, trust_member: str = ""
    ) -> ConflictReport:
        """
        Compare `desired` with `live`.

        `trust_member` is the pool principal expected on a service account's
        own IAM policy; the binding is only checked when it is given and
        `live.trust_members` was read.
        """
        if desired.kind is not live.kind:
            raise ValueError(f"cannot compare {desired.kind.value} with {live.kind.value}")

        if not live.exists:
            self.log.debug("%s %s does not exist", desired.kind.value, desired.resource_id)
            return ConflictReport(
                kind=desired.kind,
                resource_id=desired.resource_id,
                exists=False,
                implied_action=IMPLIED_CREATE,
                desired_details=_desired_details(desired),
            )

        differences = _RULES[desired.kind](desired, live, self.compiler)
        if trust_member and desired.kind is ResourceKind.SERVICE_ACCOUNT:
            _trust_binding_diff(differences, live, trust_member)
        report = ConflictReport(
            kind=desired.kind,
            resource_id=desired.resource_id,
            exists=True,
            differences=tuple(differences),
            live_details=_live_details(live),
            desired_details=_desired_details(desired),
        )
        self.log.info(
            "%s %s exists: %d difference(s), severity=%s",
            desired.kind.value, desired.resource_id, len(differences), report.severity.label,
        )
        for d in differences:
            self.log.debug("  %s [%s] %s", d.field, d.severity.label, d.description)
        return report
