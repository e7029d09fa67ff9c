"""
Desired-state and live-state model for wifsync.

- Closed `ResourceKind` enumeration (service account, pool, provider)
- Frozen desired-resource variants and the `DesiredState` bundle
- `LiveResource` snapshots as returned by a backend
- Ordered `Severity`, `FieldDifference`, `ConflictReport`, suggestions
- `TrustPolicy` + `ClaimsMapping` and the injected `WifDefaults`
- Input validators raising `ValidationError` before any backend call
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field, fields, replace
from datetime import datetime
from enum import Enum, IntEnum
from typing import Any, ClassVar, Dict, List, Mapping, Optional, Tuple, Union


class ValidationError(Exception):
    """Malformed desired input. `hints` carry operator-facing suggestions."""

    def __init__(self, message: str, *hints: str) -> None:
        super().__init__(message)
        self.message = message
        self.hints: Tuple[str, ...] = tuple(hints)

    def __str__(self) -> str:
        if not self.hints:
            return self.message
        return self.message + " (" + "; ".join(self.hints) + ")"


# ---------- Enumerations ----------

class ResourceKind(str, Enum):
    SERVICE_ACCOUNT = "service_account"
    WORKLOAD_IDENTITY_POOL = "workload_identity_pool"
    WORKLOAD_IDENTITY_PROVIDER = "workload_identity_provider"


class Severity(IntEnum):
    INFO = 0
    WARNING = 1
    CRITICAL = 2

    @property
    def label(self) -> str:
        return self.name.lower()


class Strategy(str, Enum):
    SKIP = "skip"
    UPDATE = "update"
    RENAME = "rename"
    FAIL = "fail"


IMPLIED_CREATE = "create"


# ---------- Validators ----------

_OWNER_RE = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9-]{0,37}[A-Za-z0-9])?$")
_REPO_NAME_RE = re.compile(r"^[A-Za-z0-9._-]{1,100}$")
_RESERVED_REPO_NAMES = {".", "..", ".git", ".github"}
_POOL_ID_RE = re.compile(r"^[a-z][a-z0-9-]{2,30}[a-z0-9]$")
_ACCOUNT_ID_RE = re.compile(r"^[a-z][a-z0-9-]{4,28}[a-z0-9]$")
_REF_PATTERN_RE = re.compile(r"^[A-Za-z0-9._/*+-]+$")
_AUDIENCE_RE = re.compile(r"^[^\s,'\"\\]+$")
_CLAIM_RE = re.compile(r"^[^,'\"\\]+$")


def split_repository(repository: str) -> Tuple[str, str]:
    """Validate `owner/name` and return the two halves."""
    if not repository or not repository.strip():
        raise ValidationError("repository is required", "use the form owner/name")
    parts = repository.split("/")
    if len(parts) != 2:
        raise ValidationError(
            f"repository must contain exactly one '/': {repository!r}", "use the form owner/name"
        )
    owner, name = parts
    if not _OWNER_RE.match(owner):
        raise ValidationError(
            f"invalid repository owner {owner!r}",
            "owners use letters, digits and inner hyphens, at most 39 characters",
        )
    if name in _RESERVED_REPO_NAMES or not _REPO_NAME_RE.match(name):
        raise ValidationError(
            f"invalid repository name {name!r}",
            "names use letters, digits, '.', '_' and '-'",
        )
    return owner, name


def validate_pool_id(value: str, what: str = "pool id") -> str:
    if not _POOL_ID_RE.match(value or ""):
        raise ValidationError(
            f"invalid {what} {value!r}",
            "4-32 characters, lowercase letters, digits and hyphens, starting with a letter",
        )
    if value.startswith("gcp-"):
        raise ValidationError(f"invalid {what} {value!r}", "the 'gcp-' prefix is reserved")
    return value


def validate_account_id(value: str) -> str:
    if not _ACCOUNT_ID_RE.match(value or ""):
        raise ValidationError(
            f"invalid service account id {value!r}",
            "6-30 characters, lowercase letters, digits and hyphens, starting with a letter",
        )
    return value


def validate_role(role: str) -> str:
    if not role or not role.startswith(("roles/", "projects/", "organizations/")):
        raise ValidationError(f"invalid role {role!r}", "roles look like roles/run.admin")
    if any(ch.isspace() for ch in role):
        raise ValidationError(f"invalid role {role!r}", "roles cannot contain whitespace")
    return role


def validate_ref_pattern(pattern: str, what: str) -> str:
    """Branch or tag name, optionally with `*` / `**` wildcards."""
    if not pattern or not _REF_PATTERN_RE.match(pattern):
        raise ValidationError(
            f"invalid {what} pattern {pattern!r}",
            "letters, digits, '.', '_', '-', '+', '/' and '*' wildcards only",
        )
    if pattern.startswith("refs/"):
        raise ValidationError(
            f"invalid {what} pattern {pattern!r}", "give the short name, the refs/ prefix is added"
        )
    if pattern.startswith("/") or pattern.endswith("/") or "//" in pattern or ".." in pattern:
        raise ValidationError(f"invalid {what} pattern {pattern!r}")
    return pattern


def validate_issuer(uri: str) -> str:
    if not uri or not uri.startswith("https://") or not _AUDIENCE_RE.match(uri):
        raise ValidationError(f"invalid issuer URI {uri!r}", "the issuer must be an https:// URL")
    return uri


def validate_audience(audience: str) -> str:
    if not audience or not _AUDIENCE_RE.match(audience):
        raise ValidationError(f"invalid audience {audience!r}")
    return audience


# ---------- Trust policy ----------

@dataclass(frozen=True)
class ClaimsMapping:
    """Token claim expressions copied into provider attributes."""
    subject: str = "assertion.sub"
    actor: str = "assertion.actor"
    repository: str = "assertion.repository"
    repository_owner: str = "assertion.repository_owner"
    ref: str = "assertion.ref"
    ref_type: str = "assertion.ref_type"
    workflow_ref: str = "assertion.workflow_ref"
    job_workflow_ref: str = "assertion.job_workflow_ref"
    runner_environment: str = "assertion.runner_environment"
    base_ref: str = "assertion.base_ref"
    head_ref: str = "assertion.head_ref"
    pull_request: str = "assertion.pull_request"
    environment: str = "assertion.environment"

    OPTIONAL: ClassVar[Tuple[str, ...]] = ("base_ref", "head_ref", "pull_request", "environment")

    def merged(self, overrides: Optional[Mapping[str, Any]]) -> "ClaimsMapping":
        if not overrides:
            return self
        known = {f.name for f in fields(self)}
        unknown = sorted(set(overrides) - known)
        if unknown:
            raise ValidationError("unknown claim(s): " + ", ".join(unknown))
        return replace(self, **{k: "" if v is None else str(v) for k, v in overrides.items()})

    def validate(self) -> None:
        for f in fields(self):
            value = getattr(self, f.name)
            if not value:
                if f.name in self.OPTIONAL:
                    continue
                raise ValidationError(f"claim {f.name!r} cannot be empty")
            if not _CLAIM_RE.match(value):
                raise ValidationError(f"claim {f.name!r} has an unsupported expression: {value!r}")


@dataclass(frozen=True)
class WifDefaults:
    """Constants injected into the builders, compiler and analyzer."""
    roles: Tuple[str, ...] = (
        "roles/run.admin",
        "roles/storage.admin",
        "roles/artifactregistry.admin",
    )
    issuer_uri: str = "https://token.actions.githubusercontent.com"
    audiences: Tuple[str, ...] = ("sts.googleapis.com",)
    claims: ClaimsMapping = field(default_factory=ClaimsMapping)
    require_actor: bool = True
    block_forked_repos: bool = True
    validate_token_path: bool = True
    binding_role: str = "roles/iam.workloadIdentityUser"

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "WifDefaults":
        """Overlay a config `defaults:` section on the built-in constants."""
        base = cls()
        if not data:
            return base
        changes: Dict[str, Any] = {}
        for key, value in data.items():
            if value is None or value == "" or value == []:
                continue
            if key in ("roles", "audiences"):
                changes[key] = tuple(value)
            elif key == "claims":
                changes[key] = base.claims.merged(value)
            elif key in ("issuer_uri", "binding_role", "require_actor", "block_forked_repos", "validate_token_path"):
                changes[key] = value
            else:
                raise ValidationError(f"unknown defaults key {key!r}")
        return replace(base, **changes)


DEFAULTS = WifDefaults()


@dataclass(frozen=True)
class TrustPolicy:
    """Declarative trust rules for one repository."""
    repository: str
    allowed_branches: Tuple[str, ...] = ()
    allowed_tags: Tuple[str, ...] = ()
    allow_pull_requests: bool = False
    require_actor: bool = True
    block_forked_repos: bool = True
    validate_token_path: bool = True
    trusted_repositories: Tuple[str, ...] = ()
    issuer_uri: str = DEFAULTS.issuer_uri
    allowed_audiences: Tuple[str, ...] = DEFAULTS.audiences
    claims: ClaimsMapping = field(default_factory=ClaimsMapping)

    @property
    def owner(self) -> str:
        return split_repository(self.repository)[0]

    def validate(self) -> None:
        split_repository(self.repository)
        for b in self.allowed_branches:
            validate_ref_pattern(b, "branch")
        for t in self.allowed_tags:
            validate_ref_pattern(t, "tag")
        for r in self.trusted_repositories:
            split_repository(r)
        if self.trusted_repositories and self.repository not in self.trusted_repositories:
            raise ValidationError(
                f"trusted repositories do not include {self.repository!r}",
                "the list restricts, never widens, trust; add the primary repository or clear the list",
            )
        validate_issuer(self.issuer_uri)
        if not self.allowed_audiences:
            raise ValidationError("at least one allowed audience is required")
        for a in self.allowed_audiences:
            validate_audience(a)
        self.claims.validate()


# ---------- Desired resources ----------

@dataclass(frozen=True)
class ServiceIdentity:
    account_id: str
    display_name: str = ""
    description: str = ""
    roles: Tuple[str, ...] = ()

    kind: ClassVar[ResourceKind] = ResourceKind.SERVICE_ACCOUNT

    @property
    def resource_id(self) -> str:
        return self.account_id

    def validate(self) -> None:
        validate_account_id(self.account_id)
        for r in self.roles:
            validate_role(r)


@dataclass(frozen=True)
class IdentityPool:
    pool_id: str
    display_name: str = ""
    description: str = ""

    kind: ClassVar[ResourceKind] = ResourceKind.WORKLOAD_IDENTITY_POOL

    @property
    def resource_id(self) -> str:
        return self.pool_id

    def validate(self) -> None:
        validate_pool_id(self.pool_id)
        if len(self.display_name) > 32:
            raise ValidationError(f"pool display name longer than 32 characters: {self.display_name!r}")


@dataclass(frozen=True)
class IdentityProvider:
    pool_id: str
    provider_id: str
    policy: TrustPolicy
    display_name: str = ""
    description: str = ""

    kind: ClassVar[ResourceKind] = ResourceKind.WORKLOAD_IDENTITY_PROVIDER

    @property
    def resource_id(self) -> str:
        return self.provider_id

    def validate(self) -> None:
        validate_pool_id(self.pool_id)
        validate_pool_id(self.provider_id, "provider id")
        if len(self.display_name) > 32:
            raise ValidationError(f"provider display name longer than 32 characters: {self.display_name!r}")
        self.policy.validate()


DesiredResource = Union[ServiceIdentity, IdentityPool, IdentityProvider]


@dataclass(frozen=True)
class DesiredState:
    """Everything one reconciliation pass needs to know about the target."""
    project_id: str
    project_number: str
    service_identity: ServiceIdentity
    pool: IdentityPool
    provider: IdentityProvider
    binding_role: str = DEFAULTS.binding_role

    @property
    def resources(self) -> Tuple[DesiredResource, ...]:
        return (self.service_identity, self.pool, self.provider)

    @property
    def repository(self) -> str:
        return self.provider.policy.repository

    @property
    def service_account_email(self) -> str:
        return f"{self.service_identity.account_id}@{self.project_id}.iam.gserviceaccount.com"

    @property
    def pool_name(self) -> str:
        number = self.project_number or self.project_id
        return f"projects/{number}/locations/global/workloadIdentityPools/{self.pool.pool_id}"

    @property
    def provider_name(self) -> str:
        return f"{self.pool_name}/providers/{self.provider.provider_id}"

    @property
    def binding_member(self) -> str:
        return f"principalSet://iam.googleapis.com/{self.pool_name}/attribute.repository/{self.repository}"

    def validate(self) -> None:
        if not self.project_id:
            raise ValidationError("project id is required")
        if self.project_number and not str(self.project_number).isdigit():
            raise ValidationError(f"project number must be numeric: {self.project_number!r}")
        for res in self.resources:
            res.validate()
        if self.provider.pool_id != self.pool.pool_id:
            raise ValidationError(
                f"provider belongs to pool {self.provider.pool_id!r}, expected {self.pool.pool_id!r}"
            )
        validate_role(self.binding_role)


# ---------- Live state ----------

@dataclass(frozen=True)
class LiveResource:
    """Snapshot of one remote resource, fetched fresh per pass."""
    kind: ResourceKind
    resource_id: str
    exists: bool
    full_name: str = ""
    display_name: str = ""
    description: str = ""
    state: str = ""
    disabled: bool = False
    roles: Tuple[str, ...] = ()
    trust_members: Tuple[str, ...] = ()
    attribute_mapping: Dict[str, str] = field(default_factory=dict)
    attribute_condition: str = ""
    issuer_uri: str = ""
    allowed_audiences: Tuple[str, ...] = ()
    created_at: Optional[datetime] = None

    @classmethod
    def absent(cls, kind: ResourceKind, resource_id: str) -> "LiveResource":
        return cls(kind=kind, resource_id=resource_id, exists=False)


# ---------- Conflict analysis results ----------

@dataclass(frozen=True)
class FieldDifference:
    field: str
    live_value: Any
    desired_value: Any
    severity: Severity
    description: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field": self.field,
            "live": _plain(self.live_value),
            "desired": _plain(self.desired_value),
            "severity": self.severity.label,
            "description": self.description,
        }


@dataclass(frozen=True)
class ResolutionSuggestion:
    strategy: Strategy
    title: str
    description: str
    pros: Tuple[str, ...] = ()
    cons: Tuple[str, ...] = ()
    hints: Tuple[str, ...] = ()
    automated: bool = False
    recommended: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "strategy": self.strategy.value,
            "title": self.title,
            "description": self.description,
            "pros": list(self.pros),
            "cons": list(self.cons),
            "hints": list(self.hints),
            "automated": self.automated,
            "recommended": self.recommended,
        }


@dataclass(frozen=True)
class ConflictReport:
    kind: ResourceKind
    resource_id: str
    exists: bool
    differences: Tuple[FieldDifference, ...] = ()
    suggestions: Tuple[ResolutionSuggestion, ...] = ()
    implied_action: Optional[str] = None
    live_details: Dict[str, Any] = field(default_factory=dict)
    desired_details: Dict[str, Any] = field(default_factory=dict)

    @property
    def severity(self) -> Severity:
        if not self.differences:
            return Severity.INFO
        return max(d.severity for d in self.differences)

    @property
    def can_auto_resolve(self) -> bool:
        return self.severity <= Severity.WARNING

    @property
    def recommended(self) -> Optional[ResolutionSuggestion]:
        for s in self.suggestions:
            if s.recommended:
                return s
        return None

    def difference(self, name: str) -> Optional[FieldDifference]:
        for d in self.differences:
            if d.field == name:
                return d
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "resource_id": self.resource_id,
            "exists": self.exists,
            "severity": self.severity.label,
            "can_auto_resolve": self.can_auto_resolve,
            "implied_action": self.implied_action,
            "differences": [d.to_dict() for d in self.differences],
            "suggestions": [s.to_dict() for s in self.suggestions],
            "live": {k: _plain(v) for k, v in self.live_details.items()},
            "desired": {k: _plain(v) for k, v in self.desired_details.items()},
        }


@dataclass(frozen=True)
class AggregateConflictResult:
    reports: Tuple[ConflictReport, ...]
    total_conflicts: int
    critical_count: int
    high_count: int
    medium_count: int
    low_count: int
    recommended_action: str
    summary: str

    @property
    def has_conflicts(self) -> bool:
        return self.total_conflicts > 0

    @property
    def can_proceed(self) -> bool:
        return self.critical_count == 0

    def report_for(self, kind: ResourceKind) -> Optional[ConflictReport]:
        for r in self.reports:
            if r.kind is kind:
                return r
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "has_conflicts": self.has_conflicts,
            "can_proceed": self.can_proceed,
            "total_conflicts": self.total_conflicts,
            "critical_count": self.critical_count,
            "high_count": self.high_count,
            "medium_count": self.medium_count,
            "low_count": self.low_count,
            "recommended_action": self.recommended_action,
            "summary": self.summary,
            "reports": [r.to_dict() for r in self.reports],
        }


def _plain(value: Any) -> Any:
    if isinstance(value, tuple):
        return list(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


def as_tuple(values: Any) -> Tuple[str, ...]:
    """Normalize a YAML scalar / list / comma string into a tuple of strings."""
    if values is None or values == "":
        return ()
    if isinstance(values, str):
        return tuple(v.strip() for v in values.split(",") if v.strip())
    out: List[str] = []
    for v in values:
        s = str(v).strip()
        if s:
            out.append(s)
    return tuple(out)
