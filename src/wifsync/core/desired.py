"""
Build a validated `DesiredState` from configuration mappings.

Missing identifiers and display names are derived from the repository:
  - service account:  github-<owner>-<repo>          (6-30 chars)
  - pool:             gh-<owner>-<repo>-pool         (4-32 chars)
  - provider:         github-provider
"""

from __future__ import annotations

import re
from typing import Any, Mapping, Optional

from .models import (
    DEFAULTS,
    DesiredState,
    IdentityPool,
    IdentityProvider,
    ServiceIdentity,
    TrustPolicy,
    WifDefaults,
    as_tuple,
    split_repository,
)

DEFAULT_PROVIDER_ID = "github-provider"


def _slug(text: str) -> str:
    s = re.sub(r"[^a-z0-9-]+", "-", text.lower())
    return re.sub(r"-{2,}", "-", s).strip("-")


def _fit_id(prefix: str, owner: str, repo: str, suffix: str, max_len: int) -> str:
    """`prefix-owner-repo-suffix`, shortening owner/repo until it fits."""
    owner, repo = _slug(owner), _slug(repo)

    def join(o: str, r: str) -> str:
        return "-".join(p for p in (prefix, o, r, suffix) if p)

    candidate = join(owner, repo)
    keep = max(len(owner), len(repo))
    while len(candidate) > max_len and keep > 1:
        keep -= 1
        candidate = join(owner[:keep].strip("-"), repo[:keep].strip("-"))
    return candidate[:max_len].strip("-")


def _short(text: str, limit: int = 32) -> str:
    return text if len(text) <= limit else text[:limit].rstrip()


def default_account_id(repository: str) -> str:
    owner, name = split_repository(repository)
    return _fit_id("github", owner, name, "", 30)


def default_pool_id(repository: str) -> str:
    owner, name = split_repository(repository)
    return _fit_id("gh", owner, name, "pool", 32)


def build_trust_policy(section: Mapping[str, Any], defaults: WifDefaults = DEFAULTS) -> TrustPolicy:
    def flag(key: str, default: bool) -> bool:
        value = section.get(key)
        return default if value is None else bool(value)

    return TrustPolicy(
        repository=str(section.get("repository") or ""),
        allowed_branches=as_tuple(section.get("branches")),
        allowed_tags=as_tuple(section.get("tags")),
        allow_pull_requests=flag("allow_pull_requests", False),
        require_actor=flag("require_actor", defaults.require_actor),
        block_forked_repos=flag("block_forked_repos", defaults.block_forked_repos),
        validate_token_path=flag("validate_token_path", defaults.validate_token_path),
        trusted_repositories=as_tuple(section.get("trusted_repositories")),
        issuer_uri=str(section.get("issuer_uri") or defaults.issuer_uri),
        allowed_audiences=as_tuple(section.get("audiences")) or defaults.audiences,
        claims=defaults.claims.merged(section.get("claims")),
    )


def build_desired_state(
    *,
    project_id: str,
    project_number: str = "",
    service_account: Optional[Mapping[str, Any]] = None,
    workload_identity: Optional[Mapping[str, Any]] = None,
    trust_policy: Optional[Mapping[str, Any]] = None,
    defaults: WifDefaults = DEFAULTS,
) -> DesiredState:
    sa_cfg = service_account or {}
    wi_cfg = workload_identity or {}
    policy = build_trust_policy(trust_policy or {}, defaults)
    # validates the repository before any name is derived from it
    split_repository(policy.repository)
    repo = policy.repository

    pool_id = str(wi_cfg.get("pool_id") or default_pool_id(repo))
    state = DesiredState(
        project_id=str(project_id or ""),
        project_number=str(project_number or ""),
        service_identity=ServiceIdentity(
            account_id=str(sa_cfg.get("name") or default_account_id(repo)),
            display_name=str(sa_cfg.get("display_name") or f"GitHub Actions for {repo}"),
            description=str(
                sa_cfg.get("description")
                or f"Service account used by GitHub Actions in {repo} via Workload Identity Federation"
            ),
            roles=as_tuple(sa_cfg.get("roles")) or defaults.roles,
        ),
        pool=IdentityPool(
            pool_id=pool_id,
            display_name=str(wi_cfg.get("pool_display_name") or _short(f"GitHub {repo}")),
            description=str(wi_cfg.get("pool_description") or f"Workload identity pool for {repo}"),
        ),
        provider=IdentityProvider(
            pool_id=pool_id,
            provider_id=str(wi_cfg.get("provider_id") or DEFAULT_PROVIDER_ID),
            policy=policy,
            display_name=str(wi_cfg.get("provider_display_name") or "GitHub Actions OIDC"),
            description=str(wi_cfg.get("provider_description") or f"OIDC provider trusting {repo}"),
        ),
        binding_role=defaults.binding_role,
    )
    state.validate()
    return state
