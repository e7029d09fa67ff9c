"""
Security-condition compiler.

Turns a `TrustPolicy` into:
  - an ordered attribute mapping (provider attribute -> token claim expression)
  - one CEL trust expression evaluated by the provider at token exchange

Clause layout (joined with ` && `, each clause well-formed on its own):
  1. repository equality (always first)
  2. repository owner equality            (block forked repos)
  3. actor presence                       (require actor)
  4. workflow path prefix                 (validate token path)
  5. branch ref disjunction               (allowed branches)
  6. tag ref disjunction                  (allowed tags)
  7. pull request group                   (allow pull requests)
  8. trusted repository allow-list        (trusted repositories)

Branch, tag and pull request clauses are AND-ed like the rest, so enabling
more than one of them narrows admission rather than widening it.

Validation runs before synthesis: a malformed repository or ref never yields
a partial expression.
"""

from __future__ import annotations

import logging
import re
from collections import OrderedDict
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from .models import TrustPolicy, ValidationError, split_repository

AttributeMapping = Dict[str, str]

_REPO_TERM_RE = re.compile(r"assertion\.repository\s*==\s*'([^']*)'")


@dataclass(frozen=True)
class CompiledPolicy:
    attribute_mapping: AttributeMapping
    clauses: Tuple[str, ...]

    @property
    def expression(self) -> str:
        return " && ".join(self.clauses)

    @property
    def mapping_argument(self) -> str:
        return serialize_attribute_mapping(self.attribute_mapping)


class ConditionCompiler:
    def __init__(self, *, logger: Optional[logging.LoggerAdapter] = None) -> None:
        self.log = logger or logging.getLogger("wifsync.conditions")

    def compile(self, policy: TrustPolicy) -> CompiledPolicy:
        policy.validate()
        mapping = self.attribute_mapping(policy)
        clauses = self.clauses(policy)
        self.log.debug(
            "Compiled trust policy for %s: %d attribute(s), %d clause(s)",
            policy.repository, len(mapping), len(clauses),
        )
        return CompiledPolicy(attribute_mapping=mapping, clauses=tuple(clauses))

    # ----- Attribute mapping -----

    @staticmethod
    def attribute_mapping(policy: TrustPolicy) -> AttributeMapping:
        c = policy.claims
        mapping: AttributeMapping = OrderedDict()
        mapping["google.subject"] = c.subject
        mapping["attribute.actor"] = c.actor
        mapping["attribute.repository"] = c.repository
        mapping["attribute.repository_owner"] = c.repository_owner
        mapping["attribute.ref"] = c.ref
        mapping["attribute.ref_type"] = c.ref_type
        mapping["attribute.workflow_ref"] = c.workflow_ref
        mapping["attribute.job_workflow_ref"] = c.job_workflow_ref
        mapping["attribute.runner_environment"] = c.runner_environment
        for name in c.OPTIONAL:
            value = getattr(c, name)
            if value:
                mapping[f"attribute.{name}"] = value
        return mapping

    # ----- Trust expression -----

    def clauses(self, policy: TrustPolicy) -> List[str]:
        owner, _ = split_repository(policy.repository)
        out = [f"assertion.repository=={_quote(policy.repository)}"]

        if policy.block_forked_repos:
            out.append(f"assertion.repository_owner=={_quote(owner)}")
        if policy.require_actor:
            out.append("has(assertion.actor)")
        if policy.validate_token_path:
            out.append(f"assertion.job_workflow_ref.startsWith({_quote(policy.repository + '/')})")

        if policy.allowed_branches:
            out.append(_any_of(_ref_term(f"refs/heads/{b}") for b in policy.allowed_branches))
        if policy.allowed_tags:
            out.append(_any_of(_ref_term(f"refs/tags/{t}") for t in policy.allowed_tags))
        if policy.allow_pull_requests:
            parts = ["assertion.ref.startsWith('refs/pull/')", "has(assertion.pull_request)"]
            if policy.allowed_branches:
                parts.append(_any_of(_base_ref_term(b) for b in policy.allowed_branches))
            out.append("(" + " && ".join(parts) + ")")

        if policy.trusted_repositories:
            out.append(_any_of(f"assertion.repository=={_quote(r)}" for r in policy.trusted_repositories))
        return out


# ---------- Helpers ----------

def _quote(literal: str) -> str:
    if "'" in literal or "\\" in literal or any(ch.isspace() for ch in literal):
        raise ValidationError(f"literal cannot be embedded in a condition: {literal!r}")
    return f"'{literal}'"


def _any_of(terms: Iterable[str]) -> str:
    return "(" + " || ".join(terms) + ")"


def glob_to_regex(pattern: str) -> str:
    """`**` spans path segments, `*` stays within one; result is anchored."""
    out: List[str] = []
    i = 0
    while i < len(pattern):
        ch = pattern[i]
        if ch == "*":
            if pattern[i:i + 2] == "**":
                out.append(".*")
                i += 2
                continue
            out.append("[^/]*")
        elif ch in ".+":
            out.append(f"[{ch}]")
        else:
            out.append(ch)
        i += 1
    return "^" + "".join(out) + "$"


def _ref_term(ref: str) -> str:
    if "*" in ref:
        return f"assertion.ref.matches({_quote(glob_to_regex(ref))})"
    return f"assertion.ref=={_quote(ref)}"


def _base_ref_term(branch: str) -> str:
    ref = f"refs/heads/{branch}"
    if "*" in branch:
        return f"assertion.base_ref.matches({_quote(glob_to_regex(ref))})"
    return f"assertion.base_ref=={_quote(ref)}"


def serialize_attribute_mapping(mapping: AttributeMapping) -> str:
    return ",".join(f"{k}={v}" for k, v in mapping.items())


def split_clauses(expression: str) -> List[str]:
    """
    Split a trust expression at top-level `&&`.

    Quote- and parenthesis-aware: `&&` inside a string literal or a
    parenthesised group does not split.
    """
    clauses: List[str] = []
    depth = 0
    quote = ""
    start = 0
    i = 0
    n = len(expression)
    while i < n:
        ch = expression[i]
        if quote:
            if ch == "\\":
                i += 2
                continue
            if ch == quote:
                quote = ""
        elif ch in ("'", '"'):
            quote = ch
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth < 0:
                raise ValueError(f"unbalanced ')' at offset {i}")
        elif ch == "&" and depth == 0 and expression[i:i + 2] == "&&":
            clauses.append(expression[start:i].strip())
            i += 2
            start = i
            continue
        i += 1
    if quote or depth:
        raise ValueError("unterminated literal or group in expression")
    tail = expression[start:].strip()
    if tail or clauses:
        clauses.append(tail)
    return [c for c in clauses if c]


def extract_repositories(condition: str) -> List[str]:
    """Repositories compared with `assertion.repository==` anywhere in `condition`."""
    return _REPO_TERM_RE.findall(condition or "")


def pinned_repository(condition: str) -> str:
    """
    Repository fixed by the first top-level clause of `condition`.

    Empty when that clause is anything other than a bare
    `assertion.repository=='owner/name'` term, or when the expression
    cannot be split.
    """
    try:
        clauses = split_clauses(condition or "")
    except ValueError:
        return ""
    if not clauses:
        return ""
    match = _REPO_TERM_RE.fullmatch(clauses[0])
    return match.group(1) if match else ""


def compile_trust_policy(policy: TrustPolicy) -> Tuple[AttributeMapping, str]:
    compiled = ConditionCompiler().compile(policy)
    return compiled.attribute_mapping, compiled.expression


def count_features(policy: TrustPolicy) -> int:
    """Number of optional clauses a policy enables."""
    flags: Sequence[bool] = (
        policy.block_forked_repos,
        policy.require_actor,
        policy.validate_token_path,
        bool(policy.allowed_branches),
        bool(policy.allowed_tags),
        policy.allow_pull_requests,
        bool(policy.trusted_repositories),
    )
    return sum(1 for f in flags if f)
