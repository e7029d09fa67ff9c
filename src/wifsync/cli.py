"""
Command-line interface for wifsync.

Usage (examples):
  - Compile the trust policy only (no network):
      wifsync compile --repository acme/api --branch main --tag 'v*'

  - Show conflicts between configuration and the live project:
      wifsync plan --config ./wifsync.yml

  - Provision (or reuse) service account, pool, provider and binding:
      wifsync apply --project my-proj --project-number 123456 --token "$TOKEN" \
        --repository acme/api

  - Remove what apply created:
      wifsync cleanup --config ./wifsync.yml --yes
"""

from __future__ import annotations

import argparse
import json
import sys
from typing import Any, Dict, Iterable, Optional

from .core.backend import BackendError
from .core.conditions import ConditionCompiler, split_clauses
from .core.config import AppConfig, ConfigError, load_config
from .core.desired import build_trust_policy
from .core.gcp_client import GcpRestBackend
from .core.logging_setup import build_logger
from .core.models import ValidationError
from .core.reconciler import Reconciler
from .core.reporting import print_outcome, print_plan

EXIT_OK = 0
EXIT_CONFIG = 2
EXIT_VALIDATION = 3
EXIT_BACKEND = 4
EXIT_BLOCKED = 5
EXIT_FAILED = 6


def _add_common(p: argparse.ArgumentParser, *, network: bool = True) -> None:
    p.add_argument("--config", default=None, help="YAML configuration file")
    p.add_argument("--output", choices=["table", "json"], default=None, help="Report format")

    # Trust policy
    p.add_argument("--repository", default=None, help="GitHub repository (owner/name)")
    p.add_argument("--branch", action="append", default=None, help="Allowed branch (repeatable, * wildcards)")
    p.add_argument("--tag", action="append", default=None, help="Allowed tag (repeatable, * wildcards)")
    p.add_argument("--allow-pull-requests", action="store_true", default=None, help="Admit pull request workflows")
    p.add_argument("--trusted-repo", action="append", default=None, help="Trusted repository allow-list entry")

    # Logging
    p.add_argument("--logs-dir", default=None, help="Logs base directory")
    p.add_argument("--console-level", default=None, help="Console log level (INFO..CRITICAL)")
    p.add_argument("--file-level", default=None, help="File log level (DEBUG..CRITICAL)")

    if not network:
        return

    # GCP / HTTP
    p.add_argument("--project", default=None, help="GCP project id")
    p.add_argument("--project-number", default=None, help="GCP project number")
    p.add_argument("--token", default=None, help="OAuth access token")
    p.add_argument("--iam-url", default=None, help="IAM API base URL")
    p.add_argument("--crm-url", default=None, help="Cloud Resource Manager API base URL")
    p.add_argument("--verify-tls", default=None, choices=["true", "false"], help="Verify TLS (https)")
    p.add_argument("--timeout-sec", type=int, default=None, help="HTTP timeout seconds")
    p.add_argument("--retries", type=int, default=None, help="HTTP retries (5xx/network)")

    # Resources
    p.add_argument("--service-account", default=None, help="Service account id")
    p.add_argument("--roles", default=None, help="Comma separated project roles")
    p.add_argument("--pool-id", default=None, help="Workload identity pool id")
    p.add_argument("--provider-id", default=None, help="Identity provider id")


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="wifsync", description="Workload Identity Federation reconciler")
    sub = p.add_subparsers(dest="cmd", required=True)

    c = sub.add_parser("compile", help="Print the attribute mapping and trust expression")
    _add_common(c, network=False)

    pl = sub.add_parser("plan", help="Compare configuration with live state")
    _add_common(pl)

    a = sub.add_parser("apply", help="Create or reuse the federation resources")
    _add_common(a)
    a.add_argument("--dry-run", action="store_true", help="Read live state, write nothing")

    cl = sub.add_parser("cleanup", help="Delete the federation resources")
    _add_common(cl)
    cl.add_argument("--dry-run", action="store_true", help="Read live state, write nothing")
    cl.add_argument("--yes", action="store_true", help="Confirm deletion")
    return p


def _set(target: Dict[str, Any], section: str, key: str, value: Any) -> None:
    if value is not None:
        target.setdefault(section, {})[key] = value


def _overrides(args: argparse.Namespace, *, dry_run: bool) -> Dict[str, Any]:
    o: Dict[str, Any] = {"app": {"dry_run": dry_run}}
    g = vars(args).get
    _set(o, "app", "output", g("output"))

    _set(o, "gcp", "project_id", g("project"))
    _set(o, "gcp", "project_number", g("project_number"))
    _set(o, "gcp", "access_token", g("token"))
    _set(o, "gcp", "iam_url", g("iam_url"))
    _set(o, "gcp", "crm_url", g("crm_url"))
    _set(o, "gcp", "verify_tls", g("verify_tls"))
    _set(o, "gcp", "timeout_sec", g("timeout_sec"))
    _set(o, "gcp", "retries", g("retries"))

    _set(o, "service_account", "name", g("service_account"))
    _set(o, "service_account", "roles", g("roles"))
    _set(o, "workload_identity", "pool_id", g("pool_id"))
    _set(o, "workload_identity", "provider_id", g("provider_id"))

    _set(o, "trust_policy", "repository", g("repository"))
    _set(o, "trust_policy", "branches", g("branch"))
    _set(o, "trust_policy", "tags", g("tag"))
    _set(o, "trust_policy", "allow_pull_requests", g("allow_pull_requests"))
    _set(o, "trust_policy", "trusted_repositories", g("trusted_repo"))

    _set(o, "logging", "base_dir", g("logs_dir"))
    _set(o, "logging", "console_level", g("console_level"))
    _set(o, "logging", "file_level", g("file_level"))
    return o


def _load(args: argparse.Namespace, *, dry_run: bool) -> AppConfig:
    overrides = _overrides(args, dry_run=dry_run)
    if args.config:
        return load_config(overrides, files=(args.config,))
    return load_config(overrides)


def _backend(cfg: AppConfig, logger: Any) -> GcpRestBackend:
    return GcpRestBackend(
        cfg.gcp.project_id,
        cfg.gcp.access_token,
        iam_url=cfg.gcp.iam_url,
        crm_url=cfg.gcp.crm_url,
        verify_tls=bool(cfg.gcp.verify_tls),
        timeout_sec=int(cfg.gcp.timeout_sec),
        retries=int(cfg.gcp.retries),
        logger=logger,
    )


def _compile_cmd(cfg: AppConfig, logger: Any) -> int:
    policy = build_trust_policy(vars(cfg.trust_policy), cfg.wif_defaults())
    compiled = ConditionCompiler(logger=logger).compile(policy)
    if cfg.app.output == "json":
        print(json.dumps({
            "attribute_mapping": compiled.attribute_mapping,
            "attribute_condition": compiled.expression,
            "clauses": list(compiled.clauses),
        }, indent=2))
        return EXIT_OK
    print(f"--attribute-mapping={compiled.mapping_argument}")
    print(f"--attribute-condition={compiled.expression}")
    logger.debug("Clauses: %s", split_clauses(compiled.expression))
    return EXIT_OK


def _plan_cmd(cfg: AppConfig, logger: Any) -> int:
    state = cfg.desired_state()
    result = Reconciler(_backend(cfg, logger), logger=logger).plan(state)
    print_plan(result, cfg.app.output)
    return EXIT_OK if result.can_proceed else EXIT_BLOCKED


def _apply_cmd(cfg: AppConfig, logger: Any) -> int:
    state = cfg.desired_state()
    reconciler = Reconciler(_backend(cfg, logger), dry_run=cfg.app.dry_run, logger=logger)
    outcome = reconciler.apply(state)
    if outcome.plan is not None and cfg.app.output != "json":
        print_plan(outcome.plan, cfg.app.output)
        print()
    print_outcome(outcome, cfg.app.output)
    if outcome.blocked:
        return EXIT_BLOCKED
    return EXIT_FAILED if outcome.failed else EXIT_OK


def _cleanup_cmd(cfg: AppConfig, logger: Any, confirmed: bool) -> int:
    state = cfg.desired_state()
    if not cfg.app.dry_run and not confirmed:
        logger.error("Refusing to delete resources without --yes")
        return EXIT_CONFIG
    outcome = Reconciler(_backend(cfg, logger), dry_run=cfg.app.dry_run, logger=logger).cleanup(state)
    print_outcome(outcome, cfg.app.output)
    return EXIT_FAILED if outcome.failed else EXIT_OK


def main(argv: Optional[Iterable[str]] = None) -> int:
    parser = _build_arg_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    # compile never touches the network, so credentials are optional
    dry_run = args.cmd == "compile" or bool(getattr(args, "dry_run", False))
    try:
        cfg = _load(args, dry_run=dry_run)
    except (ConfigError, ValueError, OSError) as e:
        print(f"configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG

    logger = build_logger(
        run_id=cfg.run_id,
        action=args.cmd,
        base_dir=cfg.logging.base_dir,
        console_level=cfg.logging.console_level,
        file_level=cfg.logging.file_level,
        extra={"project": cfg.gcp.project_id, "repository": cfg.trust_policy.repository},
    )
    logger.info("Starting wifsync %s (dry_run=%s)", args.cmd, cfg.app.dry_run)

    try:
        if args.cmd == "compile":
            return _compile_cmd(cfg, logger)
        if args.cmd == "plan":
            return _plan_cmd(cfg, logger)
        if args.cmd == "apply":
            return _apply_cmd(cfg, logger)
        if args.cmd == "cleanup":
            return _cleanup_cmd(cfg, logger, bool(args.yes))
    except ValidationError as e:
        logger.error("Invalid configuration: %s", e)
        print(f"validation error: {e}", file=sys.stderr)
        return EXIT_VALIDATION
    except BackendError as e:
        logger.error("Backend failure: %s", e)
        print(f"backend error: {e}", file=sys.stderr)
        return EXIT_BACKEND
    except ValueError as e:
        logger.error("Invalid settings: %s", e)
        print(f"configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG

    parser.error("Unknown command")  # pragma: no cover
    return EXIT_CONFIG  # pragma: no cover


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
