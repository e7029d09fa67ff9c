from __future__ import annotations

import os
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import yaml
from dotenv import find_dotenv, load_dotenv

from .desired import build_desired_state
from .models import DesiredState, WifDefaults


class ConfigError(ValueError):
    """Missing or malformed configuration."""


# ---------- Typed sections ----------

@dataclass
class AppSection:
    run_id: Optional[str] = None
    dry_run: bool = False
    output: str = "table"     # table | json


@dataclass
class GcpSection:
    project_id: str = ""
    project_number: str = ""
    access_token: str = ""    # secret – never log in clear text
    iam_url: str = "https://iam.googleapis.com/v1"
    crm_url: str = "https://cloudresourcemanager.googleapis.com/v1"
    verify_tls: bool = True
    timeout_sec: int = 30
    retries: int = 3


@dataclass
class ServiceAccountSection:
    name: str = ""
    display_name: str = ""
    description: str = ""
    roles: List[str] = field(default_factory=list)


@dataclass
class WorkloadIdentitySection:
    pool_id: str = ""
    pool_display_name: str = ""
    pool_description: str = ""
    provider_id: str = ""
    provider_display_name: str = ""
    provider_description: str = ""


@dataclass
class TrustPolicySection:
    repository: str = ""
    branches: List[str] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)
    allow_pull_requests: bool = False
    require_actor: Optional[bool] = None
    block_forked_repos: Optional[bool] = None
    validate_token_path: Optional[bool] = None
    trusted_repositories: List[str] = field(default_factory=list)
    issuer_uri: str = ""
    audiences: List[str] = field(default_factory=list)
    claims: Dict[str, str] = field(default_factory=dict)


@dataclass
class LoggingSection:
    base_dir: str = "logs"
    console_level: str = "INFO"   # INFO..CRITICAL
    file_level: str = "DEBUG"     # DEBUG..CRITICAL


@dataclass
class AppConfig:
    """Typed configuration object built by `load_config`."""
    app: AppSection
    gcp: GcpSection
    service_account: ServiceAccountSection
    workload_identity: WorkloadIdentitySection
    trust_policy: TrustPolicySection
    logging: LoggingSection
    defaults: Dict[str, Any] = field(default_factory=dict)

    @property
    def run_id(self) -> str:
        """
        Return a stable run identifier for this process.
        Generated lazily when first accessed if not provided.
        """
        if not self.app.run_id:
            self.app.run_id = uuid.uuid4().hex[:12]
        return self.app.run_id

    def wif_defaults(self) -> WifDefaults:
        return WifDefaults.from_mapping(self.defaults)

    def desired_state(self) -> DesiredState:
        """Validated desired state; raises `ValidationError` on bad input."""
        return build_desired_state(
            project_id=self.gcp.project_id,
            project_number=self.gcp.project_number,
            service_account=vars(self.service_account),
            workload_identity=vars(self.workload_identity),
            trust_policy=vars(self.trust_policy),
            defaults=self.wif_defaults(),
        )


# ---------- Defaults ----------

_DEFAULT_FILES: Tuple[str, ...] = (
    "./wifsync.yml",
    os.path.expanduser("~/.config/wifsync/config.yml"),
    "/etc/wifsync/config.yml",
)

_DEFAULTS: Dict[str, Any] = {
    "app": {"run_id": None, "dry_run": False, "output": "table"},
    "gcp": {
        "project_id": "",
        "project_number": "",
        "access_token": "",
        "iam_url": "https://iam.googleapis.com/v1",
        "crm_url": "https://cloudresourcemanager.googleapis.com/v1",
        "verify_tls": True,
        "timeout_sec": 30,
        "retries": 3,
    },
    "service_account": {"name": "", "display_name": "", "description": "", "roles": []},
    "workload_identity": {
        "pool_id": "",
        "pool_display_name": "",
        "pool_description": "",
        "provider_id": "",
        "provider_display_name": "",
        "provider_description": "",
    },
    "trust_policy": {
        "repository": "",
        "branches": [],
        "tags": [],
        "allow_pull_requests": False,
        "require_actor": None,
        "block_forked_repos": None,
        "validate_token_path": None,
        "trusted_repositories": [],
        "issuer_uri": "",
        "audiences": [],
        "claims": {},
    },
    "logging": {"base_dir": "logs", "console_level": "INFO", "file_level": "DEBUG"},
    "defaults": {},
}

_BOOL_KEYS = {
    "verify_tls", "dry_run", "allow_pull_requests", "require_actor",
    "block_forked_repos", "validate_token_path",
}
_INT_KEYS = {"timeout_sec", "retries"}
_LIST_KEYS = {"roles", "branches", "tags", "trusted_repositories", "audiences"}


# ---------- Utilities ----------

def _deep_merge(base: Dict[str, Any], ext: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Deep-merge for dicts: maps merge recursively, lists/scalars override.
    `ext` wins over `base`. Returns a new dict.
    """
    if not ext:
        return dict(base)
    out: Dict[str, Any] = dict(base)
    for k, v in ext.items():
        if isinstance(v, dict) and isinstance(out.get(k), dict):
            out[k] = _deep_merge(out[k], v)
        else:
            out[k] = v
    return out


def _read_yaml_file(path: str) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        try:
            data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Top-level YAML must be a mapping: {path}")
    return data


def _load_first_existing(files: Tuple[str, ...]) -> Dict[str, Any]:
    for p in files:
        if os.path.exists(p):
            return _read_yaml_file(p)
    return {}


def _env_to_dict(prefix: str = "WIFSYNC_") -> Dict[str, Any]:
    """
    Convert WIFSYNC_FOO__BAR=val to {"foo": {"bar": "val"}} (lowercased keys).
    """
    out: Dict[str, Any] = {}
    plen = len(prefix)
    for key, val in os.environ.items():
        if not key.startswith(prefix):
            continue
        path = key[plen:].lower().split("__")
        cursor = out
        for part in path[:-1]:
            cursor = cursor.setdefault(part, {})
        cursor[path[-1]] = val
    return out


def _interpolate_env(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """
    Replace values like "${VAR}" with os.environ["VAR"] when present.
    """
    def repl(v: Any) -> Any:
        if isinstance(v, str) and v.startswith("${") and v.endswith("}"):
            return os.environ.get(v[2:-1], "")
        return v

    def walk(obj: Any) -> Any:
        if isinstance(obj, dict):
            return {k: walk(repl(v)) for k, v in obj.items()}
        if isinstance(obj, list):
            return [walk(repl(x)) for x in obj]
        return repl(obj)

    return walk(cfg)


def _coerce_types(cfg: Dict[str, Any]) -> Dict[str, Any]:
    """
    Type coercion by key name: booleans, integers, and comma lists
    (env vars only carry strings).
    """
    def to_bool(x: Any) -> bool:
        return str(x).strip().lower() in {"1", "true", "yes", "y", "on"}

    def walk(obj: Any, key_path: Tuple[str, ...] = ()) -> Any:
        if isinstance(obj, dict):
            return {k: walk(v, key_path + (k,)) for k, v in obj.items()}
        key = key_path[-1] if key_path else ""
        if key in _LIST_KEYS and isinstance(obj, str):
            return [x.strip() for x in obj.split(",") if x.strip()]
        if isinstance(obj, list):
            return [walk(v, key_path) for v in obj]
        if key in _BOOL_KEYS and obj is not None:
            return obj if isinstance(obj, bool) else to_bool(obj)
        if key in _INT_KEYS:
            try:
                return int(obj)
            except (TypeError, ValueError) as e:
                raise ConfigError(f"{'.'.join(key_path)} must be an integer, got {obj!r}") from e
        if key == "project_number" and obj is not None:
            return str(obj)
        return obj

    return walk(cfg)


def _validate(cfg: Dict[str, Any]) -> None:
    """
    Validate required fields when not in dry_run.
    """
    dry = bool(cfg.get("app", {}).get("dry_run", False))
    if dry:
        return
    missing = []
    gcp = cfg.get("gcp", {})
    for key in ("project_id", "project_number", "access_token"):
        if not gcp.get(key):
            missing.append(f"gcp.{key}")
    if missing:
        raise ConfigError(
            "Missing required configuration for non-dry run: " + ", ".join(missing)
        )


def _section(cls: Any, data: Dict[str, Any], name: str) -> Any:
    try:
        return cls(**data)
    except TypeError as e:
        raise ConfigError(f"Unknown key in section '{name}': {e}") from e


# ---------- Public API ----------

def load_config(
    cli_overrides: Optional[Dict[str, Any]] = None,
    files: Tuple[str, ...] = _DEFAULT_FILES,
    env_prefix: str = "WIFSYNC_",
    *,
    use_dotenv: bool = True,
) -> AppConfig:
    """
    Build an AppConfig from (in precedence order):
      1) CLI overrides
      2) Environment variables (prefix WIFSYNC_, nested via __), after .env
      3) YAML file (first existing)
      4) Built-in defaults

    Also performs:
      - ${ENV_VAR} interpolation
      - type coercion (bool/int/comma lists)
      - validation of required fields when not in dry_run
    """
    if use_dotenv:
        env_path = find_dotenv(usecwd=True) or ""
        if env_path:
            load_dotenv(env_path, override=False)

    file_cfg = _load_first_existing(files)
    env_cfg = _env_to_dict(env_prefix)

    # Combine: defaults <- file <- env <- cli
    merged = _deep_merge(_DEFAULTS, file_cfg)
    merged = _deep_merge(merged, env_cfg)
    merged = _deep_merge(merged, cli_overrides or {})

    merged = _interpolate_env(merged)
    merged = _coerce_types(merged)

    _validate(merged)

    return AppConfig(
        app=_section(AppSection, merged.get("app", {}), "app"),
        gcp=_section(GcpSection, merged.get("gcp", {}), "gcp"),
        service_account=_section(ServiceAccountSection, merged.get("service_account", {}), "service_account"),
        workload_identity=_section(
            WorkloadIdentitySection, merged.get("workload_identity", {}), "workload_identity"
        ),
        trust_policy=_section(TrustPolicySection, merged.get("trust_policy", {}), "trust_policy"),
        logging=_section(LoggingSection, merged.get("logging", {}), "logging"),
        defaults=dict(merged.get("defaults") or {}),
    )
