"""
GcpRestBackend: `IdentityBackend` over the Google Cloud REST APIs.

This module provides a single HTTP client with:
  * JSON helpers on a shared `requests.Session` (bearer token, timeout, TLS toggle)
  * Retries with exponential backoff on 5xx and network errors, never on 4xx
  * HTTP status -> typed `BackendError` mapping (401/403/404/invalid JSON)
  * Parsers turning IAM payloads into `LiveResource` snapshots

Endpoints used:
  * IAM v1: service accounts, workload identity pools and providers,
    service-account IAM policy (trust binding)
  * Cloud Resource Manager v1: project IAM policy (role grants)

Example:
    backend = GcpRestBackend("my-project", token)
    live = backend.get_pool("acme-api-pool")   # None when absent
"""
from __future__ import annotations

import json
import logging
import time
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import requests
import urllib3

from .backend import (
    AuthError,
    BackendError,
    MalformedResponseError,
    NotFoundError,
    PermissionDeniedError,
    TransportError,
)
from .models import IdentityPool, IdentityProvider, LiveResource, ResourceKind, ServiceIdentity

IAM_URL = "https://iam.googleapis.com/v1"
CRM_URL = "https://cloudresourcemanager.googleapis.com/v1"

_LOG_PREVIEW = 400
_REDACT_KEYS = {"token", "authorization", "access_token", "password", "private_key"}


def _short_json(obj: Any, limit: int = _LOG_PREVIEW) -> str:
    try:
        if isinstance(obj, (dict, list)):
            s = json.dumps(obj, ensure_ascii=False)
        else:
            s = str(obj)
        return s[:limit]
    except (TypeError, ValueError):
        return f"<unserializable:{type(obj).__name__}>"


def _redact(obj: Any) -> Any:
    if isinstance(obj, dict):
        return {
            k: ("***REDACTED***" if str(k).lower() in _REDACT_KEYS else _redact(v))
            for k, v in obj.items()
        }
    if isinstance(obj, list):
        return [_redact(x) for x in obj]
    return obj


def _parse_time(value: Any) -> Optional[datetime]:
    """RFC 3339 (`2024-01-02T03:04:05.123456789Z`) -> aware datetime."""
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    if "." in text:
        head, _, rest = text.partition(".")
        digits = ""
        while rest and rest[0].isdigit():
            digits, rest = digits + rest[0], rest[1:]
        text = f"{head}.{digits[:6].ljust(6, '0')}{rest}"
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        return None


def _error_message(resp: requests.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text[:200]
    if isinstance(data, dict) and isinstance(data.get("error"), dict):
        return str(data["error"].get("message") or data["error"].get("status") or "")
    return _short_json(data, 200)


class GcpRestBackend:
    """Identity backend talking to the IAM and Resource Manager APIs."""

    def __init__(
        self,
        project_id: str,
        access_token: str,
        *,
        iam_url: str = IAM_URL,
        crm_url: str = CRM_URL,
        verify_tls: bool = True,
        timeout_sec: int = 30,
        retries: int = 3,
        backoff_base_sec: float = 0.5,
        logger: Optional[logging.LoggerAdapter] = None,
    ) -> None:
        if not project_id:
            raise ValueError("project_id is required")
        self.project_id = project_id
        self.iam_url = iam_url.rstrip("/")
        self.crm_url = crm_url.rstrip("/")
        self.verify_tls = verify_tls
        self.timeout = float(timeout_sec)
        self.retries = max(0, int(retries))
        self.backoff = float(backoff_base_sec)
        self.log = logger or logging.getLogger("wifsync.gcp")

        self.session = requests.Session()
        self.session.headers.update({
            "Authorization": f"Bearer {access_token}",
            "Content-Type": "application/json",
            "Accept": "application/json",
            "User-Agent": "wifsync/RESTBackend",
        })
        if not verify_tls:
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    # ---------------- low-level ----------------

    def _req(
        self,
        method: str,
        url: str,
        *,
        json_body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, str]] = None,
        resource: str = "",
    ) -> Dict[str, Any]:
        """Perform one request (with retries) and return the decoded JSON object."""
        attempts = self.retries + 1
        for attempt in range(attempts):
            start = time.time()
            try:
                resp = self.session.request(
                    method=method,
                    url=url,
                    json=json_body,
                    params=params,
                    timeout=self.timeout,
                    verify=self.verify_tls,
                )
            except requests.RequestException as exc:
                self.log.warning("%s %s failed: %s", method, url, exc)
                if attempt < attempts - 1:
                    self._sleep_backoff(attempt)
                    continue
                raise TransportError(str(exc), resource=resource) from exc

            elapsed = (time.time() - start) * 1000
            status = resp.status_code
            if status >= 500 and attempt < attempts - 1:
                self.log.warning("%s %s -> %s, retrying", method, url, status)
                self._sleep_backoff(attempt)
                continue
            if status >= 400:
                self._raise_for_status(method, url, resp, resource)

            self.log.debug("%s %s -> %s in %.1fms", method, url, status, elapsed)
            if status == 204 or not resp.content:
                return {}
            try:
                data = resp.json()
            except ValueError as exc:
                raise MalformedResponseError(
                    f"invalid JSON from {method} {url}", resource=resource, status=status
                ) from exc
            if not isinstance(data, dict):
                raise MalformedResponseError(
                    f"expected a JSON object from {method} {url}", resource=resource, status=status
                )
            if json_body is not None:
                self.log.debug("request=%s", _short_json(_redact(json_body)))
            return data

        raise TransportError(f"{method} {url} exhausted retries", resource=resource)  # pragma: no cover

    def _raise_for_status(self, method: str, url: str, resp: requests.Response, resource: str) -> None:
        status = resp.status_code
        message = _error_message(resp)
        if status == 404:
            self.log.debug("%s %s -> 404", method, url)
            raise NotFoundError(message or "not found", resource=resource, status=status)
        self.log.error("%s %s -> %s: %s", method, url, status, message)
        if status == 401:
            raise AuthError(message or "authentication failed", resource=resource, status=status)
        if status == 403:
            raise PermissionDeniedError(message or "permission denied", resource=resource, status=status)
        raise BackendError(message or f"HTTP {status}", resource=resource, status=status)

    def _sleep_backoff(self, attempt: int) -> None:
        time.sleep(self.backoff * (2 ** attempt))

    def _get_or_none(self, url: str, resource: str) -> Optional[Dict[str, Any]]:
        try:
            return self._req("GET", url, resource=resource)
        except NotFoundError:
            return None

    # ---------------- path builders ----------------

    def _sa_url(self, account_id: str) -> str:
        email = account_id if "@" in account_id else f"{account_id}@{self.project_id}.iam.gserviceaccount.com"
        return f"{self.iam_url}/projects/{self.project_id}/serviceAccounts/{email}"

    def _pools_url(self) -> str:
        return f"{self.iam_url}/projects/{self.project_id}/locations/global/workloadIdentityPools"

    def _pool_url(self, pool_id: str) -> str:
        return f"{self._pools_url()}/{pool_id}"

    def _provider_url(self, pool_id: str, provider_id: str) -> str:
        return f"{self._pool_url(pool_id)}/providers/{provider_id}"

    # ---------------- reads ----------------

    def get_service_identity(self, account_id: str) -> Optional[LiveResource]:
        data = self._get_or_none(self._sa_url(account_id), account_id)
        if data is None:
            return None
        email = data.get("email") or ""
        try:
            roles = self.project_roles(f"serviceAccount:{email}") if email else []
        except NotFoundError as e:
            raise MalformedResponseError(
                f"project IAM policy not found while reading existing service account: {e.message}",
                resource=account_id, status=e.status,
            ) from e
        return LiveResource(
            kind=ResourceKind.SERVICE_ACCOUNT,
            resource_id=account_id,
            exists=True,
            full_name=str(data.get("name") or email),
            display_name=str(data.get("displayName") or ""),
            description=str(data.get("description") or ""),
            disabled=bool(data.get("disabled", False)),
            roles=tuple(sorted(roles)),
        )

    def get_pool(self, pool_id: str) -> Optional[LiveResource]:
        data = self._get_or_none(self._pool_url(pool_id), pool_id)
        if data is None:
            return None
        return LiveResource(
            kind=ResourceKind.WORKLOAD_IDENTITY_POOL,
            resource_id=pool_id,
            exists=True,
            full_name=str(data.get("name") or ""),
            display_name=str(data.get("displayName") or ""),
            description=str(data.get("description") or ""),
            state=str(data.get("state") or ""),
            disabled=bool(data.get("disabled", False)),
            created_at=_parse_time(data.get("createTime")),
        )

    def get_provider(self, pool_id: str, provider_id: str) -> Optional[LiveResource]:
        data = self._get_or_none(self._provider_url(pool_id, provider_id), provider_id)
        if data is None:
            return None
        oidc = data.get("oidc") or {}
        mapping = data.get("attributeMapping") or {}
        if not isinstance(oidc, dict) or not isinstance(mapping, dict):
            raise MalformedResponseError("unexpected provider payload", resource=provider_id)
        return LiveResource(
            kind=ResourceKind.WORKLOAD_IDENTITY_PROVIDER,
            resource_id=provider_id,
            exists=True,
            full_name=str(data.get("name") or ""),
            display_name=str(data.get("displayName") or ""),
            description=str(data.get("description") or ""),
            state=str(data.get("state") or ""),
            disabled=bool(data.get("disabled", False)),
            attribute_mapping={str(k): str(v) for k, v in mapping.items()},
            attribute_condition=str(data.get("attributeCondition") or ""),
            issuer_uri=str(oidc.get("issuerUri") or ""),
            allowed_audiences=tuple(oidc.get("allowedAudiences") or ()),
            created_at=_parse_time(data.get("createTime")),
        )

    # ---------------- writes ----------------

    def create_service_identity(self, desired: ServiceIdentity) -> Dict[str, Any]:
        body = {
            "accountId": desired.account_id,
            "serviceAccount": {"displayName": desired.display_name, "description": desired.description},
        }
        url = f"{self.iam_url}/projects/{self.project_id}/serviceAccounts"
        self.log.info("Creating service account %s", desired.account_id)
        return self._req("POST", url, json_body=body, resource=desired.account_id)

    def update_service_identity(self, account_id: str, display_name: str, description: str) -> Dict[str, Any]:
        sa: Dict[str, str] = {}
        if display_name:
            sa["displayName"] = display_name
        if description:
            sa["description"] = description
        if not sa:
            return {}
        body = {"serviceAccount": sa, "updateMask": ",".join(sorted(sa))}
        self.log.info("Updating service account %s (%s)", account_id, body["updateMask"])
        return self._req("PATCH", self._sa_url(account_id), json_body=body, resource=account_id)

    def create_pool(self, desired: IdentityPool) -> Dict[str, Any]:
        body = {"displayName": desired.display_name, "description": desired.description}
        self.log.info("Creating workload identity pool %s", desired.pool_id)
        return self._req(
            "POST",
            self._pools_url(),
            json_body=body,
            params={"workloadIdentityPoolId": desired.pool_id},
            resource=desired.pool_id,
        )

    def create_provider(
        self, desired: IdentityProvider, attribute_mapping: Dict[str, str], condition: str
    ) -> Dict[str, Any]:
        body = {
            "displayName": desired.display_name,
            "description": desired.description,
            "attributeMapping": dict(attribute_mapping),
            "attributeCondition": condition,
            "oidc": {
                "issuerUri": desired.policy.issuer_uri,
                "allowedAudiences": list(desired.policy.allowed_audiences),
            },
        }
        self.log.info("Creating identity provider %s in pool %s", desired.provider_id, desired.pool_id)
        return self._req(
            "POST",
            f"{self._pool_url(desired.pool_id)}/providers",
            json_body=body,
            params={"workloadIdentityPoolProviderId": desired.provider_id},
            resource=desired.provider_id,
        )

    # ----- Project IAM policy -----

    def _project_policy(self) -> Dict[str, Any]:
        url = f"{self.crm_url}/projects/{self.project_id}:getIamPolicy"
        return self._req("POST", url, json_body={"options": {"requestedPolicyVersion": 3}}, resource=self.project_id)

    def _set_project_policy(self, policy: Dict[str, Any]) -> Dict[str, Any]:
        url = f"{self.crm_url}/projects/{self.project_id}:setIamPolicy"
        return self._req("POST", url, json_body={"policy": policy}, resource=self.project_id)

    def project_roles(self, member: str) -> List[str]:
        policy = self._project_policy()
        return [
            str(b.get("role"))
            for b in policy.get("bindings") or []
            if member in (b.get("members") or []) and not b.get("condition")
        ]

    def grant_roles(self, member: str, roles: Sequence[str]) -> List[str]:
        policy = self._project_policy()
        bindings = policy.setdefault("bindings", [])
        granted: List[str] = []
        for role in roles:
            binding = _find_binding(bindings, role)
            if binding is None:
                bindings.append({"role": role, "members": [member]})
                granted.append(role)
            elif member not in binding.setdefault("members", []):
                binding["members"].append(member)
                granted.append(role)
        if granted:
            self.log.info("Granting %s to %s", ", ".join(granted), member)
            self._set_project_policy(policy)
        return granted

    def revoke_roles(self, member: str, roles: Sequence[str]) -> List[str]:
        policy = self._project_policy()
        bindings = policy.get("bindings") or []
        revoked: List[str] = []
        for role in roles:
            binding = _find_binding(bindings, role)
            if binding is not None and member in (binding.get("members") or []):
                binding["members"].remove(member)
                revoked.append(role)
        if revoked:
            policy["bindings"] = [b for b in bindings if b.get("members")]
            self.log.info("Revoking %s from %s", ", ".join(revoked), member)
            self._set_project_policy(policy)
        return revoked

    # ----- Service account IAM policy -----

    def _sa_policy(self, service_account: str) -> Dict[str, Any]:
        url = f"{self._sa_url(service_account)}:getIamPolicy"
        return self._req("POST", url, json_body={}, resource=service_account)

    def get_trust_bindings(self, service_account: str) -> Dict[str, List[str]]:
        """Role -> members of the unconditional bindings on the service account."""
        out: Dict[str, List[str]] = {}
        for b in self._sa_policy(service_account).get("bindings") or []:
            if b.get("condition"):
                continue
            out.setdefault(str(b.get("role")), []).extend(str(m) for m in b.get("members") or [])
        return out

    def create_trust_binding(self, service_account: str, member: str, role: str, condition: str) -> Dict[str, Any]:
        """
        Let `member` (a principalSet of the pool) impersonate `service_account`.

        The trust expression is enforced by the provider's attribute condition;
        it is only logged here because service-account policies cannot
        evaluate token assertions.
        """
        policy = self._sa_policy(service_account)
        bindings = policy.setdefault("bindings", [])
        binding = _find_binding(bindings, role)
        if binding is not None and member in (binding.get("members") or []):
            self.log.info("Trust binding %s -> %s already present", member, service_account)
            return {"member": member, "role": role, "changed": False}
        if binding is None:
            bindings.append({"role": role, "members": [member]})
        else:
            binding.setdefault("members", []).append(member)
        self.log.info("Binding %s on %s for %s", role, service_account, member)
        self.log.debug("Trust expression enforced by provider: %s", condition)
        self._req(
            "POST", f"{self._sa_url(service_account)}:setIamPolicy",
            json_body={"policy": policy}, resource=service_account,
        )
        return {"member": member, "role": role, "changed": True}

    # ----- Deletes -----

    def delete_service_identity(self, account_id: str) -> None:
        self.log.info("Deleting service account %s", account_id)
        self._req("DELETE", self._sa_url(account_id), resource=account_id)

    def delete_pool(self, pool_id: str) -> None:
        self.log.info("Deleting workload identity pool %s", pool_id)
        self._req("DELETE", self._pool_url(pool_id), resource=pool_id)

    def delete_provider(self, pool_id: str, provider_id: str) -> None:
        self.log.info("Deleting identity provider %s", provider_id)
        self._req("DELETE", self._provider_url(pool_id, provider_id), resource=provider_id)


def _find_binding(bindings: List[Dict[str, Any]], role: str) -> Optional[Dict[str, Any]]:
    for b in bindings:
        if b.get("role") == role and not b.get("condition"):
            return b
    return None
