"""
Identity backend contract and live-state reader.

- `IdentityBackend`: the operations the reconciler needs from a cloud IAM API
- `BackendError` family: typed failures (auth, permission, not-found, ...)
- `LiveStateReader`: maps "not found" to an absent snapshot, nothing else
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, ClassVar, Dict, List, Optional, Protocol, Sequence, Tuple

from .models import (
    DesiredResource,
    IdentityPool,
    IdentityProvider,
    LiveResource,
    ResourceKind,
    ServiceIdentity,
)


# ---------- Errors ----------

@dataclass
class BackendError(Exception):
    """Backend failure with context."""
    message: str
    resource: str = ""
    status: int = 0

    kind: ClassVar[str] = "backend"

    def __str__(self) -> str:
        base = f"{type(self).__name__}({self.kind}"
        if self.status:
            base += f", status={self.status}"
        if self.resource:
            base += f", resource={self.resource}"
        return base + f"): {self.message}"


class AuthError(BackendError):
    kind = "auth"


class PermissionDeniedError(BackendError):
    kind = "permission_denied"


class NotFoundError(BackendError):
    kind = "not_found"


class MalformedResponseError(BackendError):
    kind = "malformed_response"


class TransportError(BackendError):
    kind = "transport"


# ---------- Contract ----------

class IdentityBackend(Protocol):
    # Reads return None (or raise NotFoundError) when the resource is absent.
    def get_service_identity(self, account_id: str) -> Optional[LiveResource]: ...

    def get_pool(self, pool_id: str) -> Optional[LiveResource]: ...

    def get_provider(self, pool_id: str, provider_id: str) -> Optional[LiveResource]: ...

    def create_service_identity(self, desired: ServiceIdentity) -> Dict[str, Any]: ...

    def update_service_identity(self, account_id: str, display_name: str, description: str) -> Dict[str, Any]: ...

    def create_pool(self, desired: IdentityPool) -> Dict[str, Any]: ...

    def create_provider(
        self, desired: IdentityProvider, attribute_mapping: Dict[str, str], condition: str
    ) -> Dict[str, Any]: ...

    def grant_roles(self, member: str, roles: Sequence[str]) -> List[str]: ...

    def revoke_roles(self, member: str, roles: Sequence[str]) -> List[str]: ...

    def get_trust_bindings(self, service_account: str) -> Dict[str, List[str]]: ...

    def create_trust_binding(self, service_account: str, member: str, role: str, condition: str) -> Dict[str, Any]: ...

    def delete_service_identity(self, account_id: str) -> None: ...

    def delete_pool(self, pool_id: str) -> None: ...

    def delete_provider(self, pool_id: str, provider_id: str) -> None: ...


# ---------- Reader ----------

class LiveStateReader:
    """Fetch the live snapshot for a desired resource."""

    def __init__(self, backend: IdentityBackend, *, logger: Optional[logging.LoggerAdapter] = None) -> None:
        self.backend = backend
        self.log = logger or logging.getLogger("wifsync.reader")

    def read(self, desired: DesiredResource) -> LiveResource:
        try:
            live = self._fetch(desired)
        except NotFoundError:
            live = None
        except BackendError as e:
            self.log.error("Reading %s %s failed: %s", desired.kind.value, desired.resource_id, e)
            raise
        if live is None:
            return LiveResource.absent(desired.kind, desired.resource_id)
        return live

    def _fetch(self, desired: DesiredResource) -> Optional[LiveResource]:
        if desired.kind is ResourceKind.SERVICE_ACCOUNT:
            return self.backend.get_service_identity(desired.account_id)
        if desired.kind is ResourceKind.WORKLOAD_IDENTITY_POOL:
            return self.backend.get_pool(desired.pool_id)
        if desired.kind is ResourceKind.WORKLOAD_IDENTITY_PROVIDER:
            return self.backend.get_provider(desired.pool_id, desired.provider_id)
        raise ValueError(f"Unsupported resource kind: {desired.kind}")

    def trust_members(self, service_account: str, role: str) -> Tuple[str, ...]:
        """Members holding `role` on the service account's own IAM policy."""
        try:
            bindings = self.backend.get_trust_bindings(service_account)
        except BackendError as e:
            self.log.error("Reading IAM policy of %s failed: %s", service_account, e)
            raise
        return tuple(bindings.get(role) or ())
