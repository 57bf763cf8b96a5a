"""
Access Policy Store - explicit identity/environment permission bindings.

Maps (identity, environment) to a permission set. There is no inheritance
across environments: a grant on "dev" says nothing about "prod".

Storage layout:
- bindings.json - current bindings
- changes.jsonl - append-only log of grants and revocations
"""

import json
import logging
import threading
import uuid
from pathlib import Path
from typing import Iterable

from pydantic import BaseModel, Field, ValidationError

from pipeline_promoter.audit import AuditEventType, AuditLevel, AuditLogger, AuditResult
from pipeline_promoter.core.exceptions import PermissionDeniedError
from pipeline_promoter.core.files import atomic_write_text, read_json
from pipeline_promoter.core.models import Identity, Permission, utc_now

logger = logging.getLogger(__name__)


class PolicyChange(BaseModel):
    """One administrative change to the bindings."""

    change_id: str = Field(default_factory=lambda: uuid.uuid4().hex[:12])
    timestamp: str = Field(default_factory=utc_now)
    operation: str  # "grant" or "revoke"
    identity: str
    environment: str
    permissions: list[Permission]
    actor: str

    model_config = {"frozen": True}


def _normalize(permissions: Iterable[Permission | str]) -> set[Permission]:
    return {Permission(p) for p in permissions}


class AccessPolicyStore:
    """
    Policy store consulted before any promotion.

    Thread-safe; every grant and revoke is persisted immediately and
    appended to the change log.
    """

    BINDINGS_FILE = "bindings.json"
    CHANGES_FILE = "changes.jsonl"

    def __init__(self, policy_dir: Path | None = None, audit: AuditLogger | None = None):
        """Initialize the store and load persisted bindings."""
        self._policy_dir = policy_dir or Path("var/policy")
        self._policy_dir.mkdir(parents=True, exist_ok=True)
        self._audit = audit
        self._lock = threading.RLock()
        self._bindings: dict[str, dict[str, set[Permission]]] = self._load_bindings()

    def _load_bindings(self) -> dict[str, dict[str, set[Permission]]]:
        data = read_json(self._policy_dir / self.BINDINGS_FILE) or {}
        bindings: dict[str, dict[str, set[Permission]]] = {}
        for identity, environments in data.items():
            bindings[identity] = {
                env: _normalize(perms) for env, perms in environments.items()
            }
        return bindings

    def _save_bindings(self) -> None:
        data = {
            identity: {
                env: sorted(p.value for p in perms)
                for env, perms in environments.items()
                if perms
            }
            for identity, environments in self._bindings.items()
        }
        atomic_write_text(
            self._policy_dir / self.BINDINGS_FILE,
            json.dumps(data, indent=2, sort_keys=True),
        )

    def _append_change(self, change: PolicyChange) -> None:
        with open(self._policy_dir / self.CHANGES_FILE, "a") as f:
            f.write(change.model_dump_json() + "\n")

    def grant(
        self,
        identity: Identity | str,
        environment: str,
        permissions: Iterable[Permission | str],
        actor: str = "admin",
    ) -> set[Permission]:
        """
        Add permissions for an identity on one environment.

        Returns the identity's resulting permission set on that environment.
        """
        name = str(identity)
        perms = _normalize(permissions)

        with self._lock:
            current = self._bindings.setdefault(name, {}).setdefault(environment, set())
            current |= perms
            self._save_bindings()
            change = PolicyChange(
                operation="grant",
                identity=name,
                environment=environment,
                permissions=sorted(perms, key=lambda p: p.value),
                actor=actor,
            )
            self._append_change(change)
            result = set(current)

        logger.info(f"{actor} granted {sorted(p.value for p in perms)} on {environment} to {name}")
        if self._audit:
            self._audit.record(
                AuditEventType.PERMISSION_GRANTED,
                f"Granted {', '.join(p.value for p in change.permissions)}",
                actor=actor,
                target=f"{environment}:{name}",
                change_id=change.change_id,
            )
        return result

    def revoke(
        self,
        identity: Identity | str,
        environment: str,
        permissions: Iterable[Permission | str] | None = None,
        actor: str = "admin",
    ) -> set[Permission]:
        """
        Remove permissions for an identity on one environment.

        With no permissions given, every permission on the environment is
        revoked. Returns the remaining permission set.
        """
        name = str(identity)

        with self._lock:
            current = self._bindings.get(name, {}).get(environment, set())
            perms = _normalize(permissions) if permissions is not None else set(current)
            remaining = current - perms
            if name in self._bindings:
                if remaining:
                    self._bindings[name][environment] = remaining
                else:
                    self._bindings[name].pop(environment, None)
                    if not self._bindings[name]:
                        del self._bindings[name]
            self._save_bindings()
            change = PolicyChange(
                operation="revoke",
                identity=name,
                environment=environment,
                permissions=sorted(perms, key=lambda p: p.value),
                actor=actor,
            )
            self._append_change(change)

        logger.info(f"{actor} revoked {sorted(p.value for p in perms)} on {environment} from {name}")
        if self._audit:
            self._audit.record(
                AuditEventType.PERMISSION_REVOKED,
                f"Revoked {', '.join(p.value for p in change.permissions) or 'nothing'}",
                actor=actor,
                target=f"{environment}:{name}",
                change_id=change.change_id,
            )
        return set(remaining)

    def permissions_for(self, identity: Identity | str, environment: str) -> set[Permission]:
        """Return the explicit permission set for an identity on an environment."""
        with self._lock:
            return set(self._bindings.get(str(identity), {}).get(environment, set()))

    def authorize(
        self,
        identity: Identity | str,
        action: Permission | str,
        environment: str,
    ) -> bool:
        """Return True if the identity holds the permission on the environment."""
        return Permission(action) in self.permissions_for(identity, environment)

    def require(
        self,
        identity: Identity | str,
        action: Permission | str,
        environment: str,
    ) -> None:
        """
        Authorize or fail.

        Raises:
            PermissionDeniedError: If the identity lacks the permission
        """
        permission = Permission(action)
        if self.authorize(identity, permission, environment):
            return

        logger.warning(f"Denied {permission.value} on {environment} to {identity}")
        if self._audit:
            self._audit.record(
                AuditEventType.PERMISSION_DENIED,
                f"Denied {permission.value}",
                actor=str(identity),
                target=environment,
                result=AuditResult.FAILURE,
                severity=AuditLevel.WARNING,
            )
        raise PermissionDeniedError(
            f"'{identity}' may not {permission.value} in environment '{environment}'",
            identity=str(identity),
            action=permission.value,
            environment=environment,
        )

    def bindings(self) -> list[dict[str, object]]:
        """List current bindings, one row per identity/environment pair."""
        with self._lock:
            return [
                {
                    "identity": identity,
                    "environment": env,
                    "permissions": sorted(p.value for p in perms),
                }
                for identity, environments in sorted(self._bindings.items())
                for env, perms in sorted(environments.items())
            ]

    def changes(self) -> list[PolicyChange]:
        """Read the change log back, oldest first."""
        path = self._policy_dir / self.CHANGES_FILE
        if not path.exists():
            return []

        changes = []
        for line in path.read_text().splitlines():
            if not line.strip():
                continue
            try:
                changes.append(PolicyChange(**json.loads(line)))
            except (json.JSONDecodeError, ValidationError):
                logger.warning(f"Skipping unreadable policy change line in {path}")
        return changes
