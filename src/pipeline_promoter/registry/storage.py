"""
Artifact Registry - environments, immutable digests and mutable tags.

Implements the tag store that promotions write to. Each environment is one
JSON document under {registry_dir}/environments/. A tag always resolves to
exactly one digest; rebinding it is atomic and serialized per
(environment, tag).
"""

import hashlib
import logging
import re
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator

from pydantic import BaseModel, Field

from pipeline_promoter.audit import AuditEventType, AuditLevel, AuditLogger, AuditResult
from pipeline_promoter.config import ConflictPolicy
from pipeline_promoter.core.exceptions import ConflictError, NotFoundError
from pipeline_promoter.core.files import atomic_write_text, read_json
from pipeline_promoter.core.models import Artifact, Identity, Permission, TagMove, utc_now
from pipeline_promoter.policy import AccessPolicyStore

logger = logging.getLogger(__name__)

ENVIRONMENT_NAME = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
TAG_NAME = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")
DIGEST = re.compile(r"^[a-z0-9]+:[a-f0-9]{32,}$")

TagListener = Callable[[TagMove], None]


class ArtifactRecord(BaseModel):
    """A digest known to an environment."""

    digest: str
    labels: dict[str, str] = Field(default_factory=dict)
    created_at: str = Field(default_factory=utc_now)


class EnvironmentRecord(BaseModel):
    """Persisted state of one environment."""

    name: str
    created_at: str = Field(default_factory=utc_now)
    tags: dict[str, str] = Field(default_factory=dict, description="tag -> digest")
    artifacts: dict[str, ArtifactRecord] = Field(default_factory=dict)
    history: list[TagMove] = Field(default_factory=list)


def compute_digest(content: bytes) -> str:
    """Content address for an artifact payload."""
    return f"sha256:{hashlib.sha256(content).hexdigest()}"


class ArtifactRegistry:
    """
    Registry storage backend.

    Manages {registry_dir}/environments/{name}.json with:
    - tag bindings
    - known digests and their labels
    - recent tag history
    Promotions are authorized against the access policy before anything
    is read or written.
    """

    ENVIRONMENTS_DIR = "environments"
    HISTORY_LIMIT = 200

    def __init__(
        self,
        registry_dir: Path | None = None,
        policy: AccessPolicyStore | None = None,
        audit: AuditLogger | None = None,
        conflict_policy: ConflictPolicy = ConflictPolicy.REJECT,
    ):
        """Initialize registry with storage directory and access policy."""
        self._registry_dir = registry_dir or Path("var/registry")
        self._env_dir = self._registry_dir / self.ENVIRONMENTS_DIR
        self._env_dir.mkdir(parents=True, exist_ok=True)
        self._policy = policy or AccessPolicyStore()
        self._audit = audit
        self._conflict_policy = conflict_policy

        self._state_lock = threading.RLock()
        self._tag_locks: dict[tuple[str, str], threading.Lock] = {}
        self._tag_locks_guard = threading.Lock()
        self._listeners: dict[str, list[TagListener]] = {}

        self._environments = self._load_environments()

    @property
    def policy(self) -> AccessPolicyStore:
        return self._policy

    def _load_environments(self) -> dict[str, EnvironmentRecord]:
        environments = {}
        for path in sorted(self._env_dir.glob("*.json")):
            data = read_json(path)
            if data is None:
                logger.warning(f"Skipping unreadable environment file {path}")
                continue
            record = EnvironmentRecord(**data)
            environments[record.name] = record
        return environments

    def _save_environment(self, record: EnvironmentRecord) -> None:
        atomic_write_text(
            self._env_dir / f"{record.name}.json",
            record.model_dump_json(indent=2),
        )

    def _get_environment(self, name: str) -> EnvironmentRecord:
        record = self._environments.get(name)
        if record is None:
            raise NotFoundError(
                f"Environment '{name}' not found",
                entity_type="environment",
                entity_id=name,
            )
        return record

    @contextmanager
    def _tag_lock(self, environment: str, tag: str) -> Iterator[None]:
        """
        Hold the single-writer lock for one destination tag.

        Raises:
            ConflictError: If another writer holds it and the policy is reject
        """
        key = (environment, tag)
        with self._tag_locks_guard:
            lock = self._tag_locks.setdefault(key, threading.Lock())

        if self._conflict_policy == ConflictPolicy.QUEUE:
            lock.acquire()
        elif not lock.acquire(blocking=False):
            raise ConflictError(
                f"A write to '{environment}:{tag}' is already in flight",
                resource=f"{environment}:{tag}",
            )
        try:
            yield
        finally:
            lock.release()

    def _artifact(self, record: EnvironmentRecord, digest: str) -> Artifact:
        known = record.artifacts.get(digest)
        return Artifact(
            digest=digest,
            environment=record.name,
            tags=sorted(t for t, d in record.tags.items() if d == digest),
            labels=dict(known.labels) if known else {},
            created_at=known.created_at if known else None,
        )

    def _bind(
        self,
        record: EnvironmentRecord,
        tag: str,
        artifact: ArtifactRecord,
        *,
        source: str | None,
        actor: str,
    ) -> TagMove:
        """Rebind a tag and persist. Caller holds the tag and state locks."""
        move = TagMove(
            environment=record.name,
            tag=tag,
            digest=artifact.digest,
            previous_digest=record.tags.get(tag),
            source=source,
            actor=actor,
        )
        if not move.changed:
            return move

        record.tags[tag] = artifact.digest
        record.artifacts.setdefault(artifact.digest, artifact.model_copy())
        record.history.append(move)
        if len(record.history) > self.HISTORY_LIMIT:
            record.history = record.history[-self.HISTORY_LIMIT :]
        self._save_environment(record)
        return move

    def create_environment(self, name: str, actor: str = "admin") -> EnvironmentRecord:
        """
        Create an isolated environment.

        Raises:
            ValueError: If the name is not a valid namespace name
            ConflictError: If the environment already exists
        """
        if not ENVIRONMENT_NAME.match(name):
            raise ValueError(f"Invalid environment name: {name!r}")

        with self._state_lock:
            if name in self._environments:
                raise ConflictError(f"Environment '{name}' already exists", resource=name)
            record = EnvironmentRecord(name=name)
            self._environments[name] = record
            self._save_environment(record)

        logger.info(f"Created environment {name}")
        if self._audit:
            self._audit.record(
                AuditEventType.ENVIRONMENT_CREATED,
                f"Created environment {name}",
                actor=actor,
                target=name,
            )
        return record.model_copy(deep=True)

    def list_environments(self) -> list[str]:
        """List environment names."""
        with self._state_lock:
            return sorted(self._environments)

    def push(
        self,
        environment: str,
        tag: str,
        *,
        content: bytes | None = None,
        digest: str | None = None,
        labels: dict[str, str] | None = None,
        actor: str = "system",
    ) -> Artifact:
        """
        Record a build output and point a tag at it.

        Exactly one of content or digest must be given; the digest is
        computed from content when needed.

        Raises:
            ValueError: If the tag or digest is malformed
            NotFoundError: If the environment does not exist
            ConflictError: If another write to the tag is in flight
        """
        if (content is None) == (digest is None):
            raise ValueError("Provide exactly one of content or digest")
        if not TAG_NAME.match(tag):
            raise ValueError(f"Invalid tag name: {tag!r}")
        if digest is None:
            digest = compute_digest(content)
        elif not DIGEST.match(digest):
            raise ValueError(f"Invalid digest: {digest!r}")

        with self._tag_lock(environment, tag):
            with self._state_lock:
                record = self._get_environment(environment)
                known = record.artifacts.get(digest) or ArtifactRecord(
                    digest=digest, labels=labels or {}
                )
                move = self._bind(record, tag, known, source=None, actor=actor)
                artifact = self._artifact(record, digest)

            if move.changed and self._audit:
                self._audit.record(
                    AuditEventType.ARTIFACT_PUSHED,
                    f"Pushed {digest[:19]} as {environment}:{tag}",
                    actor=actor,
                    target=f"{environment}:{tag}",
                    digest=digest,
                    previous_digest=move.previous_digest,
                )
        return artifact

    def resolve(self, environment: str, tag: str) -> Artifact:
        """
        Resolve env:tag to its current artifact.

        Raises:
            NotFoundError: If the environment or tag does not exist
        """
        with self._state_lock:
            record = self._get_environment(environment)
            digest = record.tags.get(tag)
            if digest is None:
                raise NotFoundError(
                    f"Tag '{tag}' not found in environment '{environment}'",
                    entity_type="tag",
                    entity_id=f"{environment}:{tag}",
                )
            return self._artifact(record, digest)

    def list_tags(self, environment: str) -> dict[str, str]:
        """Return tag -> digest for an environment."""
        with self._state_lock:
            return dict(sorted(self._get_environment(environment).tags.items()))

    def tag_history(self, environment: str, tag: str | None = None) -> list[TagMove]:
        """Recent tag moves in an environment, oldest first."""
        with self._state_lock:
            history = self._get_environment(environment).history
            return [m for m in history if tag is None or m.tag == tag]

    def add_listener(self, environment: str, listener: TagListener) -> None:
        """Register a deployment trigger for tag moves in an environment."""
        with self._state_lock:
            self._listeners.setdefault(environment, []).append(listener)

    def promote(
        self,
        source_env: str,
        tag: str,
        dest_env: str,
        dest_tag: str,
        identity: Identity | str,
        expected_digest: str | None = None,
    ) -> Artifact:
        """
        Point dest_env:dest_tag at the digest source_env:tag resolves to.

        Promotion is the only thing that moves tags in a destination
        environment, and therefore the only trigger for its deployments.
        Re-promoting an unchanged source is a no-op and triggers nothing.

        Raises:
            PermissionDeniedError: If identity lacks promote on dest_env
            NotFoundError: If an environment or the source tag is missing
            ConflictError: If another write to dest_env:dest_tag is in flight
                or source_env:tag no longer resolves to expected_digest
        """
        actor = str(identity)
        self._policy.require(actor, Permission.PROMOTE, dest_env)

        with self._tag_lock(dest_env, dest_tag):
            with self._state_lock:
                source = self._get_environment(source_env)
                dest = self._get_environment(dest_env)
                digest = source.tags.get(tag)
                if digest is None:
                    raise NotFoundError(
                        f"Tag '{tag}' not found in environment '{source_env}'",
                        entity_type="tag",
                        entity_id=f"{source_env}:{tag}",
                    )
                if expected_digest and digest != expected_digest:
                    raise ConflictError(
                        f"'{source_env}:{tag}' moved to {digest}, expected {expected_digest}",
                        resource=f"{source_env}:{tag}",
                    )
                known = source.artifacts.get(digest) or ArtifactRecord(digest=digest)
                move = self._bind(
                    dest, dest_tag, known, source=f"{source_env}:{tag}", actor=actor
                )
                artifact = self._artifact(dest, digest)
                listeners = list(self._listeners.get(dest_env, []))

        if not move.changed:
            logger.info(f"{dest_env}:{dest_tag} already at {digest}, nothing to promote")
            return artifact

        logger.info(f"{actor} promoted {source_env}:{tag} -> {dest_env}:{dest_tag} ({digest})")
        if self._audit:
            self._audit.record(
                AuditEventType.TAG_MOVED,
                f"Promoted {source_env}:{tag} to {dest_env}:{dest_tag}",
                actor=actor,
                target=f"{dest_env}:{dest_tag}",
                digest=digest,
                previous_digest=move.previous_digest,
                source=move.source,
            )
        # Outside the tag lock: writers to this tag do not wait on triggers
        self._notify(listeners, move)
        return artifact

    def _notify(self, listeners: list[TagListener], move: TagMove) -> None:
        """Fire deployment triggers. A failing trigger never undoes the move."""
        for listener in listeners:
            name = getattr(listener, "name", None) or type(listener).__name__
            try:
                listener(move)
            except Exception as e:
                logger.warning(
                    f"Deployment trigger {name} failed for {move.environment}:{move.tag}: {e}"
                )
                if self._audit:
                    self._audit.record(
                        AuditEventType.DEPLOYMENT_TRIGGER_FAILED,
                        f"Trigger {name} failed",
                        actor=move.actor,
                        target=f"{move.environment}:{move.tag}",
                        result=AuditResult.FAILURE,
                        severity=AuditLevel.ERROR,
                        error_message=str(e),
                    )
                continue

            if self._audit:
                self._audit.record(
                    AuditEventType.DEPLOYMENT_TRIGGERED,
                    f"Trigger {name} fired",
                    actor=move.actor,
                    target=f"{move.environment}:{move.tag}",
                    digest=move.digest,
                )
