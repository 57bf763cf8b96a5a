"""
Pipeline Catalog - registered pipeline definitions and their versions.

Definitions are keyed by id and versioned by content. Registering an edited
definition adds a new version; runs already started keep the snapshot they
were created with.
"""

import json
import logging
import threading
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from pipeline_promoter.core.exceptions import NotFoundError, PipelineDefinitionError
from pipeline_promoter.core.models import PipelineDefinition
from pipeline_promoter.stages.actions import ActionCatalog
from pipeline_promoter.state.manager import RunStore

logger = logging.getLogger(__name__)


class PipelineCatalog:
    """
    In-memory catalog backed by the run store's definition records.

    Supports:
    - Registering definitions from models, dicts, YAML or JSON files
    - Version history per definition id
    - Validation of stage action names
    """

    def __init__(self, store: RunStore | None = None, actions: ActionCatalog | None = None):
        """
        Initialize the catalog.

        Args:
            store: Persists every version (None keeps them in memory only)
            actions: Actions stages may reference (None skips the check)
        """
        self._store = store
        self._actions = actions
        self._lock = threading.RLock()
        self._versions: dict[str, list[PipelineDefinition]] = {}

        if store is not None:
            self._versions = store.load_definitions()

    def _validate(self, definition: PipelineDefinition, source: str | None) -> None:
        if self._actions is None:
            return
        unknown = [
            f"stage '{stage.name}' uses unknown action '{stage.action}'"
            for stage in definition.stages
            if stage.action and stage.action not in self._actions
        ]
        if unknown:
            raise PipelineDefinitionError(
                f"Pipeline '{definition.id}' references unknown actions",
                definition_id=definition.id,
                source=source,
                validation_errors=unknown,
            )

    def parse(self, data: dict[str, Any], source: str | None = None) -> PipelineDefinition:
        """
        Build a definition from a dictionary.

        Raises:
            PipelineDefinitionError: If the data does not describe a valid pipeline
        """
        if not isinstance(data, dict):
            raise PipelineDefinitionError("Pipeline definition must be a mapping", source=source)
        try:
            definition = PipelineDefinition(**data)
        except ValidationError as e:
            raise PipelineDefinitionError(
                f"Invalid pipeline definition '{data.get('id', '?')}'",
                definition_id=data.get("id"),
                source=source,
                validation_errors=[
                    f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
                ],
            )
        self._validate(definition, source)
        return definition

    def register(
        self,
        definition: PipelineDefinition | dict[str, Any],
        source: str | None = None,
    ) -> PipelineDefinition:
        """
        Register a definition, adding a version when its content changed.

        Returns:
            The registered (or already current) definition
        """
        if isinstance(definition, dict):
            definition = self.parse(definition, source)
        else:
            self._validate(definition, source)

        with self._lock:
            versions = self._versions.setdefault(definition.id, [])
            existing = next((v for v in versions if v.version == definition.version), None)
            if existing is not None:
                # Re-registering an old version makes it current again
                versions.remove(existing)
                versions.append(existing)
                definition = existing
            else:
                versions.append(definition)
            if self._store is not None:
                self._store.save_definition(definition)
            if existing is not None:
                return existing

        logger.info(f"Registered pipeline {definition.id} version {definition.version}")
        return definition

    def load_file(self, path: Path) -> list[PipelineDefinition]:
        """
        Load one or more definitions from a YAML or JSON file.

        Raises:
            PipelineDefinitionError: If the file is unreadable or invalid
        """
        path = Path(path)
        try:
            content = path.read_text()
        except OSError as e:
            raise PipelineDefinitionError(f"Cannot read {path}: {e}", source=str(path))

        try:
            if path.suffix in (".yaml", ".yml"):
                data = yaml.safe_load(content)
            else:
                data = json.loads(content)
        except (yaml.YAMLError, json.JSONDecodeError) as e:
            raise PipelineDefinitionError(f"Cannot parse {path}: {e}", source=str(path))

        if isinstance(data, dict):
            items = [data]
        elif isinstance(data, list):
            items = data
        else:
            raise PipelineDefinitionError(f"Invalid structure in {path}", source=str(path))

        return [self.register(item, source=str(path)) for item in items]

    def load_directory(self, directory: Path) -> int:
        """
        Load every YAML and JSON definition file in a directory.

        Invalid files are logged and skipped.

        Returns:
            Number of definitions loaded
        """
        directory = Path(directory)
        if not directory.exists():
            return 0

        count = 0
        files = sorted(
            p for p in directory.iterdir() if p.suffix in (".yaml", ".yml", ".json")
        )
        for path in files:
            try:
                count += len(self.load_file(path))
            except PipelineDefinitionError as e:
                logger.warning(f"Skipping pipeline file: {e}")
        return count

    def get(self, definition_id: str, version: str | None = None) -> PipelineDefinition:
        """
        Return the current (or a specific) version of a definition.

        Raises:
            NotFoundError: If the id or version is unknown
        """
        with self._lock:
            versions = self._versions.get(definition_id)
            if not versions:
                raise NotFoundError(
                    f"Pipeline '{definition_id}' not found",
                    entity_type="pipeline",
                    entity_id=definition_id,
                )
            if version is None:
                return versions[-1]
            for definition in versions:
                if definition.version == version:
                    return definition
        raise NotFoundError(
            f"Pipeline '{definition_id}' has no version {version}",
            entity_type="pipeline_version",
            entity_id=f"{definition_id}@{version}",
        )

    def list_definitions(self) -> list[PipelineDefinition]:
        """Current version of every definition, sorted by id."""
        with self._lock:
            return [versions[-1] for _, versions in sorted(self._versions.items()) if versions]

    def versions(self, definition_id: str) -> list[str]:
        """Version ids of a definition, oldest first."""
        with self._lock:
            if definition_id not in self._versions:
                raise NotFoundError(
                    f"Pipeline '{definition_id}' not found",
                    entity_type="pipeline",
                    entity_id=definition_id,
                )
            return [d.version for d in self._versions[definition_id]]
