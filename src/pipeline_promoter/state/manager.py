"""
Run Store - persistent run, approval and definition records.

Stores:
- Run records with their stage result logs
- Approval requests
- Every version of every pipeline definition
"""

import json
import logging
import threading
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from pipeline_promoter.core.exceptions import NotFoundError
from pipeline_promoter.core.files import atomic_write_text, read_json
from pipeline_promoter.core.models import ApprovalRequest, PipelineDefinition, Run, RunStatus

logger = logging.getLogger(__name__)


class RunStore:
    """
    Manager for persistent state storage.

    State is stored in var/state/:
    - runs/<run_id>.json - Individual runs
    - approvals/<request_id>.json - Approval requests
    - definitions/<definition_id>.json - Definition versions, oldest first
    - index.json - Global index (run ids, newest first)

    Every write goes through a temp file and os.replace, so a crash leaves
    the previous committed record in place.
    """

    INDEX_LIMIT = 1000

    def __init__(self, state_dir: Path | None = None):
        """Initialize the store with its storage directory."""
        self._state_dir = state_dir or Path("var/state")
        self._runs_dir = self._state_dir / "runs"
        self._approvals_dir = self._state_dir / "approvals"
        self._definitions_dir = self._state_dir / "definitions"
        self._index_file = self._state_dir / "index.json"

        for dir_path in (self._runs_dir, self._approvals_dir, self._definitions_dir):
            dir_path.mkdir(parents=True, exist_ok=True)

        self._lock = threading.RLock()
        self._index = self._load_index()

    @property
    def state_dir(self) -> Path:
        return self._state_dir

    def _load_index(self) -> dict[str, Any]:
        """Load global index."""
        index = read_json(self._index_file)
        if isinstance(index, dict):
            index.setdefault("runs", [])
            return index
        return {"runs": []}

    def _save_index(self) -> None:
        """Save global index."""
        atomic_write_text(self._index_file, json.dumps(self._index, indent=2))

    # Runs

    def save_run(self, run: Run) -> None:
        """Commit the current state of a run."""
        with self._lock:
            atomic_write_text(self._runs_dir / f"{run.run_id}.json", run.model_dump_json(indent=2))

            if run.run_id not in self._index["runs"]:
                self._index["runs"].insert(0, run.run_id)
                self._index["runs"] = self._index["runs"][: self.INDEX_LIMIT]
                self._save_index()

    def get_run(self, run_id: str) -> Run | None:
        """Get a run by ID."""
        data = read_json(self._runs_dir / f"{run_id}.json")
        if data is None:
            return None
        try:
            return Run(**data)
        except ValidationError as e:
            logger.warning(f"Skipping unreadable run record {run_id}: {e}")
            return None

    def require_run(self, run_id: str) -> Run:
        run = self.get_run(run_id)
        if run is None:
            raise NotFoundError(f"Run '{run_id}' not found", entity_type="run", entity_id=run_id)
        return run

    def list_runs(
        self,
        definition_id: str | None = None,
        status: RunStatus | None = None,
        limit: int = 50,
    ) -> list[Run]:
        """List recent runs, newest first, optionally filtered."""
        with self._lock:
            run_ids = list(self._index["runs"])

        runs = []
        for run_id in run_ids:
            run = self.get_run(run_id)
            if run is None:
                continue
            if definition_id is not None and run.definition_id != definition_id:
                continue
            if status is not None and run.status != status:
                continue
            runs.append(run)
            if len(runs) >= limit:
                break
        return runs

    def incomplete_runs(self) -> list[Run]:
        """Runs that never reached a terminal state, oldest first."""
        with self._lock:
            run_ids = list(self._index["runs"])

        runs = [run for run in map(self.get_run, reversed(run_ids)) if run is not None]
        return [run for run in runs if not run.is_terminal]

    # Approvals

    def save_approval(self, request: ApprovalRequest) -> None:
        with self._lock:
            atomic_write_text(
                self._approvals_dir / f"{request.request_id}.json",
                request.model_dump_json(indent=2),
            )

    def get_approval(self, request_id: str) -> ApprovalRequest | None:
        data = read_json(self._approvals_dir / f"{request_id}.json")
        if data is None:
            return None
        try:
            return ApprovalRequest(**data)
        except ValidationError:
            return None

    # Definitions

    def save_definition(self, definition: PipelineDefinition) -> bool:
        """
        Store a definition as the current version.

        A version already on file is moved to the end instead of duplicated.

        Returns:
            True if a new version was written
        """
        with self._lock:
            path = self._definitions_dir / f"{definition.id}.json"
            versions = read_json(path) or []
            ids = [PipelineDefinition(**v).version for v in versions]
            if ids and ids[-1] == definition.version:
                return False
            kept = [v for v, version in zip(versions, ids) if version != definition.version]
            is_new = len(kept) == len(versions)
            kept.append(definition.model_dump(mode="json"))
            atomic_write_text(path, json.dumps(kept, indent=2))
            return is_new

    def load_definitions(self) -> dict[str, list[PipelineDefinition]]:
        """Every stored definition version, keyed by id, oldest first."""
        definitions: dict[str, list[PipelineDefinition]] = {}
        for path in sorted(self._definitions_dir.glob("*.json")):
            versions = read_json(path)
            if not isinstance(versions, list):
                logger.warning(f"Skipping unreadable definition file {path}")
                continue
            try:
                loaded = [PipelineDefinition(**v) for v in versions]
            except (ValidationError, TypeError) as e:
                logger.warning(f"Skipping invalid definition file {path}: {e}")
                continue
            if loaded:
                definitions[loaded[0].id] = loaded
        return definitions
