"""Tests for run store persistence."""

from pathlib import Path

from pipeline_promoter.core.models import (
    ApprovalDisposition,
    ApprovalRequest,
    PipelineDefinition,
    Run,
    RunStatus,
    StageSpec,
)
from pipeline_promoter.state import RunStore


def _run(run_id: str, definition_id: str = "frontend", status: RunStatus = RunStatus.PENDING) -> Run:
    return Run(
        run_id=run_id,
        definition_id=definition_id,
        definition_version="abc123",
        stages=[StageSpec(name="build", kind="build")],
        status=status,
    )


def _approval(request_id: str = "apr_1") -> ApprovalRequest:
    return ApprovalRequest(
        request_id=request_id,
        run_id="run_1",
        stage_name="approve",
        created_at="2026-01-15T00:00:00+00:00",
        deadline="2026-01-15T00:15:00+00:00",
        timeout_seconds=900,
    )


class TestRunStore:
    """Tests for RunStore."""

    def test_init_creates_dirs(self, temp_dir: Path) -> None:
        """RunStore creates its storage directories."""
        store = RunStore(temp_dir / "state")
        assert (temp_dir / "state" / "runs").is_dir()
        assert (temp_dir / "state" / "approvals").is_dir()
        assert (temp_dir / "state" / "definitions").is_dir()
        assert store.state_dir == temp_dir / "state"

    def test_save_and_get_run(self, store: RunStore) -> None:
        """Saved runs round-trip through disk."""
        run = _run("run_1")
        store.save_run(run)

        loaded = store.get_run("run_1")
        assert loaded == run
        assert store.get_run("run_missing") is None

    def test_save_overwrites(self, store: RunStore) -> None:
        """Saving again commits the latest state."""
        run = _run("run_1")
        store.save_run(run)
        run.status = RunStatus.RUNNING
        store.save_run(run)

        assert store.get_run("run_1").status == RunStatus.RUNNING
        assert len(store.list_runs()) == 1

    def test_no_temp_files_left(self, store: RunStore, temp_dir: Path) -> None:
        """Atomic writes leave only the final record behind."""
        store.save_run(_run("run_1"))
        assert sorted(p.name for p in (temp_dir / "state" / "runs").iterdir()) == ["run_1.json"]

    def test_corrupt_record_ignored(self, store: RunStore, temp_dir: Path) -> None:
        """An unreadable record is treated as missing."""
        (temp_dir / "state" / "runs" / "run_bad.json").write_text("{not json")
        assert store.get_run("run_bad") is None

    def test_list_runs_newest_first(self, store: RunStore) -> None:
        """Listing is newest first with filters and a limit."""
        store.save_run(_run("run_1"))
        store.save_run(_run("run_2", definition_id="api"))
        store.save_run(_run("run_3", status=RunStatus.SUCCEEDED))

        assert [r.run_id for r in store.list_runs()] == ["run_3", "run_2", "run_1"]
        assert [r.run_id for r in store.list_runs(definition_id="api")] == ["run_2"]
        assert [r.run_id for r in store.list_runs(status=RunStatus.SUCCEEDED)] == ["run_3"]
        assert len(store.list_runs(limit=2)) == 2

    def test_incomplete_runs_oldest_first(self, store: RunStore) -> None:
        """Non-terminal runs are returned for resumption, oldest first."""
        store.save_run(_run("run_1", status=RunStatus.RUNNING))
        store.save_run(_run("run_2", status=RunStatus.FAILED))
        store.save_run(_run("run_3", status=RunStatus.AWAITING_APPROVAL))

        assert [r.run_id for r in store.incomplete_runs()] == ["run_1", "run_3"]

    def test_stores_are_independent(self, temp_dir: Path) -> None:
        """Stores over different directories share no records."""
        first = RunStore(temp_dir / "one")
        second = RunStore(temp_dir / "two")
        first.save_run(_run("run_1"))

        assert [r.run_id for r in first.list_runs()] == ["run_1"]
        assert second.list_runs() == []

    def test_index_survives_reload(self, store: RunStore, temp_dir: Path) -> None:
        """A new store over the same directory lists the same runs."""
        store.save_run(_run("run_1"))
        store.save_run(_run("run_2"))

        reloaded = RunStore(temp_dir / "state")
        assert [r.run_id for r in reloaded.list_runs()] == ["run_2", "run_1"]


class TestApprovals:
    """Tests for approval request records."""

    def test_save_and_get(self, store: RunStore) -> None:
        """Approval requests are stored by id and updated in place."""
        request = _approval()
        store.save_approval(request)
        assert store.get_approval("apr_1") == request

        decided = request.model_copy(
            update={"disposition": ApprovalDisposition.APPROVED, "decided_by": "alice"}
        )
        store.save_approval(decided)
        assert store.get_approval("apr_1").disposition == ApprovalDisposition.APPROVED
        assert store.get_approval("apr_missing") is None


class TestDefinitions:
    """Tests for definition version records."""

    def _definition(self, description: str = "") -> PipelineDefinition:
        return PipelineDefinition(
            id="frontend", description=description, stages=[{"name": "build", "kind": "build"}]
        )

    def test_versions_appended(self, store: RunStore) -> None:
        """Each new version is appended; the current one is unchanged."""
        assert store.save_definition(self._definition("v1"))
        assert not store.save_definition(self._definition("v1"))
        assert store.save_definition(self._definition("v2"))

        versions = store.load_definitions()["frontend"]
        assert [d.description for d in versions] == ["v1", "v2"]

    def test_old_version_moved_to_end(self, store: RunStore) -> None:
        """Saving an older version again makes it current without duplicating it."""
        store.save_definition(self._definition("v1"))
        store.save_definition(self._definition("v2"))

        assert not store.save_definition(self._definition("v1"))
        versions = store.load_definitions()["frontend"]
        assert [d.description for d in versions] == ["v2", "v1"]
