import pytest  # type: ignore

from blueprint_sync.modules.reconciliation.progress_tracker import (
    build_completion_message,
    calculate_phase_progress,
)


class TestCalculatePhaseProgress:
    @pytest.mark.parametrize(
        "done,total,expected",
        [(0, 10, 25), (5, 10, 60), (10, 10, 95), (12, 10, 95), (0, 0, 95)],
    )
    def test_maps_into_band(self, done, total, expected):
        assert calculate_phase_progress(done, total, 25, 95) == expected


class TestCompletionMessage:
    def test_dry_run_message_says_nothing_was_deleted(self):
        assert "nothing deleted" in build_completion_message(True, 3, 1, 0)

    def test_live_message_counts_removals(self):
        assert "2 soft-deleted" in build_completion_message(False, 3, 1, 2)


class TestProgressTracker:
    @pytest.mark.asyncio
    async def test_init_then_update_merges_fields(self, progress):
        await progress.init_job("p1", "checkEmbeds", dry_run=True)

        record = await progress.update("p1", {"phase": "backup", "percent": 5, "status": "Backing up"})

        assert record["phase"] == "backup"
        assert record["percent"] == 5
        assert record["dryRun"] is True
        assert record["jobType"] == "checkEmbeds"

    @pytest.mark.asyncio
    async def test_percent_never_decreases(self, progress):
        await progress.init_job("p1", "checkEmbeds")
        await progress.update("p1", {"phase": "processing", "percent": 60})

        record = await progress.update("p1", {"phase": "processing", "percent": 40})

        assert record["percent"] == 60

    @pytest.mark.asyncio
    async def test_phase_never_moves_backwards(self, progress):
        await progress.init_job("p1", "checkEmbeds")
        await progress.update("p1", {"phase": "processing", "percent": 30})

        record = await progress.update("p1", {"phase": "backup"})

        assert record["phase"] == "processing"

    @pytest.mark.asyncio
    async def test_error_from_any_phase_keeps_percent(self, progress):
        await progress.init_job("p1", "checkEmbeds")
        await progress.update("p1", {"phase": "collecting", "percent": 20})

        record = await progress.update("p1", {"phase": "error", "error": "boom"})

        assert record["phase"] == "error"
        assert record["percent"] == 20

    @pytest.mark.asyncio
    @pytest.mark.parametrize("terminal", ["complete", "error"])
    async def test_terminal_phase_is_absorbing(self, progress, terminal):
        await progress.init_job("p1", "checkEmbeds")
        await progress.update("p1", {"phase": terminal, "percent": 100 if terminal == "complete" else 10})

        record = await progress.update("p1", {"phase": "processing", "percent": 50})

        assert record["phase"] == terminal

    @pytest.mark.asyncio
    async def test_percent_is_capped(self, progress):
        record = await progress.update("p1", {"phase": "complete", "percent": 250})

        assert record["percent"] == 100

    @pytest.mark.asyncio
    async def test_storage_failure_is_not_raised(self, store, progress):
        store.fail_writes.add("progress:")

        assert await progress.update("p1", {"phase": "backup", "percent": 5}) is None

    @pytest.mark.asyncio
    async def test_missing_progress_id_is_ignored(self, progress):
        assert await progress.update(None, {"percent": 5}) is None
