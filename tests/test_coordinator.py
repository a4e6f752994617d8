# Copyright (c) Syntropy Systems
"""Tests for run coordination."""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Any

import pytest

from canonbench import db
from canonbench.config import CanonbenchConfig
from canonbench.coordinator import RunCoordinator, resolve_target_ids
from canonbench.db import (
    get_chapter_aggregates,
    get_connection,
    get_result,
    get_results,
    get_run_items,
    get_run_logs,
    get_runs,
    request_cancel,
    upsert_model,
)
from canonbench.errors import AlignmentWarning, ConfigurationError
from canonbench.models.db import ModelRecord
from canonbench.models.transform import TransformProfile
from canonbench.profiles import assign_model_profile, resolve_model_output_profile, save_profile
from canonbench.providers import (
    MockProvider,
    ProviderConfig,
    ProviderRegistry,
    ProviderResponse,
    ProviderTarget,
)

GENESIS_1_1 = "In the beginning God created the heaven and the earth."


class CountingProvider(MockProvider):
    """Mock provider that records every call."""

    def __init__(self) -> None:
        self.calls: list[int] = []

    def generate(self, target: ProviderTarget, config: ProviderConfig) -> ProviderResponse:
        self.calls.append(target.target_id)
        return super().generate(target, config)


class BlankProvider:
    """Provider that always answers with nothing."""

    def generate(self, target: ProviderTarget, config: ProviderConfig) -> ProviderResponse:
        return ProviderResponse(response_raw="   ")


class CancellingProvider(MockProvider):
    """Requests cancellation of a run from another connection on first call."""

    def __init__(self, db_path: Path, run_id: str) -> None:
        self.db_path = db_path
        self.run_id = run_id
        self.calls: list[int] = []

    def generate(self, target: ProviderTarget, config: ProviderConfig) -> ProviderResponse:
        self.calls.append(target.target_id)
        if len(self.calls) == 1:
            conn = get_connection(self.db_path)
            try:
                request_cancel(conn, self.run_id)
            finally:
                conn.close()
        return super().generate(target, config)


def set_mock(conn: sqlite3.Connection, model_id: int = 1, **config: Any) -> None:
    upsert_model(conn, ModelRecord(model_id=model_id, provider="mock", config=config))


def make_coordinator(
    conn: sqlite3.Connection,
    provider: Any = None,
    **config: Any,
) -> RunCoordinator:
    registry = ProviderRegistry({"mock": provider or MockProvider()})
    return RunCoordinator(conn, registry=registry, config=CanonbenchConfig(**config))


def assert_nothing_written(conn: sqlite3.Connection) -> None:
    assert get_runs(conn) == []
    assert conn.execute("SELECT COUNT(*) FROM run_items").fetchone()[0] == 0
    assert conn.execute("SELECT COUNT(*) FROM run_logs").fetchone()[0] == 0


class TestStartRun:
    """Tests for a clean verse run."""

    def test_verse_run_completes(self, seeded_db: sqlite3.Connection) -> None:
        """Test every verse of a chapter is scored."""
        run = make_coordinator(seeded_db).start_run(
            model_id=1, run_type="verse", scope="chapter", scope_ids={"chapter_id": 101}
        )

        assert run.status == "completed"
        assert run.metrics.total == 3
        assert run.metrics.success == 3
        assert run.metrics.failed == 0
        assert run.metrics.duration_ms is not None
        assert run.completed_at is not None
        assert run.target_ids == [101001, 101002, 101003]

        results = get_results(seeded_db)
        assert len(results) == 3
        assert all(r.hash_match for r in results)
        assert all(r.run_id == run.run_id for r in results)

    def test_genesis_exact_match(self, seeded_db: sqlite3.Connection) -> None:
        """Test an identical recitation of Genesis 1:1."""
        make_coordinator(seeded_db).start_run(
            model_id=1, run_type="verse", scope="verse", scope_ids={"verse_id": 101001}
        )

        result = get_result(seeded_db, "default", 1, 101001)
        assert result is not None
        assert result.response_processed == GENESIS_1_1
        assert result.hash_match
        assert result.fidelity_score == 100
        assert result.diff.substitutions == 0
        assert result.diff.omissions == 0
        assert result.diff.additions == 0

    def test_items_and_logs(self, seeded_db: sqlite3.Connection) -> None:
        """Test item bookkeeping and the stage log."""
        run = make_coordinator(seeded_db).start_run(
            model_id=1, run_type="verse", scope="chapter", scope_ids={"chapter_id": 101}
        )

        items = get_run_items(seeded_db, run.run_id)
        assert [i.status for i in items] == ["success"] * 3
        assert [i.attempts for i in items] == [1, 1, 1]

        stages = [entry.stage for entry in get_run_logs(seeded_db, run.run_id)]
        assert stages[:3] == ["run", "resolve_targets", "run_items"]
        assert "execute" in stages
        assert "complete" in stages
        assert "aggregation" in stages

    def test_aggregates_after_completion(self, seeded_db: sqlite3.Connection) -> None:
        """Test a completed run rebuilds rollups."""
        make_coordinator(seeded_db).start_run(
            model_id=1, run_type="verse", scope="chapter", scope_ids={"chapter_id": 101}
        )
        rows = get_chapter_aggregates(seeded_db)
        assert len(rows) == 1
        assert rows[0].verse_count == 3
        assert rows[0].perfect_rate == 1.0

    def test_aggregation_can_be_disabled(self, seeded_db: sqlite3.Connection) -> None:
        """Test aggregate_on_complete=False skips the rollup."""
        make_coordinator(seeded_db, aggregate_on_complete=False).start_run(
            model_id=1, run_type="verse", scope="chapter", scope_ids={"chapter_id": 101}
        )
        assert get_chapter_aggregates(seeded_db) == []

    def test_campaign_from_config(self, seeded_db: sqlite3.Connection) -> None:
        """Test the configured default campaign tags results."""
        run = make_coordinator(seeded_db, default_campaign="nightly").start_run(
            model_id=1, run_type="verse", scope="verse", scope_ids={"verse_id": 101001}
        )
        assert run.campaign == "nightly"
        assert get_result(seeded_db, "nightly", 1, 101001) is not None

    def test_limit_and_skip(self, seeded_db: sqlite3.Connection) -> None:
        """Test skip/limit slice the resolved targets."""
        run = make_coordinator(seeded_db).start_run(
            model_id=1,
            run_type="verse",
            scope="book",
            scope_ids={"book_id": 1},
            limit=2,
            skip=1,
        )
        assert run.target_ids == [101002, 101003]
        assert run.scope_params == {"limit": 2, "skip": 1}


class TestIdempotency:
    """Tests for repeated starts with one run id."""

    def test_second_start_is_noop(self, seeded_db: sqlite3.Connection) -> None:
        """Test the provider is not called again and state is unchanged."""
        provider = CountingProvider()
        coordinator = make_coordinator(seeded_db, provider)
        kwargs: dict[str, Any] = {
            "model_id": 1,
            "run_type": "verse",
            "scope": "chapter",
            "scope_ids": {"chapter_id": 101},
            "run_id": "fixed-run",
        }

        first = coordinator.start_run(**kwargs)
        calls_after_first = len(provider.calls)
        logs_after_first = len(get_run_logs(seeded_db, "fixed-run"))
        second = coordinator.start_run(**kwargs)

        assert len(provider.calls) == calls_after_first == 3
        assert second.status == first.status == "completed"
        assert second.metrics == first.metrics
        assert len(get_run_items(seeded_db, "fixed-run")) == 3
        assert len(get_run_logs(seeded_db, "fixed-run")) == logs_after_first

    def test_existing_run_skips_setup(self, seeded_db: sqlite3.Connection) -> None:
        """Test an existing run is returned even if its model is now retired."""
        coordinator = make_coordinator(seeded_db)
        coordinator.start_run(
            model_id=1, run_type="verse", scope="verse", scope_ids={"verse_id": 101001}, run_id="r1"
        )
        upsert_model(seeded_db, ModelRecord(model_id=1, provider="mock", is_active=False))

        run = coordinator.start_run(
            model_id=1, run_type="verse", scope="verse", scope_ids={"verse_id": 101001}, run_id="r1"
        )
        assert run.status == "completed"


class TestSetupErrors:
    """Tests for configuration errors raised before anything is written."""

    @pytest.mark.parametrize(
        ("model_id", "run_type", "scope", "scope_ids", "message"),
        [
            (99, "verse", "verse", {"verse_id": 101001}, "not found"),
            (2, "verse", "verse", {"verse_id": 101001}, "not active"),
            (3, "verse", "verse", {"verse_id": 101001}, "No provider adapter"),
            (1, "verse", "chapter", {"chapter_id": 999}, "resolved to no"),
            (1, "chapter", "verse", {"verse_id": 101001}, "not valid"),
            (1, "verse", "chapter", {"book_id": 1}, "requires chapter_id"),
        ],
    )
    def test_setup_error(
        self,
        seeded_db: sqlite3.Connection,
        model_id: int,
        run_type: str,
        scope: str,
        scope_ids: dict[str, int],
        message: str,
    ) -> None:
        """Test each setup failure leaves no run behind."""
        with pytest.raises(ConfigurationError, match=message):
            make_coordinator(seeded_db).start_run(
                model_id=model_id, run_type=run_type, scope=scope, scope_ids=scope_ids  # type: ignore[arg-type]
            )
        assert_nothing_written(seeded_db)

    def test_no_model_output_profile(self, seeded_db: sqlite3.Connection) -> None:
        """Test a missing model_output profile aborts the start."""
        current = resolve_model_output_profile(seeded_db, 1)
        save_profile(seeded_db, current.model_copy(update={"is_active": False}))

        with pytest.raises(ConfigurationError):
            make_coordinator(seeded_db).start_run(
                model_id=1, run_type="verse", scope="verse", scope_ids={"verse_id": 101001}
            )
        assert_nothing_written(seeded_db)

    def test_resolve_target_ids_sorted(self, seeded_db: sqlite3.Connection) -> None:
        """Test chapter runs expand a bible into ascending chapter ids."""
        assert resolve_target_ids(seeded_db, "chapter", "bible", {"bible_id": 1001}) == [101, 102]

    @pytest.mark.parametrize(("limit", "skip"), [(-1, None), (None, -1), (2, -3)])
    def test_negative_slice_rejected(
        self,
        seeded_db: sqlite3.Connection,
        limit: int | None,
        skip: int | None,
    ) -> None:
        """Test a negative limit or skip is refused instead of slicing from the end."""
        with pytest.raises(ConfigurationError, match="must be zero or greater"):
            make_coordinator(seeded_db).start_run(
                model_id=1,
                run_type="verse",
                scope="chapter",
                scope_ids={"chapter_id": 101},
                limit=limit,
                skip=skip,
            )
        assert_nothing_written(seeded_db)

    def test_zero_limit_resolves_nothing(self, seeded_db: sqlite3.Connection) -> None:
        """Test limit=0 is accepted but leaves no targets."""
        with pytest.raises(ConfigurationError, match="resolved to no"):
            resolve_target_ids(seeded_db, "verse", "chapter", {"chapter_id": 101}, limit=0)


class TestItemFailures:
    """Tests for per-item error handling."""

    def test_failure_does_not_abort(self, seeded_db: sqlite3.Connection) -> None:
        """Test a provider error fails one item and the loop continues."""
        set_mock(seeded_db, errors={"101002": "rate limited"})

        run = make_coordinator(seeded_db).start_run(
            model_id=1, run_type="verse", scope="chapter", scope_ids={"chapter_id": 101}
        )

        assert run.status == "failed"
        assert run.metrics.success == 2
        assert run.metrics.failed == 1
        assert run.error_summary is not None
        assert run.error_summary.failed_count == 1
        assert run.error_summary.last_error == "rate limited"

        items = {i.target_id: i for i in get_run_items(seeded_db, run.run_id)}
        assert items[101002].status == "failed"
        assert items[101002].last_error == "rate limited"
        assert items[101003].status == "success"
        assert get_result(seeded_db, "default", 1, 101002) is None
        assert get_result(seeded_db, "default", 1, 101003) is not None

    def test_failed_run_skips_aggregation(self, seeded_db: sqlite3.Connection) -> None:
        """Test only completed runs trigger the rollup."""
        set_mock(seeded_db, errors={"101002": "rate limited"})
        make_coordinator(seeded_db).start_run(
            model_id=1, run_type="verse", scope="chapter", scope_ids={"chapter_id": 101}
        )
        assert get_chapter_aggregates(seeded_db) == []

    def test_empty_response_is_parse_failure(self, seeded_db: sqlite3.Connection) -> None:
        """Test a blank provider reply fails the item."""
        run = make_coordinator(seeded_db, BlankProvider()).start_run(
            model_id=1, run_type="verse", scope="verse", scope_ids={"verse_id": 101001}
        )
        assert run.status == "failed"
        item = get_run_items(seeded_db, run.run_id)[0]
        assert item.last_error == "Empty response from provider."

    def test_aggregation_failure_keeps_status(
        self, seeded_db: sqlite3.Connection, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test a broken rollup is logged as a warning only."""
        def broken(*args: Any, **kwargs: Any) -> None:
            raise sqlite3.OperationalError("disk full")

        monkeypatch.setattr(db, "replace_chapter_aggregates", broken)

        run = make_coordinator(seeded_db).start_run(
            model_id=1, run_type="verse", scope="verse", scope_ids={"verse_id": 101001}
        )
        assert run.status == "completed"
        warnings = [
            e for e in get_run_logs(seeded_db, run.run_id)
            if e.stage == "aggregation" and e.level == "warn"
        ]
        assert any("disk full" in e.message for e in warnings)


class TestRetry:
    """Tests for retrying failed items."""

    def test_retry_converges(self, seeded_db: sqlite3.Connection) -> None:
        """Test a retry after the fault clears completes the run."""
        set_mock(seeded_db, errors={"101002": "timeout"})
        coordinator = make_coordinator(seeded_db)
        run = coordinator.start_run(
            model_id=1, run_type="verse", scope="chapter", scope_ids={"chapter_id": 101}
        )
        assert run.status == "failed"

        # Still failing: retry is safe to repeat
        for _ in range(2):
            run = coordinator.retry_failed(run.run_id)
            assert run.status == "failed"
            assert run.metrics.failed == 1

        set_mock(seeded_db)
        run = coordinator.retry_failed(run.run_id)

        assert run.status == "completed"
        assert run.metrics.total == 3
        assert run.metrics.success == 3
        assert run.metrics.failed == 0
        assert run.error_summary is None

        attempts = {i.target_id: i.attempts for i in get_run_items(seeded_db, run.run_id)}
        assert attempts == {101001: 1, 101002: 4, 101003: 1}
        assert len(get_chapter_aggregates(seeded_db)) == 1

    def test_retry_only_replays_failed(self, seeded_db: sqlite3.Connection) -> None:
        """Test successful items are not sent to the provider again."""
        set_mock(seeded_db, errors={"101003": "boom"})
        provider = CountingProvider()
        coordinator = make_coordinator(seeded_db, provider)
        run = coordinator.start_run(
            model_id=1, run_type="verse", scope="chapter", scope_ids={"chapter_id": 101}
        )
        provider.calls.clear()

        coordinator.retry_failed(run.run_id)
        assert provider.calls == [101003]

    def test_retry_without_failures_is_noop(self, seeded_db: sqlite3.Connection) -> None:
        """Test a completed run is returned unchanged."""
        coordinator = make_coordinator(seeded_db)
        run = coordinator.start_run(
            model_id=1, run_type="verse", scope="verse", scope_ids={"verse_id": 101001}
        )
        again = coordinator.retry_failed(run.run_id)
        assert again == run

    def test_retry_unknown_run(self, seeded_db: sqlite3.Connection) -> None:
        """Test retrying a missing run raises ConfigurationError."""
        with pytest.raises(ConfigurationError):
            make_coordinator(seeded_db).retry_failed("nope")

    def test_retry_logs_execution_summary(self, seeded_db: sqlite3.Connection) -> None:
        """Test a retry writes the same execute summary as the first attempt."""
        set_mock(seeded_db, errors={"101002": "timeout"})
        coordinator = make_coordinator(seeded_db)
        run = coordinator.start_run(
            model_id=1, run_type="verse", scope="chapter", scope_ids={"chapter_id": 101}
        )
        first_attempt = len(get_run_logs(seeded_db, run.run_id))

        coordinator.retry_failed(run.run_id)

        entries = get_run_logs(seeded_db, run.run_id)[first_attempt:]
        assert [e.stage for e in entries][:2] == ["retry", "execute"]
        assert entries[1].message == "Executed 1 items: 0 succeeded, 1 failed."
        assert entries[1].level == "error"
        assert any(e.message == "Last error: timeout" for e in entries)


class TestCancellation:
    """Tests for cooperative cancellation."""

    def test_cancel_mid_run(self, seeded_db: sqlite3.Connection, db_path: Path) -> None:
        """Test a cancel issued during item one stops before item two."""
        provider = CancellingProvider(db_path, "cancel-me")
        run = make_coordinator(seeded_db, provider).start_run(
            model_id=1,
            run_type="verse",
            scope="chapter",
            scope_ids={"chapter_id": 101},
            run_id="cancel-me",
        )

        assert run.status == "cancelled"
        assert provider.calls == [101001]
        items = get_run_items(seeded_db, "cancel-me")
        assert [(i.status, i.attempts) for i in items] == [
            ("success", 1),
            ("pending", 0),
            ("pending", 0),
        ]
        assert run.metrics.success == 1
        assert get_chapter_aggregates(seeded_db) == []

    def test_cancel_terminal_run(self, seeded_db: sqlite3.Connection) -> None:
        """Test cancelling a finished run reports False."""
        coordinator = make_coordinator(seeded_db)
        run = coordinator.start_run(
            model_id=1, run_type="verse", scope="verse", scope_ids={"verse_id": 101001}
        )
        assert not coordinator.request_cancel(run.run_id)
        refreshed = coordinator.get_run(run.run_id)
        assert refreshed is not None
        assert not refreshed.cancel_requested

    def test_cancel_unknown_run(self, seeded_db: sqlite3.Connection) -> None:
        """Test cancelling a missing run raises ConfigurationError."""
        with pytest.raises(ConfigurationError):
            make_coordinator(seeded_db).request_cancel("nope")


class TestChapterRuns:
    """Tests for chapter-grain runs through the verse aligner."""

    def test_chapter_run_scores_every_verse(self, seeded_db: sqlite3.Connection) -> None:
        """Test one chapter call yields one result per canonical verse."""
        provider = CountingProvider()
        run = make_coordinator(seeded_db, provider).start_run(
            model_id=1, run_type="chapter", scope="book", scope_ids={"book_id": 1}
        )

        assert run.status == "completed"
        assert provider.calls == [101, 102]
        results = get_results(seeded_db)
        assert len(results) == 5
        assert all(r.hash_match and r.fidelity_score == 100 for r in results)

    def test_missing_verse_scores_zero(self, seeded_db: sqlite3.Connection) -> None:
        """Test a verse absent from the response is flagged, not diffed."""
        set_mock(
            seeded_db,
            overrides={
                "101": (
                    "Here you go:\n"
                    f"1 {GENESIS_1_1}\n"
                    "3 And God said, Let there be light: and there was light.\n"
                    "4 And God saw the light."
                )
            },
        )

        with pytest.warns(AlignmentWarning):
            run = make_coordinator(seeded_db).start_run(
                model_id=1, run_type="chapter", scope="chapter", scope_ids={"chapter_id": 101}
            )

        assert run.status == "completed"
        missing = get_result(seeded_db, "default", 1, 101002)
        assert missing is not None
        assert missing.fidelity_score == 0
        assert missing.diff.missing
        assert not missing.hash_match

        present = get_result(seeded_db, "default", 1, 101001)
        assert present is not None
        assert present.hash_match

        align_logs = [e for e in get_run_logs(seeded_db, run.run_id) if e.stage == "align"]
        assert any("Verse 4" in e.message for e in align_logs)

    def test_chapter_latency_split(self, seeded_db: sqlite3.Connection) -> None:
        """Test per-verse latency is an even share of the chapter call."""
        make_coordinator(seeded_db).start_run(
            model_id=1, run_type="chapter", scope="chapter", scope_ids={"chapter_id": 101}
        )
        latencies = {r.latency_ms for r in get_results(seeded_db)}
        assert len(latencies) == 1


class TestProfileAsymmetry:
    """Regression tests for diverging canonical and model-output profiles."""

    def test_unstripped_verse_number_costs_additions(self, seeded_db: sqlite3.Connection) -> None:
        """Test identical prose still mismatches when only one side strips numbers."""
        set_mock(seeded_db, mode="literal", literalResponse=f"1 {GENESIS_1_1}")
        coordinator = make_coordinator(seeded_db)

        coordinator.start_run(
            model_id=1, run_type="verse", scope="verse", scope_ids={"verse_id": 101001}
        )
        result = get_result(seeded_db, "default", 1, 101001)
        assert result is not None
        assert not result.hash_match
        assert result.diff.additions == 2
        assert result.diff.omissions == 0
        assert result.fidelity_score < 100

        save_profile(
            seeded_db,
            TransformProfile.model_validate(
                {
                    "profileId": 10,
                    "scope": "model_output",
                    "steps": [
                        {"order": 1, "type": "stripVerseNumbers", "params": {"patterns": [r"^\d+\s*"]}},
                        {"order": 2, "type": "collapseWhitespace"},
                        {"order": 3, "type": "trim"},
                    ],
                }
            ),
        )
        assign_model_profile(seeded_db, 1, 10)

        coordinator.start_run(
            model_id=1, run_type="verse", scope="verse", scope_ids={"verse_id": 101001}
        )
        result = get_result(seeded_db, "default", 1, 101001)
        assert result is not None
        assert result.hash_match
        assert result.fidelity_score == 100


class TestStoreErrors:
    """Tests for database errors raised while executing items."""

    @staticmethod
    def fail_once(monkeypatch: pytest.MonkeyPatch, name: str) -> None:
        original = getattr(db, name)
        calls: list[int] = []

        def flaky(*args: Any, **kwargs: Any) -> Any:
            calls.append(1)
            if len(calls) == 1:
                raise sqlite3.OperationalError("database is locked")
            return original(*args, **kwargs)

        monkeypatch.setattr(db, name, flaky)

    def test_item_bookkeeping_error_fails_one_item(
        self, seeded_db: sqlite3.Connection, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test a locked write on one item fails that item only."""
        self.fail_once(monkeypatch, "mark_item_running")
        coordinator = make_coordinator(seeded_db)

        run = coordinator.start_run(
            model_id=1, run_type="verse", scope="chapter", scope_ids={"chapter_id": 101}
        )

        assert run.status == "failed"
        assert run.error_summary is not None
        assert run.error_summary.last_error == "database is locked"
        statuses = {i.target_id: i.status for i in get_run_items(seeded_db, run.run_id)}
        assert statuses == {101001: "failed", 101002: "success", 101003: "success"}

        monkeypatch.undo()
        assert coordinator.retry_failed(run.run_id).status == "completed"

    def test_retry_bookkeeping_error_does_not_strand_run(
        self, seeded_db: sqlite3.Connection, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test a locked write during retry leaves the run retryable."""
        set_mock(seeded_db, errors={"101002": "timeout"})
        coordinator = make_coordinator(seeded_db)
        run = coordinator.start_run(
            model_id=1, run_type="verse", scope="chapter", scope_ids={"chapter_id": 101}
        )
        set_mock(seeded_db)
        self.fail_once(monkeypatch, "mark_item_running")

        run = coordinator.retry_failed(run.run_id)

        assert run.status == "failed"
        items = {i.target_id: i for i in get_run_items(seeded_db, run.run_id)}
        assert items[101002].status == "failed"
        assert items[101002].last_error == "database is locked"

        run = coordinator.retry_failed(run.run_id)
        assert run.status == "completed"
        assert run.metrics.success == 3

    def test_rejected_failure_write_counts_as_failed(
        self, seeded_db: sqlite3.Connection, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test items whose outcome could not be stored are retried later."""

        def locked(*args: Any, **kwargs: Any) -> None:
            raise sqlite3.OperationalError("database is locked")

        monkeypatch.setattr(db, "mark_item_finished", locked)
        coordinator = make_coordinator(seeded_db)

        run = coordinator.start_run(
            model_id=1, run_type="verse", scope="chapter", scope_ids={"chapter_id": 101}
        )

        assert run.status == "failed"
        assert run.metrics.failed == 3
        items = get_run_items(seeded_db, run.run_id)
        assert [i.status for i in items] == ["failed"] * 3
        assert items[0].last_error == "Item outcome could not be recorded."

        monkeypatch.undo()
        run = coordinator.retry_failed(run.run_id)
        assert run.status == "completed"
        assert [i.status for i in get_run_items(seeded_db, run.run_id)] == ["success"] * 3

    def test_error_escaping_retry_closes_run(
        self, seeded_db: sqlite3.Connection, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test a retry that dies mid-loop is closed as failed, not left running."""
        set_mock(seeded_db, errors={"101002": "timeout"})
        coordinator = make_coordinator(seeded_db)
        run = coordinator.start_run(
            model_id=1, run_type="verse", scope="chapter", scope_ids={"chapter_id": 101}
        )
        set_mock(seeded_db)
        self.fail_once(monkeypatch, "is_cancel_requested")

        with pytest.raises(sqlite3.OperationalError):
            coordinator.retry_failed(run.run_id)

        stranded = coordinator.get_run(run.run_id)
        assert stranded is not None
        assert stranded.status == "failed"
        assert stranded.completed_at is not None
        assert stranded.error_summary is not None
        assert stranded.error_summary.last_error == "database is locked"

        assert coordinator.retry_failed(run.run_id).status == "completed"

    def test_error_escaping_start_fails_unreached_items(
        self, seeded_db: sqlite3.Connection, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Test items a dead start never reached are left for retry."""
        self.fail_once(monkeypatch, "is_cancel_requested")
        provider = CountingProvider()
        coordinator = make_coordinator(seeded_db, provider)

        with pytest.raises(sqlite3.OperationalError):
            coordinator.start_run(
                model_id=1,
                run_type="verse",
                scope="chapter",
                scope_ids={"chapter_id": 101},
                run_id="dead-start",
            )

        run = coordinator.get_run("dead-start")
        assert run is not None
        assert run.status == "failed"
        items = get_run_items(seeded_db, "dead-start")
        assert [i.status for i in items] == ["failed"] * 3
        assert items[0].last_error == "Run failed: database is locked"
        assert provider.calls == []

        assert coordinator.retry_failed("dead-start").status == "completed"
        assert provider.calls == [101001, 101002, 101003]
