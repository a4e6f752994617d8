# Copyright (c) Syntropy Systems
"""Background run execution with a waitable handle."""
from __future__ import annotations

import logging
from threading import Event, Thread
from typing import TYPE_CHECKING, Optional

from canonbench.coordinator import RunCoordinator, new_run_id
from canonbench.db import get_connection, get_run

if TYPE_CHECKING:
    from pathlib import Path

    from canonbench.config import CanonbenchConfig
    from canonbench.models.db import RunRecord, RunStatus, TargetType
    from canonbench.providers import ProviderRegistry

logger = logging.getLogger(__name__)


class RunHandle:
    """Handle to a run executing on a worker thread.

    Failures to start the run (for example ConfigurationError) are kept on
    the handle and re-raised by ``wait``.
    """

    run_id: str
    db_path: Path
    _done: Event
    _cancel_early: Event
    _result: Optional[RunRecord]
    _error: Optional[BaseException]
    _thread: Optional[Thread]

    def __init__(self, run_id: str, db_path: Path) -> None:
        self.run_id = run_id
        self.db_path = db_path
        self._done = Event()
        self._cancel_early = Event()
        self._result = None
        self._error = None
        self._thread = None

    def done(self) -> bool:
        """Whether the worker has finished (successfully or not)."""
        return self._done.is_set()

    def wait(self, timeout: Optional[float] = None) -> RunRecord:
        """Block until the run finishes and return its final record."""
        if not self._done.wait(timeout):
            msg = f"Run {self.run_id} did not finish within {timeout}s"
            raise TimeoutError(msg)
        if self._error is not None:
            raise self._error
        assert self._result is not None
        return self._result

    def exception(self, timeout: Optional[float] = None) -> Optional[BaseException]:
        """The error that ended the worker, or None."""
        if not self._done.wait(timeout):
            msg = f"Run {self.run_id} did not finish within {timeout}s"
            raise TimeoutError(msg)
        return self._error

    def status(self) -> Optional[RunStatus]:
        """Current status from the database, or None before the run row exists."""
        conn = get_connection(self.db_path)
        try:
            run = get_run(conn, self.run_id)
        finally:
            conn.close()
        return run.status if run is not None else None

    def cancel(self) -> bool:
        """Request cooperative cancellation.

        A cancel issued before the worker has created the run row is kept on
        the handle and applied as soon as the row exists, so no item runs.
        Returns False if the run is already terminal, or if the worker ended
        without creating it.
        """
        self._cancel_early.set()
        conn = get_connection(self.db_path)
        try:
            if get_run(conn, self.run_id) is None:
                return not self.done()
            return RunCoordinator(conn).request_cancel(self.run_id)
        finally:
            conn.close()

    def _run(
        self,
        registry: Optional[ProviderRegistry],
        config: Optional[CanonbenchConfig],
        kwargs: dict[str, object],
    ) -> None:
        conn = get_connection(self.db_path)
        try:
            coordinator = RunCoordinator(conn, registry=registry, config=config)

            def apply_early_cancel(run_id: str) -> None:
                if self._cancel_early.is_set():
                    coordinator.request_cancel(run_id)

            self._result = coordinator.start_run(  # type: ignore[arg-type]
                run_id=self.run_id, on_created=apply_early_cancel, **kwargs
            )
        except Exception as e:
            logger.warning("Run %s failed to start: %s", self.run_id, e)
            self._error = e
        finally:
            conn.close()
            self._done.set()


def submit(
    db_path: Path,
    model_id: int,
    run_type: TargetType,
    scope: str,
    scope_ids: dict[str, int],
    run_id: Optional[str] = None,
    campaign: Optional[str] = None,
    limit: Optional[int] = None,
    skip: Optional[int] = None,
    created_by: Optional[str] = None,
    registry: Optional[ProviderRegistry] = None,
    config: Optional[CanonbenchConfig] = None,
) -> RunHandle:
    """Start a run on a worker thread with its own database connection."""
    handle = RunHandle(run_id or new_run_id(), db_path)
    kwargs: dict[str, object] = {
        "model_id": model_id,
        "run_type": run_type,
        "scope": scope,
        "scope_ids": scope_ids,
        "campaign": campaign,
        "limit": limit,
        "skip": skip,
        "created_by": created_by,
    }
    thread = Thread(
        target=handle._run,
        args=(registry, config, kwargs),
        name=f"canonbench-run-{handle.run_id[:8]}",
        daemon=True,
    )
    handle._thread = thread
    thread.start()
    return handle
