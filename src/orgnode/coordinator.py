"""Scan scheduler: partition, launch workers, collect, merge once per cycle.

Cycle states:

    IDLE        nothing requested, no workers
    PENDING     a request is queued (workers of the previous cycle still
                live, or a timed-out cycle waiting for its retry)
    RUNNING     k workers launched, waiting for them to exit
    FINALIZING  all k results in, the merge is running

The coordinator never blocks on its own. request_full_scan() and
request_targeted_scan() launch (or queue) and return; the host calls poll()
from its loop to pick up exits, enforce the timeout and retry queued
requests. Pass sync=True, or call wait(), to pump until the index is current.

Two implementations share this interface:
    ProcessCoordinator   one `python -m orgnode.worker` process per partition
    InlineCoordinator    runs the scanner in this process (debugging)
"""

from __future__ import annotations

import enum
import logging
import os
import shutil
import subprocess
import sys
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from orgnode.errors import WorkerError
from orgnode.files import collect_files
from orgnode.models import ScanResult
from orgnode.partition import split_balanced
from orgnode.worker import read_result, run_job, write_job

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from orgnode.config import OrgNodeConfig, ScanConfig
    from orgnode.store import IndexStore

logger = logging.getLogger("orgnode.coordinator")

_WAIT_SLEEP = 0.01   # seconds between polls in the synchronous variant


class ScanState(enum.Enum):
    IDLE = "idle"
    PENDING = "pending"
    RUNNING = "running"
    FINALIZING = "finalizing"


@dataclass
class ScanRequest:
    """A full scan, or a targeted scan of a set of files."""

    full: bool = False
    files: set[str] = field(default_factory=set)

    def merge(self, other: ScanRequest) -> ScanRequest:
        # A full scan subsumes any targeted file list.
        if self.full or other.full:
            return ScanRequest(full=True)
        return ScanRequest(files=self.files | other.files)


class BaseCoordinator:
    """Queueing, timeout and merge logic shared by both implementations."""

    def __init__(
        self,
        store: IndexStore,
        scan_cfg: ScanConfig,
        file_lister: Callable[[], list[str]],
        *,
        workers: int = 1,
        timeout: float = 30.0,
        retry_interval: float = 1.0,
    ) -> None:
        self.store = store
        self.scan_cfg = scan_cfg
        self.file_lister = file_lister
        self.workers = max(1, workers)
        self.timeout = timeout
        self.retry_interval = retry_interval

        self.last_cycle_end: float | None = None   # earliest worker finish of the last merged cycle
        self.cycles_merged = 0
        self._pending: ScanRequest | None = None
        self._current: ScanRequest | None = None
        self._cycle = 0
        self._expected = 0
        self._results: list[ScanResult] = []
        self._started_at = 0.0
        self._next_attempt_at = 0.0
        self._finalizing = False
        self._finalize_callbacks: list[Callable[[ScanRequest], None]] = []

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def state(self) -> ScanState:
        if self._finalizing:
            return ScanState.FINALIZING
        if self._pending is not None:
            return ScanState.PENDING
        if self._current is not None:
            return ScanState.RUNNING
        return ScanState.IDLE

    @property
    def busy(self) -> bool:
        return self._current is not None or self._pending is not None

    def on_finalize(self, callback: Callable[[ScanRequest], None]) -> None:
        """Register a callback run after each successful merge."""
        self._finalize_callbacks.append(callback)

    def request_full_scan(self, *, sync: bool = False) -> None:
        self._request(ScanRequest(full=True), sync=sync)

    def request_targeted_scan(self, files: Iterable[str | Path], *, sync: bool = False) -> None:
        paths = {os.path.abspath(f) for f in files}
        if not paths:
            return
        self._request(ScanRequest(files=paths), sync=sync)

    def poll(self) -> ScanState:
        """Pick up worker exits, enforce the timeout, retry a queued request."""
        if self._current is not None:
            self._collect()
        if self._current is not None and time.monotonic() - self._started_at > self.timeout:
            self._cancel_stuck_cycle()
        if self._current is None and self._pending is not None and time.monotonic() >= self._next_attempt_at:
            self._try_launch()
        return self.state

    def wait(self, timeout: float | None = None) -> bool:
        """Busy-poll until no cycle is running or queued. False on timeout."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while self.busy:
            self.poll()
            if not self.busy:
                break
            if deadline is not None and time.monotonic() > deadline:
                return False
            time.sleep(_WAIT_SLEEP)
        return True

    def close(self) -> None:
        """Kill any live workers and drop queued requests."""
        self._pending = None
        if self._current is not None:
            self._discard_cycle()

    def __enter__(self) -> BaseCoordinator:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Cycle management
    # ------------------------------------------------------------------

    def _request(self, request: ScanRequest, *, sync: bool) -> None:
        self._pending = request if self._pending is None else self._pending.merge(request)
        if self._current is None and time.monotonic() >= self._next_attempt_at:
            self._try_launch()
        else:
            # poll() launches once the running cycle ends or the retry delay passes.
            logger.debug("request queued")
        if sync:
            self.wait()

    def _try_launch(self) -> None:
        if self._current is not None or self._pending is None:
            return
        request, self._pending = self._pending, None
        files = self.file_lister() if request.full else sorted(request.files)
        partitions = split_balanced(files, self.workers, self.store.elapsed_history())

        self._cycle += 1
        self._current = request
        self._expected = len(partitions)
        self._results = []
        self._started_at = time.monotonic()
        logger.info(
            "cycle %d: %s scan of %d file(s) on %d worker(s)",
            self._cycle, "full" if request.full else "targeted", len(files), len(partitions),
        )
        if not partitions:
            self._finalize()
            return
        self._launch(partitions)

    def _on_result(self, cycle: int, result: ScanResult) -> None:
        if cycle != self._cycle or self._current is None:
            logger.debug("dropping result from stale cycle %d", cycle)
            return
        self._results.append(result)
        if len(self._results) == self._expected:
            self._finalize()

    def _finalize(self) -> None:
        request = self._current
        assert request is not None
        merged = ScanResult()
        for result in sorted(self._results, key=lambda r: r.finished_at):
            merged.extend(result)
        if self._results:
            merged.finished_at = min(r.finished_at for r in self._results)
            self.last_cycle_end = merged.finished_at

        self._finalizing = True
        try:
            if request.full:
                self.store.apply_full_scan(merged)
            else:
                self.store.apply_incremental_scan(merged)
        finally:
            self._finalizing = False
            self._end_cycle()
        self.cycles_merged += 1
        self._next_attempt_at = 0.0
        for callback in self._finalize_callbacks:
            callback(request)
        if self._pending is not None:
            self._try_launch()

    def _cancel_stuck_cycle(self) -> None:
        request = self._current
        assert request is not None
        logger.warning(
            "cycle %d: %d/%d worker(s) reported after %.1fs, killing and retrying",
            self._cycle, len(self._results), self._expected, self.timeout,
        )
        self._discard_cycle()
        # Retry with the same input, folded into anything queued meanwhile.
        self._pending = request if self._pending is None else request.merge(self._pending)
        self._next_attempt_at = time.monotonic() + self.retry_interval

    def _discard_cycle(self) -> None:
        self._kill_workers()
        self._end_cycle()

    def _end_cycle(self) -> None:
        self._current = None
        self._results = []
        self._expected = 0
        self._cleanup()

    # Hooks for implementations ---------------------------------------

    def _launch(self, partitions: list[list[str]]) -> None:
        raise NotImplementedError

    def _collect(self) -> None:
        """Feed any finished workers' results to _on_result."""

    def _kill_workers(self) -> None:
        """Forcibly stop live workers of the current cycle."""

    def _cleanup(self) -> None:
        """Release per-cycle resources."""


class InlineCoordinator(BaseCoordinator):
    """Runs every partition in this process, one after another."""

    def _launch(self, partitions: list[list[str]]) -> None:
        cycle = self._cycle
        for files in partitions:
            self._on_result(cycle, run_job(files, self.scan_cfg))


def _worker_env() -> dict[str, str]:
    """Environment for workers: make sure this copy of orgnode is importable."""
    src = str(Path(__file__).resolve().parent.parent)
    parts = [src, *filter(None, os.environ.get("PYTHONPATH", "").split(os.pathsep))]
    return {**os.environ, "PYTHONPATH": os.pathsep.join(dict.fromkeys(parts))}


@dataclass
class _Worker:
    proc: subprocess.Popen[bytes]
    result_path: Path


class ProcessCoordinator(BaseCoordinator):
    """One worker process per partition; results come back as JSON files."""

    def __init__(
        self,
        store: IndexStore,
        scan_cfg: ScanConfig,
        file_lister: Callable[[], list[str]],
        *,
        log_dir: Path | None = None,
        **kwargs: float,
    ) -> None:
        super().__init__(store, scan_cfg, file_lister, **kwargs)  # type: ignore[arg-type]
        self.log_dir = log_dir
        self._live: list[_Worker] = []
        self._workdir: Path | None = None

    def _launch(self, partitions: list[list[str]]) -> None:
        self._workdir = Path(tempfile.mkdtemp(prefix=f"orgnode-{self._cycle}-"))
        stderr = None
        if self.log_dir is not None:
            self.log_dir.mkdir(parents=True, exist_ok=True)
            stderr = (self.log_dir / "worker.log").open("ab")
        try:
            for n, files in enumerate(partitions):
                job_path = self._workdir / f"job-{n}.json"
                result_path = self._workdir / f"result-{n}.json"
                write_job(job_path, files, self.scan_cfg)
                proc = subprocess.Popen(
                    [sys.executable, "-m", "orgnode.worker", str(job_path), str(result_path)],
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.DEVNULL,
                    stderr=stderr,
                    env=_worker_env(),
                )
                self._live.append(_Worker(proc=proc, result_path=result_path))
        finally:
            if stderr is not None:
                stderr.close()

    def _collect(self) -> None:
        cycle = self._cycle
        still_running: list[_Worker] = []
        exited: list[_Worker] = []
        for worker in self._live:
            (exited if worker.proc.poll() is not None else still_running).append(worker)
        self._live = still_running

        for worker in exited:
            try:
                result = self._read(worker)
            except WorkerError:
                # No result: the cycle stalls and the timeout retries it.
                logger.exception("worker %d failed", worker.proc.pid)
                continue
            self._on_result(cycle, result)
            if self._cycle != cycle:
                break

    def _read(self, worker: _Worker) -> ScanResult:
        code = worker.proc.returncode
        if code != 0:
            msg = f"worker exited with status {code}"
            raise WorkerError(msg)
        try:
            return read_result(worker.result_path)
        except (OSError, ValueError, KeyError) as exc:
            msg = f"unreadable result {worker.result_path}: {exc}"
            raise WorkerError(msg) from exc

    def _kill_workers(self) -> None:
        for worker in self._live:
            if worker.proc.poll() is None:
                worker.proc.kill()
            worker.proc.wait()
        self._live = []

    def _cleanup(self) -> None:
        if self._workdir is not None:
            shutil.rmtree(self._workdir, ignore_errors=True)
            self._workdir = None


def make_coordinator(store: IndexStore, cfg: OrgNodeConfig) -> BaseCoordinator:
    """Build the coordinator selected by [scan] inline in orgnode.toml."""
    sched = cfg.scheduler
    kwargs = {
        "workers": sched.worker_count,
        "timeout": sched.timeout,
        "retry_interval": sched.retry_interval,
    }
    if sched.inline:
        return InlineCoordinator(store, cfg.scan, lambda: collect_files(cfg), **kwargs)
    return ProcessCoordinator(store, cfg.scan, lambda: collect_files(cfg), log_dir=cfg.log_dir, **kwargs)
