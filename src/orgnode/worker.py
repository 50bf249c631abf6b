"""Scan worker: runs the scanner over one partition of files.

Launched by the coordinator as a separate process:
    python -m orgnode.worker JOB_FILE RESULT_FILE

JOB_FILE holds {"config": ScanConfig, "files": [...]}. The worker writes one
ScanResult to RESULT_FILE when every file has been handled, then exits 0.
Nothing is streamed; a worker that dies leaves no result file behind.
"""

from __future__ import annotations

import json
import logging
import sys
import time
from pathlib import Path
from typing import TYPE_CHECKING

from orgnode.config import ScanConfig
from orgnode.models import Problem, ScanResult
from orgnode.scanner import scan_file

if TYPE_CHECKING:
    from collections.abc import Iterable

logger = logging.getLogger("orgnode.worker")


def run_job(files: Iterable[str], cfg: ScanConfig) -> ScanResult:
    """Scan every file; one bad file never aborts the batch."""
    result = ScanResult()
    for path in files:
        try:
            scan = scan_file(path, cfg)
        except Exception as exc:
            logger.exception("failed to scan: %s", path)
            result.errors.append(Problem(file=path, pos=0, message=f"internal error: {exc!r}"))
            continue
        if scan is None:
            result.missing.append(path)
        else:
            result.add(scan)
    result.finished_at = time.time()
    return result


def write_job(path: Path, files: list[str], cfg: ScanConfig) -> None:
    path.write_text(json.dumps({"config": cfg.to_dict(), "files": files}))


def read_result(path: Path) -> ScanResult:
    with path.open() as f:
        return ScanResult.from_dict(json.load(f))


def _write_result(path: Path, result: ScanResult) -> None:
    # Write to tmp then rename so the coordinator never reads a half-written file.
    tmp = path.with_suffix(".tmp")
    tmp.write_text(json.dumps(result.to_dict()))
    tmp.replace(path)


def main(argv: list[str] | None = None) -> int:
    args = sys.argv[1:] if argv is None else argv
    if len(args) != 2:
        print("usage: python -m orgnode.worker JOB_FILE RESULT_FILE", file=sys.stderr)
        return 2
    job_path, result_path = Path(args[0]), Path(args[1])

    logging.basicConfig(level=logging.WARNING, format="%(asctime)s %(name)s %(message)s")
    job = json.loads(job_path.read_text())
    cfg = ScanConfig.from_dict(job["config"])
    result = run_job(job["files"], cfg)
    _write_result(result_path, result)
    return 0


if __name__ == "__main__":
    sys.exit(main())
