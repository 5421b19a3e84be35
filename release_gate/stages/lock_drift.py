"""
Lock Drift Detector
===================
Snapshots the dependency lock file before any build/test work and compares
it byte for byte after the tests pass.

Any difference (a changed version, a reordered entry, one trailing space, the
file appearing or disappearing) is a ``lock_drift`` failure, classified
separately from test failures: it means running the build silently mutated
the declared dependencies. The drift is reported with a unified diff in the
stage log and is never merged back.
"""
import difflib
import os
import shutil
import logging
from typing import Optional

from release_gate.core.constants import STAGE_LOCK_DRIFT
from release_gate.executor.process_runner import write_log
from release_gate.models.stage_result import FailureKind, StageFailure, StageResult
from release_gate.pipeline.context import PipelineContext
from release_gate.stages.stage_helpers import build_result, utcnow

logger = logging.getLogger(__name__)

BACKUP_SUFFIX = ".bak"
_DIFF_CONTEXT = 3


def _read_bytes(path: str) -> Optional[bytes]:
    try:
        with open(path, "rb") as f:
            return f.read()
    except FileNotFoundError:
        return None


class LockSnapshot:
    """
    Byte-exact copy of a lock file.

    ``content`` is None when the lock file did not exist at snapshot time.
    The copy is also written next to the original as ``<lock>.bak`` so it
    can be inspected after the run.
    """

    def __init__(self, lock_path: str, content: Optional[bytes], backup_path: Optional[str] = None) -> None:
        self.lock_path = lock_path
        self.content = content
        self.backup_path = backup_path

    @classmethod
    def take(cls, lock_path: str, write_backup: bool = True) -> "LockSnapshot":
        content = _read_bytes(lock_path)
        backup_path = None
        if content is not None and write_backup:
            backup_path = lock_path + BACKUP_SUFFIX
            shutil.copyfile(lock_path, backup_path)
        logger.info(
            "Lock snapshot taken: %s (%s)",
            lock_path, f"{len(content)} bytes" if content is not None else "absent",
        )
        return cls(lock_path, content, backup_path)

    def matches(self, current: Optional[bytes]) -> bool:
        return current == self.content

    def diff(self, current: Optional[bytes]) -> str:
        """Unified diff from the snapshot to ``current`` for diagnosis."""
        name = os.path.basename(self.lock_path)
        before = (self.content or b"").decode("utf-8", errors="replace").splitlines(keepends=True)
        after = (current or b"").decode("utf-8", errors="replace").splitlines(keepends=True)
        text = "".join(difflib.unified_diff(
            before, after,
            fromfile=f"{name}{BACKUP_SUFFIX}", tofile=name, n=_DIFF_CONTEXT,
        ))
        if not text:
            # same text after decoding, so the bytes differ in encoding or line endings
            return f"{name}: byte-level difference (encoding or line endings)\n"
        return text


def snapshot_lock_file(ctx: PipelineContext) -> LockSnapshot:
    return LockSnapshot.take(ctx.lock_path)


def check_lock_drift(ctx: PipelineContext, snapshot: LockSnapshot) -> StageResult:
    """Compare the live lock file with ``snapshot``."""
    started = utcnow()
    current = _read_bytes(ctx.lock_path)
    log_path = ctx.log_path(STAGE_LOCK_DRIFT)

    if snapshot.matches(current):
        write_log(log_path, "", f"{ctx.ci.lock_file} unchanged\n")
        logger.info("Lock file %s unchanged", ctx.ci.lock_file)
        return build_result(ctx, STAGE_LOCK_DRIFT, started)

    if snapshot.content is None:
        message = f"{ctx.ci.lock_file} was created during the run"
    elif current is None:
        message = f"{ctx.ci.lock_file} was removed during the run"
    else:
        message = f"{ctx.ci.lock_file} changed during the run"

    report = snapshot.diff(current)
    write_log(log_path, f">>> {message}\n", report)
    return build_result(
        ctx, STAGE_LOCK_DRIFT, started,
        failure=StageFailure(kind=FailureKind.LOCK_DRIFT, message=message),
        log_excerpt=report,
    )
