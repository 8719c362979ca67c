"""
Stage lifecycle.

A stage is any object with a ``stage_id``, ``can_run() -> bool`` and
``run() -> StageResult``. Logging, timing, the run ledger and the
conversion of exceptions into failed results live in ``execute_stage``
so the stages themselves only describe their own work.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Protocol

from tripgraph.data.models import utcnow
from tripgraph.errors import GraphValidationError, PersistenceError

logger = logging.getLogger(__name__)

# Result codes
OK = 'OK'
FAILED = 'FAILED'
CANNOT_RUN = 'CANNOT_RUN'
NO_DATASET = 'NO_DATASET'
VALIDATION_FAILED = 'VALIDATION_FAILED'

SKIP_CODES = (CANNOT_RUN, NO_DATASET)


@dataclass
class StageResult:
    success: bool
    code: str = OK
    message: str = ''
    error: Optional[str] = None
    next_stage: Optional[str] = None
    data: Dict = field(default_factory=dict)
    duration_ms: int = 0

    @property
    def skipped(self) -> bool:
        return self.code in SKIP_CODES


class Stage(Protocol):
    stage_id: str

    def can_run(self) -> bool:
        ...

    def run(self) -> StageResult:
        ...


class StageLedger(Protocol):
    """Where stage executions are recorded."""

    def record_run(self, stage_id: str, started_at: datetime, finished_at: datetime,
                   result: StageResult) -> None:
        ...

    def last_successful_run(self, stage_id: str) -> Optional[datetime]:
        ...


class SqlStageLedger:
    """StageLedger backed by the stage_runs table."""

    def __init__(self, repositories):
        self.repositories = repositories

    def record_run(self, stage_id, started_at, finished_at, result):
        with self.repositories.session_scope() as repos:
            repos.stage_runs.record_run(
                stage_id, started_at, finished_at,
                success=result.success, code=result.code,
                message=result.error or result.message,
            )

    def last_successful_run(self, stage_id):
        with self.repositories.session_scope() as repos:
            return repos.stage_runs.last_successful_run(stage_id)


def skip_result(stage) -> StageResult:
    """The result a stage reports when can_run() is false."""
    describe = getattr(stage, 'skip_result', None)
    if describe is not None:
        return describe()
    return StageResult(success=False, code=CANNOT_RUN, message=f"{stage.stage_id} has nothing to do")


def execute_stage(stage: Stage, ledger: StageLedger = None) -> StageResult:
    """
    Run one stage with logging, timing and failure handling.

    A false can_run() is reported as a skip, not a failure. Exceptions
    raised by the stage become failed results; they never escape.
    """
    started_at = utcnow()
    start = time.perf_counter()
    logger.info(f"[{stage.stage_id}] starting")

    try:
        if not stage.can_run():
            result = skip_result(stage)
        else:
            result = stage.run()
    except GraphValidationError as e:
        logger.error(f"[{stage.stage_id}] {e}")
        result = StageResult(success=False, code=VALIDATION_FAILED, message=str(e), error=str(e))
    except Exception as e:
        logger.error(f"[{stage.stage_id}] failed: {e}", exc_info=True)
        result = StageResult(success=False, code=FAILED, message=f"{stage.stage_id} failed", error=str(e))

    result.duration_ms = int((time.perf_counter() - start) * 1000)

    if result.success:
        logger.info(f"[{stage.stage_id}] {result.code} in {result.duration_ms}ms: {result.message}")
    elif result.skipped:
        logger.info(f"[{stage.stage_id}] skipped ({result.code}): {result.message}")
    else:
        logger.warning(f"[{stage.stage_id}] {result.code} in {result.duration_ms}ms: {result.error}")

    if ledger is not None:
        try:
            ledger.record_run(stage.stage_id, started_at, utcnow(), result)
        except PersistenceError as e:
            logger.error(f"[{stage.stage_id}] could not record run: {e}")

    return result


class MinIntervalGate:
    """
    Wraps a stage so it can only run once per interval.

    The last successful run is read from the ledger, so the cooldown holds
    across processes.
    """

    def __init__(self, stage: Stage, ledger: StageLedger, min_interval_seconds: int,
                 clock: Callable[[], datetime] = utcnow):
        self.stage = stage
        self.ledger = ledger
        self.min_interval = timedelta(seconds=min_interval_seconds)
        self.clock = clock

    @property
    def stage_id(self) -> str:
        return self.stage.stage_id

    @property
    def next_stage(self) -> Optional[str]:
        return getattr(self.stage, 'next_stage', None)

    def remaining(self) -> timedelta:
        last_run = self.ledger.last_successful_run(self.stage_id)
        if last_run is None:
            return timedelta(0)
        return max(timedelta(0), last_run + self.min_interval - self.clock())

    def can_run(self) -> bool:
        if self.remaining() > timedelta(0):
            return False
        return self.stage.can_run()

    def skip_result(self) -> StageResult:
        remaining = self.remaining()
        if remaining > timedelta(0):
            return StageResult(
                success=False, code=CANNOT_RUN,
                message=f"Minimum interval not elapsed, {int(remaining.total_seconds())}s remaining",
            )
        return skip_result(self.stage)

    def run(self) -> StageResult:
        return self.stage.run()
