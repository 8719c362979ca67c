import logging
from typing import Dict, Iterator, List

from .stage import Stage, StageLedger, StageResult, execute_stage

logger = logging.getLogger(__name__)


class StageRegistry:
    """
    Stages by id. Built once by the wiring code and passed to whatever
    needs to look stages up.
    """

    def __init__(self):
        self._stages: Dict[str, Stage] = {}

    def register(self, stage: Stage) -> Stage:
        if stage.stage_id in self._stages:
            raise ValueError(f"Stage '{stage.stage_id}' is already registered")
        self._stages[stage.stage_id] = stage
        return stage

    def get(self, stage_id: str) -> Stage:
        try:
            return self._stages[stage_id]
        except KeyError:
            raise KeyError(f"Unknown stage '{stage_id}'. Registered: {', '.join(self._stages)}") from None

    def ids(self) -> List[str]:
        return list(self._stages)

    def __contains__(self, stage_id: str) -> bool:
        return stage_id in self._stages

    def __iter__(self) -> Iterator[Stage]:
        return iter(self._stages.values())

    def __len__(self):
        return len(self._stages)


def run_stage(registry: StageRegistry, stage_id: str, ledger: StageLedger = None) -> StageResult:
    return execute_stage(registry.get(stage_id), ledger)


def run_pipeline(registry: StageRegistry, start_stage_id: str, ledger: StageLedger = None,
                 max_steps: int = 10) -> List[StageResult]:
    """
    Run a stage and keep following its next_stage hints.

    The chain stops at the first result that is not a success, when a
    stage names no successor, or after max_steps stages.
    """
    results = []
    stage_id = start_stage_id

    while stage_id and len(results) < max_steps:
        result = run_stage(registry, stage_id, ledger)
        results.append(result)

        if not result.success:
            break
        if result.next_stage and result.next_stage not in registry:
            logger.warning(f"Stage '{stage_id}' hinted unknown next stage '{result.next_stage}'")
            break
        stage_id = result.next_stage

    return results
