"""
tripgraph pipeline

Stages run in order Sync -> Synthesis -> Assembly, each gated by its own
can_run() and chained through the next-stage id it reports.

Components:
    - stage: StageResult, execute_stage, MinIntervalGate, stage-run ledger
    - registry: StageRegistry and the next-stage runner
    - dataset_sync: upstream snapshot diff and persistence
    - connectivity: virtual stops, routes and flights for reference cities
    - graph_assembly: graph build, validation and publication
    - orchestrator: wiring and CLI
"""

from .stage import StageResult, execute_stage
from .registry import StageRegistry, run_pipeline

__all__ = ['StageResult', 'execute_stage', 'StageRegistry', 'run_pipeline']
