"""
Pipeline Orchestrator

Wires the stages to their collaborators and runs them by id. Each stage
names the stage that should follow it; ``--all`` keeps following those
hints until a stage is skipped, fails, or names no successor.

Usage:
    python -m tripgraph.pipeline --all --init-db
    python -m tripgraph.pipeline --stage graph-assembly
"""

import argparse
import logging
import sys
from datetime import datetime
from typing import List

from tripgraph.config.config_main import (
    db_config, redis_config, source_config, pipeline_config, storage_config
)
from tripgraph.data.cache_broker import create_redis_client
from tripgraph.data.db_broker import ConnectionBroker
from tripgraph.data.graph_store import HybridGraphStore
from tripgraph.data.models import initialize_database
from tripgraph.data.repositories import SqlRepositories
from tripgraph.data.source.dataset_client import DatasetSourceClient, FileDatasetSourceClient
from tripgraph.data.storage import LocalObjectStorage
from tripgraph.geo.cities import CityDirectory, default_directory

from .connectivity import ConnectivitySynthesisStage
from .dataset_sync import DatasetSyncStage
from .graph_assembly import GraphAssemblyStage
from .registry import StageRegistry, run_pipeline, run_stage
from .stage import MinIntervalGate, SqlStageLedger, StageLedger, StageResult

logger = logging.getLogger(__name__)

FIRST_STAGE = DatasetSyncStage.stage_id


def build_registry(repositories: SqlRepositories, graph_store: HybridGraphStore, source_client,
                   ledger: StageLedger, storage: LocalObjectStorage = None,
                   directory: CityDirectory = None, config=pipeline_config) -> StageRegistry:
    """Construct every stage once and register it."""
    registry = StageRegistry()

    registry.register(MinIntervalGate(
        DatasetSyncStage(source_client, repositories, storage),
        ledger,
        config.sync_min_interval_seconds,
    ))
    registry.register(ConnectivitySynthesisStage(
        repositories,
        directory or default_directory(),
        hub_city=config.hub_city,
        flight_days=config.virtual_flight_days,
        flight_slots=config.virtual_flight_slots,
        default_price=config.virtual_default_price,
        average_speed_kmh=config.virtual_average_speed_kmh,
        min_duration_minutes=config.virtual_min_duration_minutes,
        full_mesh_max_stops=config.full_mesh_max_stops,
        show_progress=config.show_progress,
    ))
    registry.register(GraphAssemblyStage(repositories, graph_store, storage))

    return registry


def create_source_client(use_files: bool = False, data_dir: str = None):
    if use_files or not source_config.base_url:
        return FileDatasetSourceClient(data_dir or source_config.data_dir)
    return DatasetSourceClient(source_config)


def print_summary(results: List[StageResult], stage_ids: List[str]):
    print(f"\n{'='*70}")
    print("PIPELINE SUMMARY")
    print(f"{'='*70}")
    for stage_id, result in zip(stage_ids, results):
        marker = '✓' if result.success else ('-' if result.skipped else '✗')
        detail = result.error or result.message
        print(f"  {marker} {stage_id:<24} {result.code:<18} {result.duration_ms:>7}ms  {detail}")
    print(f"{'='*70}\n")


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description='tripgraph dataset-to-graph pipeline',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Create the schema and run sync -> synthesis -> assembly
  python -m tripgraph.pipeline --init-db --all

  # Run a single stage
  python -m tripgraph.pipeline --stage connectivity-synthesis

  # Sync from local JSON files instead of the OData source
  python -m tripgraph.pipeline --all --from-files --data-dir data/mock
        """
    )

    target = parser.add_mutually_exclusive_group()
    target.add_argument(
        '--stage',
        type=str,
        default=None,
        help='Run one stage by id (dataset-sync, connectivity-synthesis, graph-assembly)'
    )
    target.add_argument(
        '--all',
        action='store_true',
        help='Run from dataset-sync and follow each stage\'s next-stage hint'
    )
    parser.add_argument(
        '--init-db',
        action='store_true',
        help='Create missing tables before running'
    )
    parser.add_argument(
        '--reset-db',
        action='store_true',
        help='Drop and recreate all tables before running (DESTRUCTIVE)'
    )
    parser.add_argument(
        '--from-files',
        action='store_true',
        help='Read stops.json/routes.json/flights.json instead of the OData source'
    )
    parser.add_argument(
        '--data-dir',
        type=str,
        default=None,
        help='Directory for --from-files (default: DATASET_SOURCE_DIR)'
    )
    parser.add_argument(
        '--verbose',
        action='store_true',
        help='Debug logging'
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    if not args.stage and not args.all and not (args.init_db or args.reset_db):
        parser.error('nothing to do: pass --stage ID, --all, --init-db or --reset-db')

    print(f"\n{'#'*70}")
    print("# TRIPGRAPH - DATASET TO GRAPH PIPELINE")
    print(f"# Started at: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print(f"{'#'*70}\n")

    broker = ConnectionBroker.from_config(db_config)
    if args.init_db or args.reset_db:
        initialize_database(broker.get_engine(), drop_existing=args.reset_db)

    if not args.stage and not args.all:
        return

    repositories = SqlRepositories(broker)
    ledger = SqlStageLedger(repositories)
    graph_store = HybridGraphStore(broker, create_redis_client(redis_config))
    storage = LocalObjectStorage(storage_config.backup_dir) if storage_config.backup_dir else None

    registry = build_registry(
        repositories,
        graph_store,
        create_source_client(args.from_files, args.data_dir),
        ledger,
        storage,
    )

    if args.all:
        results = run_pipeline(registry, FIRST_STAGE, ledger)
        stage_ids = [FIRST_STAGE]
        for result in results[:-1]:
            stage_ids.append(result.next_stage)
    else:
        try:
            results = [run_stage(registry, args.stage, ledger)]
        except KeyError as e:
            parser.error(str(e))
        stage_ids = [args.stage]

    print_summary(results, stage_ids)

    if any(not r.success and not r.skipped for r in results):
        sys.exit(1)
