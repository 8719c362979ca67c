"""
Dataset Sync Stage

Pulls the full upstream snapshot, and when its content hash differs
from the latest dataset, stores the stops/routes/flights and a new
(inactive) Dataset record in a single transaction.
"""

import logging

from tripgraph.data.records import DatasetInfo
from tripgraph.geo.ids import hash_payload

from .stage import OK, StageResult

logger = logging.getLogger(__name__)

STAGE_ID = 'dataset-sync'


def dataset_version_for(ordinal: int, source_hash: str) -> str:
    return f"v{ordinal}-{source_hash[:12]}"


class DatasetSyncStage:
    """Fetch, diff by hash, persist."""

    stage_id = STAGE_ID
    next_stage = 'connectivity-synthesis'

    def __init__(self, source_client, repositories, storage=None):
        self.source_client = source_client
        self.repositories = repositories
        self.storage = storage

    def can_run(self) -> bool:
        # Cooldown is applied by MinIntervalGate in the wiring
        return True

    def run(self) -> StageResult:
        payload = self.source_client.fetch_all()
        canonical = payload.canonical()
        source_hash = hash_payload(canonical)

        with self.repositories.session_scope() as repos:
            latest = repos.datasets.get_latest_dataset()
            if latest is not None and latest.source_hash == source_hash:
                logger.info(f"Upstream payload unchanged (hash {source_hash[:12]}), dataset {latest.version} stays current")
                return StageResult(
                    success=True,
                    code=OK,
                    message='No changes detected',
                    next_stage=self.next_stage,
                    data={'changed': False, 'datasetVersion': latest.version},
                )

            if repos.datasets.exists_by_source_hash(source_hash):
                logger.info(f"Upstream payload matches an earlier dataset (hash {source_hash[:12]}), storing it as a new version")

            version = dataset_version_for(repos.datasets.count_datasets() + 1, source_hash)
            logger.info(f"Persisting dataset {version}: {len(payload.stops)} stops, "
                        f"{len(payload.routes)} routes, {len(payload.flights)} flights")

            # Parents before children, entities before the Dataset row
            stops_saved = repos.stops.save_real_stops_batch(version, payload.stops)
            routes_saved = repos.routes.save_routes_batch(version, payload.routes)
            flights_saved = repos.flights.save_flights_batch(version, payload.flights)

            dataset = repos.datasets.save_dataset(DatasetInfo(
                version=version,
                source_hash=source_hash,
                stops_count=stops_saved,
                routes_count=routes_saved,
                flights_count=flights_saved,
                is_active=False,
            ))

        self._upload_snapshot(dataset.version, canonical)

        return StageResult(
            success=True,
            code=OK,
            message='Dataset sync completed',
            next_stage=self.next_stage,
            data={
                'changed': True,
                'datasetVersion': dataset.version,
                'stops': stops_saved,
                'routes': routes_saved,
                'flights': flights_saved,
                'skipped': dict(payload.skipped),
            },
        )

    def _upload_snapshot(self, version: str, canonical) -> None:
        if self.storage is None:
            return
        try:
            self.storage.put_json(f"datasets/{version}.json", canonical)
        except OSError as e:
            logger.warning(f"Dataset snapshot upload failed for {version}: {e}")
