import json
import logging
import os
import time
from typing import Dict, List

import requests

from tripgraph.data.records import SourcePayload
from tripgraph.data.source.payload import build_payload
from tripgraph.errors import DatasetFetchError

logger = logging.getLogger(__name__)


class DatasetSourceClient:
    """HTTP client for the upstream OData transit feed."""

    COLLECTIONS = ("Stops", "Routes", "Flights")

    def __init__(self, config, session: requests.Session = None, backoff_base: float = 1.0):
        self.base_url = config.base_url.rstrip("/")
        self.api_key = config.api_key
        self.timeout = config.timeout
        self.max_retries = max(1, config.max_retries)
        self.backoff_base = backoff_base
        self.http = session or requests.Session()

        if not self.base_url:
            raise ValueError("A dataset source base URL must be provided in the configuration.")

    def fetch_all(self) -> SourcePayload:
        """
        Fetch the full stops/routes/flights snapshot.

        Returns:
            Normalized SourcePayload

        Raises:
            DatasetFetchError: on any transport, HTTP or parse failure
        """
        stops, routes, flights = (self.get_collection(name) for name in self.COLLECTIONS)
        logger.info(f"Fetched {len(stops)} stops, {len(routes)} routes, {len(flights)} flights from {self.base_url}")
        return build_payload(stops, routes, flights)

    def get_collection(self, name: str) -> List[Dict]:
        """Read every page of an OData collection."""
        items: List[Dict] = []
        url = f"{self.base_url}/{name}"
        params = {"$format": "json"}

        while url:
            body = self._execute_request(url, params)
            if isinstance(body, list):
                items.extend(body)
                break
            if not isinstance(body, dict) or not isinstance(body.get("value"), list):
                raise DatasetFetchError(f"Unexpected response shape for collection '{name}'")
            items.extend(body["value"])
            # nextLink already carries the query string
            url = body.get("@odata.nextLink")
            params = None

        return items

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _execute_request(self, url: str, params: Dict = None):
        for attempt in range(self.max_retries):
            try:
                response = self.http.get(url, params=params, headers=self._headers(), timeout=self.timeout)
                response.raise_for_status()
                return response.json()
            except requests.exceptions.HTTPError as e:
                status = e.response.status_code if e.response is not None else None
                if status is not None and status >= 500 and attempt < self.max_retries - 1:
                    self._backoff(attempt, f"HTTP {status}")
                    continue
                raise DatasetFetchError(f"Dataset source returned HTTP {status} for {url}") from e
            except requests.exceptions.RequestException as e:
                # Timeouts and connection errors
                if attempt < self.max_retries - 1:
                    self._backoff(attempt, str(e))
                    continue
                raise DatasetFetchError(f"Dataset source request failed: {e}") from e
            except ValueError as e:
                raise DatasetFetchError(f"Dataset source returned invalid JSON for {url}") from e

    def _backoff(self, attempt: int, reason: str):
        wait_time = self.backoff_base * (2 ** attempt)  # Exponential backoff: 1s, 2s, 4s
        logger.warning(f"Request failed ({reason}), retrying in {wait_time}s... (attempt {attempt + 1}/{self.max_retries})")
        time.sleep(wait_time)


class FileDatasetSourceClient:
    """Loads the snapshot from stops.json / routes.json / flights.json in a directory."""

    FILES = ("stops.json", "routes.json", "flights.json")

    def __init__(self, data_dir: str):
        self.data_dir = data_dir

    def fetch_all(self) -> SourcePayload:
        if not os.path.isdir(self.data_dir):
            raise DatasetFetchError(f"Dataset directory not found: {self.data_dir}")

        collections = []
        for filename in self.FILES:
            path = os.path.join(self.data_dir, filename)
            if not os.path.exists(path):
                logger.warning(f"Source file not found: {path}")
                collections.append([])
                continue
            try:
                with open(path, encoding="utf-8") as f:
                    data = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                raise DatasetFetchError(f"Could not read {path}: {e}") from e
            if isinstance(data, dict):
                data = data.get("value", [])
            collections.append(data)

        stops, routes, flights = collections
        logger.info(f"Loaded {len(stops)} stops, {len(routes)} routes, {len(flights)} flights from {self.data_dir}")
        return build_payload(stops, routes, flights)
