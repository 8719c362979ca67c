import json
import logging
import os

logger = logging.getLogger(__name__)


class LocalObjectStorage:
    """Object storage backed by a directory; keys map to relative paths."""

    def __init__(self, base_dir: str):
        if not base_dir:
            raise ValueError("A storage directory must be provided.")
        self.base_dir = base_dir

    def path_for(self, key: str) -> str:
        return os.path.join(self.base_dir, *key.split("/"))

    def put_json(self, key: str, document) -> str:
        """Write a JSON document under key and return its path."""
        path = self.path_for(key)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        tmp_path = path + ".tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(document, f, ensure_ascii=False, default=str)
        os.replace(tmp_path, path)
        logger.info(f"Stored {key} ({os.path.getsize(path)} bytes)")
        return path

    def get_json(self, key: str):
        with open(self.path_for(key), encoding="utf-8") as f:
            return json.load(f)

    def exists(self, key: str) -> bool:
        return os.path.exists(self.path_for(key))
