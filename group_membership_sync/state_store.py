"""
Applied-state persistence.

Keeps the output record of the last successful operation for every managed
group, so a later run can tell which groups need create, update or delete.
"""

import os
import json
import logging
import tempfile
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)


class StateStoreError(Exception):
    """Raised when the state file cannot be read or written."""
    pass


class StateStore:
    """JSON file mapping target_group_id to its last output record."""

    VERSION = 1

    def __init__(self, path: str):
        self.path = path
        self._records: Dict[str, Dict[str, Any]] = {}
        self._loaded = False

    def load(self) -> Dict[str, Dict[str, Any]]:
        """
        Read the state file. A missing file means nothing is managed yet.

        Raises:
            StateStoreError: If the file exists but is not valid state
        """
        if not os.path.exists(self.path):
            logger.info(f"No state file at {self.path}, starting empty")
            self._records = {}
            self._loaded = True
            return self._records

        try:
            with open(self.path, 'r', encoding='utf-8') as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StateStoreError(f"Could not read state file {self.path}: {e}")

        if not isinstance(data, dict) or not isinstance(data.get('groups', {}), dict):
            raise StateStoreError(f"State file {self.path} has an unexpected layout")

        self._records = data.get('groups', {})
        self._loaded = True
        logger.debug(f"Loaded state for {len(self._records)} groups from {self.path}")
        return self._records

    def _ensure_loaded(self):
        if not self._loaded:
            self.load()

    def get(self, group_id: str) -> Optional[Dict[str, Any]]:
        self._ensure_loaded()
        return self._records.get(group_id)

    def group_ids(self) -> List[str]:
        self._ensure_loaded()
        return sorted(self._records)

    def put(self, record: Dict[str, Any]) -> None:
        self._ensure_loaded()
        self._records[record['target_group_id']] = record
        self.save()

    def remove(self, group_id: str) -> None:
        self._ensure_loaded()
        if self._records.pop(group_id, None) is not None:
            self.save()

    def save(self) -> None:
        """Write the state file atomically."""
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        payload = {'version': self.VERSION, 'groups': self._records}

        fd, tmp_path = tempfile.mkstemp(prefix='.state-', suffix='.json', dir=directory)
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                json.dump(payload, f, indent=2, sort_keys=True)
            os.replace(tmp_path, self.path)
        except OSError as e:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise StateStoreError(f"Could not write state file {self.path}: {e}")
