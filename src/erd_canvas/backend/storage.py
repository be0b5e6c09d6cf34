"""
Project storage - durable key-value blobs keyed by project id.

Snapshots are stored as-is (the plain nested JSON structure of a Project).
The store knows nothing about the schema; it only gets and sets blobs.
"""

import json
import logging
import re
from pathlib import Path
from typing import Optional, Protocol

logger = logging.getLogger(__name__)

_SAFE_KEY = re.compile(r"^[A-Za-z0-9_.-]+$")


class ProjectStore(Protocol):
    """Get/set blob storage keyed by project id."""

    def get(self, project_id: str) -> Optional[dict]: ...

    def set(self, project_id: str, data: dict) -> None: ...

    def delete(self, project_id: str) -> bool: ...

    def keys(self) -> list[str]: ...


class MemoryProjectStore:
    """In-memory store, used for tests and ephemeral sessions."""

    def __init__(self):
        self._blobs: dict[str, str] = {}

    def get(self, project_id: str) -> Optional[dict]:
        blob = self._blobs.get(project_id)
        return json.loads(blob) if blob is not None else None

    def set(self, project_id: str, data: dict) -> None:
        # Serialize so callers never share mutable state with the store
        self._blobs[project_id] = json.dumps(data)

    def delete(self, project_id: str) -> bool:
        return self._blobs.pop(project_id, None) is not None

    def keys(self) -> list[str]:
        return list(self._blobs)


class JsonFileProjectStore:
    """One `<project_id>.json` file per project in a directory."""

    def __init__(self, directory: str | Path):
        self.directory = Path(directory).expanduser()

    @staticmethod
    def is_valid_key(project_id: str) -> bool:
        return bool(_SAFE_KEY.match(project_id)) and not project_id.startswith(".")

    def _path(self, project_id: str) -> Path:
        if not self.is_valid_key(project_id):
            raise ValueError(f"Invalid project id: {project_id!r}")
        return self.directory / f"{project_id}.json"

    def get(self, project_id: str) -> Optional[dict]:
        # Ids that could never have been written are simply missing
        if not self.is_valid_key(project_id):
            return None
        path = self._path(project_id)
        if not path.exists():
            return None
        with open(path, "r") as f:
            return json.load(f)

    def set(self, project_id: str, data: dict) -> None:
        path = self._path(project_id)
        path.parent.mkdir(parents=True, exist_ok=True)

        # Write to a sibling file first so a crash never leaves half a blob
        tmp_path = path.with_suffix(".json.tmp")
        with open(tmp_path, "w") as f:
            json.dump(data, f, indent=2)
        tmp_path.replace(path)
        logger.debug("Saved project %s to %s", project_id, path)

    def delete(self, project_id: str) -> bool:
        if not self.is_valid_key(project_id):
            return False
        path = self._path(project_id)
        if not path.exists():
            return False
        path.unlink()
        return True

    def keys(self) -> list[str]:
        if not self.directory.exists():
            return []
        return sorted(p.stem for p in self.directory.glob("*.json"))
