"""
Durable record of which pipeline stages have already succeeded.

A marker's existence is the only proof of prior success. Markers are written
after an action completes and removed only by rollback or teardown.
"""

from __future__ import annotations

import json
import logging
import os
import re
import shutil
import tempfile
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from phoenix_orchestrator.core.errors import EnvironmentalError
from phoenix_orchestrator.core.models import MarkerRecord

_KEY_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


def host_marker_key(stage_id: str) -> str:
    return f"host_{stage_id}"


def container_marker_prefix(container_id: int) -> str:
    return f"container_{container_id}_"


def container_marker_key(container_id: int, stage_id: str) -> str:
    return f"{container_marker_prefix(container_id)}{stage_id}"


class MarkerStore(ABC):
    """Marker persistence contract shared by the file and PostgreSQL backends."""

    @abstractmethod
    def exists(self, key: str) -> bool: ...

    @abstractmethod
    def record(self, key: str, owner: str) -> MarkerRecord: ...

    @abstractmethod
    def revoke(self, key: str) -> bool: ...

    @abstractmethod
    def get(self, key: str) -> Optional[MarkerRecord]: ...

    @abstractmethod
    def keys(self, prefix: str = "") -> List[str]: ...

    @abstractmethod
    def clear(self) -> None: ...

    def revoke_prefix(self, prefix: str) -> int:
        removed = 0
        for key in self.keys(prefix):
            if self.revoke(key):
                removed += 1
        return removed


class FileMarkerStore(MarkerStore):
    """One JSON file per key under a single root directory.

    The root is created on first write and never pruned automatically. Writes
    go through a temp file and ``os.replace`` so a crash leaves either no
    marker or a complete one.
    """

    SUFFIX = ".marker"

    def __init__(self, root: Path, logger: logging.Logger) -> None:
        self.root = Path(root)
        self._logger = logger

    def _path(self, key: str) -> Path:
        if not _KEY_RE.match(key):
            raise ValueError(f"Invalid marker key: {key!r}")
        return self.root / f"{key}{self.SUFFIX}"

    def ensure_root(self) -> None:
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise EnvironmentalError(f"Cannot create marker directory {self.root}: {e}") from e
        if not os.access(self.root, os.W_OK):
            raise EnvironmentalError(f"Marker directory {self.root} is not writable")

    def exists(self, key: str) -> bool:
        return self._path(key).is_file()

    def record(self, key: str, owner: str) -> MarkerRecord:
        path = self._path(key)
        self.ensure_root()
        marker = MarkerRecord(key=key, timestamp=datetime.now(timezone.utc), owner=owner)
        fd, tmp = tempfile.mkstemp(dir=self.root, prefix=".tmp-", suffix=self.SUFFIX)
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(marker.to_dict(), f)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
        self._logger.debug(f"Recorded marker {key} (owner: {owner})")
        return marker

    def revoke(self, key: str) -> bool:
        path = self._path(key)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        self._logger.info(f"Revoked marker {key}")
        return True

    def get(self, key: str) -> Optional[MarkerRecord]:
        path = self._path(key)
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return None
        except ValueError:
            # Truncated body: the marker still counts, only its metadata is lost.
            stat = path.stat()
            return MarkerRecord(key=key, timestamp=datetime.fromtimestamp(stat.st_mtime, timezone.utc), owner="")
        return MarkerRecord(
            key=key,
            timestamp=datetime.fromisoformat(data["timestamp"]),
            owner=data.get("owner", ""),
        )

    def keys(self, prefix: str = "") -> List[str]:
        if not self.root.is_dir():
            return []
        out = []
        for p in self.root.iterdir():
            if p.name.startswith(".tmp-") or not p.name.endswith(self.SUFFIX):
                continue
            key = p.name[: -len(self.SUFFIX)]
            if key.startswith(prefix):
                out.append(key)
        return sorted(out)

    def clear(self) -> None:
        if self.root.exists():
            shutil.rmtree(self.root)
            self._logger.info(f"Removed marker root {self.root}")


__all__ = [
    "MarkerStore",
    "FileMarkerStore",
    "host_marker_key",
    "container_marker_key",
    "container_marker_prefix",
]
