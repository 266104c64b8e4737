"""Persisted metadata of connected repositories."""

from __future__ import annotations

import dataclasses
import logging
import threading
from pathlib import Path

from ReBrowse.errors import CacheError
from ReBrowse.jsonfile import read_json, write_json
from ReBrowse.models import Repository

logger = logging.getLogger(__name__)


class RepositoryStore:
    """JSON-file backed map of repository id to :class:`Repository`.

    Callers always get copies; changes are written back with :meth:`save`.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()
        self._repositories: dict[str, Repository] = {}
        self._load()

    def _load(self) -> None:
        raw = read_json(self.path)
        if raw is None:
            return
        try:
            repositories = [Repository.from_dict(item) for item in raw["repositories"]]
        except (KeyError, TypeError, ValueError):
            logger.warning("Repository list %s is corrupt; starting empty", self.path)
            return
        self._repositories = {r.id: r for r in repositories}

    def _persist(self) -> None:
        # Writes are rare (connect, switch, disconnect) so they stay under the lock
        snapshot = [r.to_dict() for r in self._repositories.values()]
        try:
            write_json(self.path, {"repositories": snapshot})
        except OSError as exc:
            raise CacheError("Could not save the repository list.") from exc

    def get(self, repository_id: str) -> Repository | None:
        with self._lock:
            repo = self._repositories.get(repository_id)
            return dataclasses.replace(repo) if repo else None

    def list_repositories(self) -> list[Repository]:
        """All repositories, most recently used first."""
        with self._lock:
            repos = [dataclasses.replace(r) for r in self._repositories.values()]
        return sorted(repos, key=lambda r: r.last_accessed, reverse=True)

    def save(self, repository: Repository) -> None:
        with self._lock:
            self._repositories[repository.id] = dataclasses.replace(repository)
            self._persist()

    def remove(self, repository_id: str) -> bool:
        with self._lock:
            if self._repositories.pop(repository_id, None) is None:
                return False
            self._persist()
        return True
