import contextlib
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, ContextManager

import yaml

from clusternet.config import config_dir

logger = logging.getLogger(__name__)


class StateError(Exception):
    pass


class ProjectStore:
    """Manage per-project records stored in <config_dir>/<project>.yaml.

    ``lock`` is a factory returning a context manager held around every
    read-modify-write. It defaults to a no-op; concurrent invocations on the
    same project are not otherwise serialized.
    """

    def __init__(
        self,
        directory: Path | None = None,
        lock: Callable[[str], ContextManager] | None = None,
    ):
        self.directory = Path(directory) if directory is not None else config_dir()
        self._lock = lock or (lambda project: contextlib.nullcontext())

    def path(self, project: str) -> Path:
        return self.directory / f"{project}.yaml"

    def lock(self, project: str) -> ContextManager:
        return self._lock(project)

    def load(self, project: str) -> dict | None:
        """Load a project's record, or None if it has never been saved."""
        path = self.path(project)
        if not path.exists():
            logger.debug("no config file found for project %s at %s", project, path)
            return None
        try:
            with open(path) as f:
                record = yaml.safe_load(f)
        except OSError as e:
            raise StateError(f"Failed to read config file {path}: {e}") from e
        except yaml.YAMLError as e:
            raise StateError(f"Failed to parse config file {path}: {e}") from e
        if record is None:
            return {"project": project}
        if not isinstance(record, dict):
            raise StateError(f"Invalid config file: {path}")
        logger.debug("loaded config for project %s from %s", project, path)
        return record

    def save(self, project: str, record: dict) -> None:
        """Write the whole project record back to disk."""
        record = dict(record)
        record.setdefault("project", project)
        record["updated_at"] = datetime.now(timezone.utc).isoformat()
        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            with open(self.path(project), "w") as f:
                yaml.dump(record, f, default_flow_style=False, sort_keys=False)
        except OSError as e:
            raise StateError(f"Failed to write config file {self.path(project)}: {e}") from e
        logger.debug("saved config for project %s to %s", project, self.path(project))

    def update(self, project: str, **fields) -> dict:
        """Merge ``fields`` into the stored record under the project lock."""
        with self.lock(project):
            record = self.load(project) or {"project": project}
            record.update(fields)
            self.save(project, record)
        return record

    def delete(self, project: str) -> bool:
        """Remove a project's record. Returns False if there was none."""
        path = self.path(project)
        if not path.exists():
            logger.debug("config file for project %s does not exist", project)
            return False
        try:
            path.unlink()
        except OSError as e:
            raise StateError(f"Failed to delete config file {path}: {e}") from e
        logger.debug("deleted config for project %s at %s", project, path)
        return True

    def list_projects(self) -> list[str]:
        """List all projects that have a saved record."""
        if not self.directory.exists():
            return []
        return sorted(p.stem for p in self.directory.glob("*.yaml") if p.is_file())

    def list_all(self) -> list[dict]:
        """Load every readable project record."""
        records = []
        for project in self.list_projects():
            try:
                record = self.load(project)
            except StateError as e:
                logger.warning("skipping unreadable project %s: %s", project, e)
                continue
            if record:
                records.append(record)
        return records
