import json
import logging
import os
import re
import tempfile
import threading
import uuid
from typing import List, Optional

from pydantic import ValidationError as PydanticValidationError

from .errors import NotFound, PersistenceFailure
from .schemas import CanvasState, Project

logger = logging.getLogger(__name__)

PROJECT_ID_RE = re.compile(r"^[0-9a-f]{32}$")


class ProjectStore:
    """Project records as JSON documents, one file per project.

    Every write replaces the whole document, so the last write to arrive wins.
    """

    def __init__(self, root_dir: str):
        self.root_dir = str(root_dir)
        self.projects_dir = os.path.join(self.root_dir, "projects")
        self._lock = threading.Lock()
        self._ensure_structure()

    def _ensure_structure(self):
        """Ensures the base projects directory exists."""
        os.makedirs(self.projects_dir, exist_ok=True)

    def _path(self, project_id: str) -> str:
        if not isinstance(project_id, str) or not PROJECT_ID_RE.match(project_id):
            raise NotFound(f"Project {project_id} not found")
        return os.path.join(self.projects_dir, f"{project_id}.json")

    def _read(self, project_id: str) -> Project:
        path = self._path(project_id)
        if not os.path.exists(path):
            raise NotFound(f"Project {project_id} not found")
        try:
            with open(path, "r") as f:
                return Project.model_validate_json(f.read())
        except (OSError, PydanticValidationError) as e:
            raise PersistenceFailure(f"Failed to read project {project_id}: {e}")

    def _write(self, project: Project):
        path = self._path(project.id)
        try:
            fd, tmp_path = tempfile.mkstemp(dir=self.projects_dir, suffix=".tmp")
            with os.fdopen(fd, "w") as f:
                f.write(project.model_dump_json(by_alias=True, exclude_none=True))
            os.replace(tmp_path, path)
        except OSError as e:
            raise PersistenceFailure(f"Failed to write project {project.id}: {e}")

    def create(self, name: str, owner_id: str) -> Project:
        project = Project(id=uuid.uuid4().hex, name=name, owner_id=owner_id)
        with self._lock:
            self._write(project)
        logger.info(f"Created project {project.id} ({name}) for {owner_id}")
        return project

    def get(self, project_id: str) -> Project:
        return self._read(project_id)

    def get_canvas(self, project_id: str) -> CanvasState:
        return self._read(project_id).canvas_state

    def put(self, project_id: str, state: CanvasState) -> Project:
        return self.update(project_id, canvas_state=state)

    def update(self, project_id: str, name: Optional[str] = None, canvas_state: Optional[CanvasState] = None) -> Project:
        with self._lock:
            project = self._read(project_id)
            changes = {}
            if name is not None:
                changes["name"] = name
            if canvas_state is not None:
                changes["canvas_state"] = canvas_state
            project = project.model_copy(update=changes)
            self._write(project)
        return project

    def delete(self, project_id: str):
        path = self._path(project_id)
        with self._lock:
            if not os.path.exists(path):
                raise NotFound(f"Project {project_id} not found")
            try:
                os.remove(path)
            except OSError as e:
                raise PersistenceFailure(f"Failed to delete project {project_id}: {e}")
        logger.info(f"Deleted project {project_id}")

    def list(self, owner_id: str) -> List[Project]:
        projects = []
        for filename in os.listdir(self.projects_dir):
            if not filename.endswith(".json"):
                continue
            try:
                project = self._read(filename[: -len(".json")])
            except PersistenceFailure as e:
                logger.error(str(e))
                continue
            if project.owner_id == owner_id:
                projects.append(project)
        return sorted(projects, key=lambda p: p.created_at)

    def migrate_legacy_canvases(self) -> int:
        """Rewrites stored canvases through the current schema.

        Legacy comma-separated model fields and top-level node coordinates
        are converted on read, so writing the record back is the migration.
        """
        migrated = 0
        for filename in os.listdir(self.projects_dir):
            if not filename.endswith(".json"):
                continue
            path = os.path.join(self.projects_dir, filename)
            try:
                with open(path, "r") as f:
                    raw = json.load(f)
                with self._lock:
                    project = self._read(filename[: -len(".json")])
                    current = json.loads(project.model_dump_json(by_alias=True, exclude_none=True))
                    if current != raw:
                        self._write(project)
                        migrated += 1
            except (OSError, ValueError, NotFound, PersistenceFailure) as e:
                logger.warning(f"Skipping migration of {filename}: {e}")

        if migrated:
            logger.info(f"Migrated {migrated} legacy canvas document(s)")
        return migrated
