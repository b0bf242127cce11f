import json
import logging
import time
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from app.analytics import new_id
from app.blobs import FileBlobStore
from app.models import Attempt, Preference, Project, StudyFile
from app.schemas import AttemptRecord, CargoData, ExamProfile, FileOut, ProjectOut, StudyTopic

logger = logging.getLogger(__name__)

DEFAULT_PROJECT_ID = "default"
DEFAULT_PROJECT_NAME = "Meu Primeiro Concurso"
PROJECT_COLORS = ["#4f46e5", "#10b981", "#f59e0b", "#ef4444", "#8b5cf6"]

ACTIVE_PROJECT_KEY = "active_project_id"
CURRENT_TAB_KEY = "current_tab"
DEFAULT_SEEDED_KEY = "default_project_seeded"
DEFAULT_TAB = "dashboard"


class StoreError(Exception):
    pass


class NotFoundError(StoreError):
    pass


class NoActiveProjectError(StoreError):
    pass


@dataclass
class ProjectDeletion:
    project_id: str
    deleted_files: int = 0
    deleted_attempts: int = 0
    failed_blob_ids: List[str] = field(default_factory=list)
    active_project_id: Optional[str] = None


def project_to_out(project: Project) -> ProjectOut:
    return ProjectOut(id=project.id, name=project.name, color=project.color, description=project.description)


def attempt_to_record(row: Attempt) -> AttemptRecord:
    return AttemptRecord(
        id=row.id,
        project_id=(row.project_id or "").strip() or DEFAULT_PROJECT_ID,
        timestamp=row.timestamp,
        questions=json.loads(row.questions_json or "[]"),
        answers=json.loads(row.answers_json or "{}"),
        score=row.score,
        mode=row.mode,
    )


def file_to_out(row: StudyFile) -> FileOut:
    available_cargos = [CargoData(**c) for c in json.loads(row.available_cargos_json or "[]")]
    return FileOut(
        id=row.id,
        project_id=row.project_id,
        name=row.name,
        type=row.type,
        available_cargos=available_cargos,
        selected_cargo_name=row.selected_cargo_name,
        parsed_topics=[StudyTopic(**t) for t in json.loads(row.parsed_topics_json or "[]")],
        exam_profile=ExamProfile(**json.loads(row.exam_profile_json)) if row.exam_profile_json else None,
        pending_cargo_selection=row.type == "edital" and len(available_cargos) > 1 and not row.selected_cargo_name,
    )


class StudyStore:
    """Projects, study files, attempts and UI preferences.

    Every mutating method commits before returning, so callers never observe a
    half-applied change. File bytes live in the blob store, keyed by file id.
    """

    def __init__(self, db: Session, blobs: FileBlobStore):
        self.db = db
        self.blobs = blobs

    # preferences

    def get_preference(self, key: str) -> Optional[str]:
        row = self.db.get(Preference, key)
        return row.value if row else None

    def _stage_preference(self, key: str, value: Optional[str]):
        row = self.db.get(Preference, key)
        if row is None:
            self.db.add(Preference(key=key, value=value))
        else:
            row.value = value

    def set_preference(self, key: str, value: Optional[str]):
        self._stage_preference(key, value)
        self.db.commit()

    def get_current_tab(self) -> str:
        return self.get_preference(CURRENT_TAB_KEY) or DEFAULT_TAB

    def set_current_tab(self, tab: str):
        self.set_preference(CURRENT_TAB_KEY, tab)

    def get_active_project_id(self) -> Optional[str]:
        value = self.get_preference(ACTIVE_PROJECT_KEY)
        return value.strip() if value and value.strip() else None

    def set_active_project(self, project_id: str):
        project = self.get_project(project_id.strip())
        self.set_preference(ACTIVE_PROJECT_KEY, project.id)

    # projects

    def list_projects(self) -> List[Project]:
        return self.db.query(Project).order_by(Project.position.asc(), Project.created_at.asc()).all()

    def has_project(self, project_id: str) -> bool:
        return self.db.get(Project, project_id) is not None

    def get_project(self, project_id: str) -> Project:
        project = self.db.get(Project, project_id)
        if not project:
            raise NotFoundError(f"Project {project_id!r} not found")
        return project

    def _next_position(self) -> int:
        current = self.db.query(func.max(Project.position)).scalar()
        return 0 if current is None else current + 1

    def create_project(self, name: str, description: Optional[str] = None) -> Project:
        project_count = self.db.query(Project).count()
        project = Project(
            id=new_id(),
            name=name.strip(),
            color=PROJECT_COLORS[project_count % len(PROJECT_COLORS)],
            description=description,
            position=self._next_position(),
        )
        self.db.add(project)
        self._stage_preference(ACTIVE_PROJECT_KEY, project.id)
        self.db.commit()
        logger.info("Created project %s (%r)", project.id, project.name)
        return project

    def upsert_project(self, project_id: str, name: str, color: str, description: Optional[str] = None) -> Project:
        project = self.db.get(Project, project_id)
        if project is None:
            project = Project(id=project_id, position=self._next_position())
            self.db.add(project)
        project.name = name
        project.color = color
        project.description = description
        self.db.commit()
        return project

    def rename_project(self, project_id: str, name: str) -> Project:
        project = self.get_project(project_id)
        project.name = name.strip()
        self.db.commit()
        return project

    def seed_default_project(self) -> Optional[Project]:
        """Create the starter project on first run only.

        The flag is set even when projects already exist, so deleting every
        project leaves the list empty across restarts.
        """
        if self.get_preference(DEFAULT_SEEDED_KEY):
            return None
        project = None
        if not self.db.query(Project).count():
            project = self.ensure_default_project()
        self.set_preference(DEFAULT_SEEDED_KEY, "1")
        return project

    def ensure_default_project(self) -> Optional[Project]:
        if self.db.get(Project, DEFAULT_PROJECT_ID):
            return None
        logger.info("Creating fallback project %r", DEFAULT_PROJECT_ID)
        return self.upsert_project(DEFAULT_PROJECT_ID, DEFAULT_PROJECT_NAME, PROJECT_COLORS[0])

    def ensure_active_project(self) -> Optional[str]:
        active = self.get_active_project_id()
        if active:
            return active
        projects = self.list_projects()
        if not projects:
            return None
        self.set_preference(ACTIVE_PROJECT_KEY, projects[0].id)
        return projects[0].id

    def delete_project(self, project_id: str) -> ProjectDeletion:
        project = self.get_project(project_id)
        was_active = self.get_active_project_id() == project.id
        result = ProjectDeletion(project_id=project.id)

        self.db.delete(project)

        files = self.db.query(StudyFile).filter(StudyFile.project_id == project.id).all()
        file_ids = [row.id for row in files]
        for row in files:
            self.db.delete(row)
        result.deleted_files = len(files)

        result.deleted_attempts = (
            self.db.query(Attempt).filter(Attempt.project_id == project.id).delete(synchronize_session=False)
        )
        self.db.flush()

        if was_active:
            remaining = self.list_projects()
            result.active_project_id = remaining[0].id if remaining else None
            self._stage_preference(ACTIVE_PROJECT_KEY, result.active_project_id)
        else:
            result.active_project_id = self.get_active_project_id()

        self.db.commit()

        for file_id in file_ids:
            try:
                self.blobs.delete(file_id)
            except (OSError, ValueError) as exc:
                logger.warning("Could not delete blob for file %s: %s", file_id, exc)
                result.failed_blob_ids.append(file_id)

        logger.info(
            "Deleted project %s (files=%s, attempts=%s, failed_blobs=%s)",
            result.project_id,
            result.deleted_files,
            result.deleted_attempts,
            len(result.failed_blob_ids),
        )
        return result

    # files

    def _resolve_project_id(self, project_id: Optional[str]) -> str:
        resolved = (project_id or "").strip() or self.get_active_project_id()
        if not resolved:
            raise NoActiveProjectError("No active project; create or select a project first")
        if self.db.get(Project, resolved) is None:
            raise NotFoundError(f"Project {resolved!r} not found")
        return resolved

    def add_file(
        self,
        *,
        name: str,
        file_type: str,
        data: bytes,
        project_id: Optional[str] = None,
        available_cargos: Optional[List[CargoData]] = None,
        selected_cargo_name: Optional[str] = None,
        parsed_topics: Optional[List[StudyTopic]] = None,
        exam_profile: Optional[ExamProfile] = None,
    ) -> StudyFile:
        row = StudyFile(
            id=new_id(),
            project_id=self._resolve_project_id(project_id),
            name=name,
            type=file_type,
            available_cargos_json=json.dumps([c.model_dump() for c in available_cargos or []]),
            selected_cargo_name=selected_cargo_name,
            parsed_topics_json=json.dumps([t.model_dump() for t in parsed_topics or []]),
            exam_profile_json=json.dumps(exam_profile.model_dump()) if exam_profile else None,
        )
        self.blobs.put(row.id, data)
        self.db.add(row)
        self.db.commit()
        return row

    def list_files(self) -> List[StudyFile]:
        return self.db.query(StudyFile).order_by(StudyFile.created_at.asc()).all()

    def get_file(self, file_id: str) -> StudyFile:
        row = self.db.get(StudyFile, file_id)
        if not row:
            raise NotFoundError(f"File {file_id!r} not found")
        return row

    def read_file_bytes(self, file_id: str) -> bytes:
        row = self.get_file(file_id)
        return self.blobs.get(row.id)

    def select_cargo(self, file_id: str, cargo_name: str) -> StudyFile:
        row = self.get_file(file_id)
        cargos = [CargoData(**c) for c in json.loads(row.available_cargos_json or "[]")]
        match = next((c for c in cargos if c.name.strip() == cargo_name.strip()), None)
        if match is None:
            raise StoreError(f"Role {cargo_name!r} is not listed in file {file_id!r}")
        row.selected_cargo_name = match.name
        row.parsed_topics_json = json.dumps([t.model_dump() for t in match.topics])
        self.db.commit()
        return row

    def load_files(self) -> List[StudyFile]:
        rows = self.list_files()
        stored = set(self.blobs.list_ids())
        missing = [row.id for row in rows if row.id not in stored]
        if missing:
            logger.warning("%s study files have no stored PDF: %s", len(missing), ", ".join(missing))
        logger.info("Loaded %s study files", len(rows))
        return rows

    # attempts

    def list_attempts(self) -> List[AttemptRecord]:
        rows = self.db.query(Attempt).order_by(Attempt.timestamp.desc()).all()
        return [attempt_to_record(row) for row in rows]

    def has_attempt(self, attempt_id: str) -> bool:
        return self.db.get(Attempt, attempt_id) is not None

    def record_attempt(self, record: AttemptRecord) -> AttemptRecord:
        stored = record.model_copy(
            update={
                "id": record.id or new_id(),
                "project_id": self._resolve_project_id(record.project_id),
                "timestamp": record.timestamp or int(time.time() * 1000),
            }
        )
        self.db.add(
            Attempt(
                id=stored.id,
                project_id=stored.project_id,
                timestamp=stored.timestamp,
                questions_json=json.dumps([q.model_dump() for q in stored.questions]),
                answers_json=json.dumps(stored.answers),
                score=stored.score,
                mode=stored.mode,
            )
        )
        self.db.commit()
        return stored
