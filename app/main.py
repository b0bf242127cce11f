import base64
import binascii
import logging
import threading
from typing import List

from fastapi import Depends, FastAPI, HTTPException
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.analytics import filter_by_project, score_attempt
from app.blobs import FileBlobStore
from app.database import Base, SessionLocal, engine, get_db
from app.reports import RecommendationRequest, ReportAssembler, split_recommendation_lines
from app.schemas import (
    ActiveProjectOut,
    ActiveProjectRequest,
    AttemptRecord,
    CargoSelectionRequest,
    CurrentTabOut,
    CurrentTabRequest,
    DatasetImportResponse,
    DatasetSnapshot,
    FileOut,
    FileUploadRequest,
    GenerateQuestionsRequest,
    GenerateQuestionsResponse,
    PerformanceReportResponse,
    ProjectCreateRequest,
    ProjectDeletionResponse,
    ProjectOut,
    ProjectRenameRequest,
    SnapshotAttempt,
    SnapshotProject,
    SubmitAttemptRequest,
)
from app.services import AIServiceError, LLMStudyService
from app.store import (
    DEFAULT_PROJECT_ID,
    NotFoundError,
    StoreError,
    StudyStore,
    file_to_out,
    project_to_out,
)

app = FastAPI(title="Study Planner")
logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")
logger = logging.getLogger(__name__)
service = LLMStudyService()
blob_store = FileBlobStore()
report_assembler = ReportAssembler()

RETRY_MESSAGE = "Could not process the file. Please try again."
NO_PROJECT_MESSAGE = "No active project. Create or select a project first."


def get_store(db: Session = Depends(get_db)) -> StudyStore:
    return StudyStore(db, blob_store)


def _run_recommendation(request: RecommendationRequest):
    try:
        recommendations = service.get_recommendations(request.subjects)
    except Exception as exc:  # noqa: BLE001
        report_assembler.fail_recommendation(request.sequence, exc)
        return
    report_assembler.apply_recommendation(request.sequence, recommendations)


def _dispatch_recommendation(request: RecommendationRequest):
    thread = threading.Thread(target=_run_recommendation, args=(request,), daemon=True)
    thread.start()


def _refresh_report(store: StudyStore):
    scoped = []

    def load_scoped_attempts():
        scoped[:] = filter_by_project(store.list_attempts(), store.get_active_project_id())
        return scoped

    request = report_assembler.refresh_from(load_scoped_attempts)
    if request:
        logger.info("Requesting recommendations (sequence=%s, attempts=%s)", request.sequence, len(scoped))
        _dispatch_recommendation(request)


def _initialize_storage():
    db = SessionLocal()
    try:
        store = StudyStore(db, blob_store)
        store.seed_default_project()
        store.ensure_active_project()
        store.load_files()
    except (SQLAlchemyError, OSError):
        logger.exception("Failed to load stored study files")
    finally:
        report_assembler.mark_ready()

    try:
        _refresh_report(StudyStore(db, blob_store))
    finally:
        db.close()


Base.metadata.create_all(bind=engine)
_initialize_storage()


def _scoped_file(store: StudyStore, file_id: str):
    row = store.get_file(file_id)
    if not filter_by_project([row], store.get_active_project_id()):
        raise HTTPException(status_code=404, detail="File not found in the active project")
    return row


@app.get("/api/health")
def health(db: Session = Depends(get_db)):
    db.execute(text("SELECT 1"))
    return {"status": "ok"}


@app.get("/api/projects", response_model=List[ProjectOut])
def list_projects(store: StudyStore = Depends(get_store)):
    return [project_to_out(p) for p in store.list_projects()]


@app.post("/api/projects", response_model=ProjectOut)
def create_project(payload: ProjectCreateRequest, store: StudyStore = Depends(get_store)):
    project = store.create_project(payload.name, payload.description)
    _refresh_report(store)
    return project_to_out(project)


@app.patch("/api/projects/{project_id}", response_model=ProjectOut)
def rename_project(project_id: str, payload: ProjectRenameRequest, store: StudyStore = Depends(get_store)):
    try:
        project = store.rename_project(project_id, payload.name)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return project_to_out(project)


@app.delete("/api/projects/{project_id}", response_model=ProjectDeletionResponse)
def delete_project(project_id: str, confirm: bool = False, store: StudyStore = Depends(get_store)):
    if not confirm:
        raise HTTPException(
            status_code=400,
            detail="Deleting a project permanently removes its files and attempts. Repeat with confirm=true.",
        )
    try:
        result = store.delete_project(project_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc

    _refresh_report(store)
    return {
        "deleted_project_id": result.project_id,
        "deleted_files": result.deleted_files,
        "deleted_attempts": result.deleted_attempts,
        "failed_blob_ids": result.failed_blob_ids,
        "active_project_id": result.active_project_id,
    }


@app.get("/api/preferences/active-project", response_model=ActiveProjectOut)
def get_active_project(store: StudyStore = Depends(get_store)):
    return {"project_id": store.get_active_project_id()}


@app.put("/api/preferences/active-project", response_model=ActiveProjectOut)
def set_active_project(payload: ActiveProjectRequest, store: StudyStore = Depends(get_store)):
    try:
        store.set_active_project(payload.project_id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    _refresh_report(store)
    return {"project_id": store.get_active_project_id()}


@app.get("/api/preferences/current-tab", response_model=CurrentTabOut)
def get_current_tab(store: StudyStore = Depends(get_store)):
    return {"tab": store.get_current_tab()}


@app.put("/api/preferences/current-tab", response_model=CurrentTabOut)
def set_current_tab(payload: CurrentTabRequest, store: StudyStore = Depends(get_store)):
    store.set_current_tab(payload.tab)
    return {"tab": store.get_current_tab()}


@app.get("/api/files", response_model=List[FileOut])
def list_files(store: StudyStore = Depends(get_store)):
    return [file_to_out(row) for row in filter_by_project(store.list_files(), store.get_active_project_id())]


@app.post("/api/files", response_model=FileOut)
def upload_file(payload: FileUploadRequest, store: StudyStore = Depends(get_store)):
    try:
        pdf_bytes = base64.b64decode(payload.content_base64, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise HTTPException(status_code=400, detail="content_base64 is not valid base64") from exc

    if not store.get_active_project_id():
        raise HTTPException(status_code=409, detail=NO_PROJECT_MESSAGE)

    logger.info("File upload received (name=%r, type=%s, bytes=%s)", payload.name, payload.type, len(pdf_bytes))
    try:
        if payload.type == "edital":
            cargos = service.analyze_announcement(pdf_bytes, payload.name)
            if not cargos:
                raise HTTPException(
                    status_code=422,
                    detail="No roles could be identified in the announcement. Please try again.",
                )
            selected = cargos[0] if len(cargos) == 1 else None
            if payload.selected_cargo_name:
                selected = next((c for c in cargos if c.name == payload.selected_cargo_name.strip()), selected)
            row = store.add_file(
                name=payload.name,
                file_type="edital",
                data=pdf_bytes,
                available_cargos=cargos,
                selected_cargo_name=selected.name if selected else None,
                parsed_topics=selected.topics if selected else [],
            )
        else:
            analysis = service.analyze_exam(pdf_bytes, payload.name)
            row = store.add_file(
                name=payload.name,
                file_type="prova",
                data=pdf_bytes,
                parsed_topics=analysis.topics,
                exam_profile=analysis.profile,
            )
    except StoreError as exc:
        raise HTTPException(status_code=409, detail=NO_PROJECT_MESSAGE) from exc
    except AIServiceError as exc:
        logger.warning("File analysis failed for %r: %s", payload.name, exc)
        raise HTTPException(status_code=502, detail=RETRY_MESSAGE) from exc
    except OSError as exc:
        logger.exception("Could not store file %r", payload.name)
        raise HTTPException(status_code=503, detail=RETRY_MESSAGE) from exc

    return file_to_out(row)


@app.post("/api/files/{file_id}/cargo", response_model=FileOut)
def select_cargo(file_id: str, payload: CargoSelectionRequest, store: StudyStore = Depends(get_store)):
    try:
        _scoped_file(store, file_id)
        row = store.select_cargo(file_id, payload.cargo_name)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except StoreError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return file_to_out(row)


@app.post("/api/quizzes/generate", response_model=GenerateQuestionsResponse)
def generate_questions(payload: GenerateQuestionsRequest, store: StudyStore = Depends(get_store)):
    try:
        row = _scoped_file(store, payload.file_id)
        pdf_bytes = store.read_file_bytes(row.id)
    except NotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except OSError as exc:
        logger.warning("Stored PDF for file %s could not be read: %s", payload.file_id, exc)
        raise HTTPException(status_code=404, detail="The stored PDF for this file is missing") from exc

    try:
        questions = service.generate_questions(
            pdf_bytes=pdf_bytes,
            filename=row.name,
            subject=payload.subject,
            mode=payload.mode,
            count=payload.count,
        )
    except AIServiceError as exc:
        logger.warning("Question generation failed: %s", exc)
        raise HTTPException(status_code=502, detail="Could not generate questions. Please try again.") from exc

    if not questions:
        raise HTTPException(status_code=502, detail="Could not generate questions. Please try again.")

    return {"file_id": row.id, "subject": payload.subject, "mode": payload.mode, "questions": questions}


@app.get("/api/attempts", response_model=List[AttemptRecord])
def list_attempts(store: StudyStore = Depends(get_store)):
    return filter_by_project(store.list_attempts(), store.get_active_project_id())


@app.post("/api/attempts", response_model=AttemptRecord)
def submit_attempt(payload: SubmitAttemptRequest, store: StudyStore = Depends(get_store)):
    question_ids = {q.id for q in payload.questions}
    unknown_ids = set(payload.answers) - question_ids
    if unknown_ids:
        raise HTTPException(status_code=400, detail="Answers include unknown question ids")

    record = AttemptRecord(
        id="",
        project_id=store.get_active_project_id(),
        timestamp=payload.timestamp or 0,
        questions=payload.questions,
        answers=payload.answers,
        score=score_attempt(payload.questions, payload.answers),
        mode=payload.mode,
    )
    try:
        stored = store.record_attempt(record)
    except StoreError as exc:
        raise HTTPException(status_code=409, detail=NO_PROJECT_MESSAGE) from exc
    store.set_current_tab("dashboard")
    logger.info("Recorded attempt %s (project=%s, score=%.1f)", stored.id, stored.project_id, stored.score)
    _refresh_report(store)
    return stored


@app.get("/api/report", response_model=PerformanceReportResponse)
def get_report(store: StudyStore = Depends(get_store)):
    report = report_assembler.snapshot()
    return {
        "project_id": store.get_active_project_id(),
        "overall_accuracy": report.overall_accuracy,
        "total_questions_answered": report.total_questions_answered,
        "subjects": report.subjects,
        "ai_recommendations": report.ai_recommendations,
        "recommendation_status": report.recommendation_status,
        "recommendation_lines": split_recommendation_lines(report.ai_recommendations),
    }


@app.get("/api/dataset/export", response_model=DatasetSnapshot)
def export_dataset(store: StudyStore = Depends(get_store)):
    return DatasetSnapshot(
        current_tab=store.get_current_tab(),
        active_project_id=store.get_active_project_id(),
        projects=[
            SnapshotProject(id=p.id, name=p.name, color=p.color, description=p.description)
            for p in store.list_projects()
        ],
        attempts=[SnapshotAttempt.model_validate(record.model_dump()) for record in store.list_attempts()],
    )


@app.post("/api/dataset/import", response_model=DatasetImportResponse)
def import_dataset(payload: DatasetSnapshot, store: StudyStore = Depends(get_store)):
    imported_projects = 0
    imported_attempts = 0
    skipped_attempts = 0

    for incoming_project in payload.projects:
        store.upsert_project(
            incoming_project.id,
            incoming_project.name,
            incoming_project.color,
            incoming_project.description,
        )
        imported_projects += 1

    for incoming_attempt in payload.attempts:
        if store.has_attempt(incoming_attempt.id):
            skipped_attempts += 1
            continue

        project_id = (incoming_attempt.project_id or "").strip()
        if not project_id:
            project_id = DEFAULT_PROJECT_ID
            store.ensure_default_project()
        elif not store.has_project(project_id):
            logger.warning("Skipping attempt %s for unknown project %r", incoming_attempt.id, project_id)
            skipped_attempts += 1
            continue

        store.record_attempt(
            AttemptRecord(
                id=incoming_attempt.id,
                project_id=project_id,
                timestamp=incoming_attempt.timestamp,
                questions=[q.model_dump() for q in incoming_attempt.questions],
                answers=incoming_attempt.answers,
                score=incoming_attempt.score,
                mode=incoming_attempt.mode,
            )
        )
        imported_attempts += 1

    if payload.current_tab:
        store.set_current_tab(payload.current_tab)

    try:
        if payload.active_project_id:
            store.set_active_project(payload.active_project_id)
    except NotFoundError:
        logger.warning("Imported active project %r does not exist", payload.active_project_id)
    store.ensure_active_project()

    _refresh_report(store)
    return {
        "imported_projects": imported_projects,
        "imported_attempts": imported_attempts,
        "skipped_attempts": skipped_attempts,
    }
