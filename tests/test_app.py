import base64
import threading

import pytest
from fastapi.testclient import TestClient

import app.main as main
from app.database import Base, engine
from app.reports import NO_DATA_NARRATIVE, ReportAssembler
from app.schemas import CargoData, ExamAnalysis, ExamProfile, StudyQuestion, StudyTopic
from app.services import AIServiceError

PDF_BASE64 = base64.b64encode(b"%PDF-1.4 mock exam").decode("ascii")
TWO_QUESTION_ATTEMPT = {
    "questions": [
        {"id": "q1", "type": "boolean", "subject": "Civil", "statement": "?", "correct_option_id": "C"},
        {"id": "q2", "type": "boolean", "subject": "Civil", "statement": "?", "correct_option_id": "E"},
    ],
    "answers": {"q1": "C", "q2": "C"},
    "mode": "boolean",
}


class MockService:
    def __init__(self, cargos=None):
        self.cargos = cargos if cargos is not None else [
            CargoData(name="Técnico", topics=[StudyTopic(subject="Português", relevance_score=40)])
        ]
        self.recommendation_calls = []
        self.fail_recommendations = False

    def analyze_announcement(self, pdf_bytes, filename):
        return self.cargos

    def analyze_exam(self, pdf_bytes, filename):
        return ExamAnalysis(
            topics=[StudyTopic(subject="Português", relevance_score=60, is_pareto_priority=True)],
            profile=ExamProfile(difficulty="Difícil", style_description="Cebraspe", predominant_subjects=["Português"]),
        )

    def generate_questions(self, *, pdf_bytes, filename, subject, mode, count):
        return [
            StudyQuestion(
                id="q1",
                type=mode,
                subject=subject,
                statement="Assinale a alternativa correta.",
                options=[{"id": "A", "text": "Certa"}, {"id": "B", "text": "Errada"}],
                correct_option_id="A",
                explanation="A é a correta.",
            ),
            StudyQuestion(
                id="q2",
                type=mode,
                subject=subject,
                statement="Assinale a incorreta.",
                options=[{"id": "A", "text": "Certa"}, {"id": "B", "text": "Errada"}],
                correct_option_id="B",
                explanation="B é a incorreta.",
            ),
        ][:count]

    def get_recommendations(self, subjects):
        if self.fail_recommendations:
            raise AIServiceError("quota exceeded")
        self.recommendation_calls.append([s.name for s in subjects])
        return "1. Foque em Português todos os dias\n- ok\n2. Revise crase com 20 questões"


class FailingGenerationService(MockService):
    def generate_questions(self, **kwargs):
        raise AIServiceError("Invalid OpenAI API key")


@pytest.fixture
def mock_service():
    return MockService()


@pytest.fixture
def client(monkeypatch, mock_service):
    monkeypatch.setattr("app.main.service", mock_service)
    monkeypatch.setattr("app.main.report_assembler", ReportAssembler())
    monkeypatch.setattr("app.main._dispatch_recommendation", main._run_recommendation)
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    main._initialize_storage()
    return TestClient(main.app)


def _upload_exam(client):
    response = client.post("/api/files", json={"name": "prova.pdf", "type": "prova", "content_base64": PDF_BASE64})
    assert response.status_code == 200
    return response.json()


def _take_quiz(client, file_id, answers):
    generated = client.post(
        "/api/quizzes/generate",
        json={"file_id": file_id, "subject": "Português", "mode": "multiple", "count": 2},
    )
    assert generated.status_code == 200
    questions = generated.json()["questions"]
    response = client.post("/api/attempts", json={"questions": questions, "answers": answers, "mode": "multiple"})
    assert response.status_code == 200
    return response.json()


def test_health_endpoint(client):
    health = client.get("/api/health")
    assert health.status_code == 200
    assert health.json()["status"] == "ok"


def test_startup_creates_default_active_project(client):
    projects = client.get("/api/projects").json()
    assert [p["id"] for p in projects] == ["default"]
    assert client.get("/api/preferences/active-project").json()["project_id"] == "default"

    report = client.get("/api/report").json()
    assert report["recommendation_status"] == "empty"
    assert report["ai_recommendations"] == NO_DATA_NARRATIVE


def test_project_lifecycle_requires_confirmation_for_delete(client):
    created = client.post("/api/projects", json={"name": "Polícia Federal"}).json()
    assert created["color"] == "#10b981"
    assert client.get("/api/preferences/active-project").json()["project_id"] == created["id"]

    renamed = client.patch(f"/api/projects/{created['id']}", json={"name": "PF 2025"})
    assert renamed.json()["name"] == "PF 2025"

    refused = client.delete(f"/api/projects/{created['id']}")
    assert refused.status_code == 400

    deleted = client.delete(f"/api/projects/{created['id']}", params={"confirm": "true"})
    assert deleted.status_code == 200
    assert deleted.json()["active_project_id"] == "default"
    assert client.delete("/api/projects/missing", params={"confirm": "true"}).status_code == 404


def test_quiz_flow_updates_report(client, mock_service):
    exam = _upload_exam(client)
    assert exam["project_id"] == "default"
    assert exam["exam_profile"]["difficulty"] == "Difícil"

    attempt = _take_quiz(client, exam["id"], {"q1": "a)", "q2": "C"})
    assert attempt["project_id"] == "default"
    assert attempt["score"] == 0.0

    report = client.get("/api/report").json()
    assert report["total_questions_answered"] == 2
    assert report["overall_accuracy"] == 0.5
    assert report["subjects"][0]["name"] == "Português"
    assert report["subjects"][0]["correct_answers"] == 1
    assert report["recommendation_status"] == "ready"
    assert report["recommendation_lines"] == [
        "Foque em Português todos os dias",
        "Revise crase com 20 questões",
    ]
    assert mock_service.recommendation_calls == [["Português"]]
    assert client.get("/api/preferences/current-tab").json()["tab"] == "dashboard"


def test_switching_projects_isolates_files_attempts_and_report(client):
    exam = _upload_exam(client)
    _take_quiz(client, exam["id"], {"q1": "A", "q2": "B"})

    other = client.post("/api/projects", json={"name": "TCU"}).json()
    assert client.get("/api/files").json() == []
    assert client.get("/api/attempts").json() == []
    report = client.get("/api/report").json()
    assert report["total_questions_answered"] == 0
    assert report["ai_recommendations"] == NO_DATA_NARRATIVE

    missing = client.post(
        "/api/quizzes/generate",
        json={"file_id": exam["id"], "subject": "Português", "mode": "multiple", "count": 2},
    )
    assert missing.status_code == 404

    client.put("/api/preferences/active-project", json={"project_id": "default"})
    report = client.get("/api/report").json()
    assert report["overall_accuracy"] == 1.0
    assert len(client.get("/api/attempts").json()) == 1

    assert client.put("/api/preferences/active-project", json={"project_id": "nope"}).status_code == 404
    assert other["id"] in [p["id"] for p in client.get("/api/projects").json()]


def test_deleting_project_removes_its_attempts(client):
    project = client.post("/api/projects", json={"name": "Receita Federal"}).json()
    exam = _upload_exam(client)
    _take_quiz(client, exam["id"], {"q1": "A", "q2": "A"})

    client.delete(f"/api/projects/{project['id']}", params={"confirm": "true"})

    assert client.get("/api/preferences/active-project").json()["project_id"] == "default"
    exported = client.get("/api/dataset/export").json()
    assert exported["attempts"] == []


def test_announcement_with_several_roles_waits_for_selection(client, monkeypatch):
    service = MockService(
        cargos=[
            CargoData(name="Técnico", topics=[StudyTopic(subject="Português", relevance_score=40)]),
            CargoData(name="Analista", topics=[StudyTopic(subject="Direito Tributário", relevance_score=55)]),
        ]
    )
    monkeypatch.setattr("app.main.service", service)

    uploaded = client.post("/api/files", json={"name": "edital.pdf", "type": "edital", "content_base64": PDF_BASE64})
    data = uploaded.json()
    assert data["pending_cargo_selection"] is True
    assert data["parsed_topics"] == []

    selected = client.post(f"/api/files/{data['id']}/cargo", json={"cargo_name": "Analista"}).json()
    assert selected["selected_cargo_name"] == "Analista"
    assert selected["parsed_topics"][0]["subject"] == "Direito Tributário"
    assert selected["pending_cargo_selection"] is False

    unknown = client.post(f"/api/files/{data['id']}/cargo", json={"cargo_name": "Auditor"})
    assert unknown.status_code == 400


def test_announcement_without_roles_is_rejected(client, monkeypatch):
    monkeypatch.setattr("app.main.service", MockService(cargos=[]))
    response = client.post("/api/files", json={"name": "edital.pdf", "type": "edital", "content_base64": PDF_BASE64})
    assert response.status_code == 422
    assert client.get("/api/files").json() == []


def test_invalid_base64_upload_is_rejected(client):
    response = client.post("/api/files", json={"name": "x.pdf", "type": "prova", "content_base64": "@@not-base64@@"})
    assert response.status_code == 400


def test_generation_failure_maps_to_retryable_error(client, monkeypatch):
    exam = _upload_exam(client)
    monkeypatch.setattr("app.main.service", FailingGenerationService())

    response = client.post(
        "/api/quizzes/generate",
        json={"file_id": exam["id"], "subject": "Português", "mode": "multiple", "count": 2},
    )
    assert response.status_code == 502
    assert "try again" in response.json()["detail"]


def test_recommendation_failure_keeps_previous_text(client, mock_service):
    exam = _upload_exam(client)
    _take_quiz(client, exam["id"], {"q1": "A", "q2": "B"})
    first = client.get("/api/report").json()

    mock_service.fail_recommendations = True
    _take_quiz(client, exam["id"], {"q1": "B", "q2": "B"})
    second = client.get("/api/report").json()

    assert second["ai_recommendations"] == first["ai_recommendations"]
    assert second["recommendation_status"] == "stale"
    assert second["total_questions_answered"] == 4
    assert second["overall_accuracy"] == 0.75


def test_submit_rejects_unknown_answer_ids(client):
    response = client.post(
        "/api/attempts",
        json={
            "questions": [{"id": "q1", "type": "flashcard", "subject": "Civil", "statement": "Front"}],
            "answers": {"zzz": "A"},
        },
    )
    assert response.status_code == 400


def test_dataset_import_defaults_legacy_project_and_exports_camel_case(client):
    snapshot = {
        "currentTab": "reports",
        "activeProjectId": "proj1",
        "projects": [{"id": "proj1", "name": "TJ-SP", "color": "#10b981"}],
        "attempts": [
            {
                "id": "legacy1",
                "timestamp": 5,
                "questions": [
                    {"id": "q1", "type": "boolean", "subject": "Civil", "statement": "?", "correctOptionId": "C"}
                ],
                "answers": {"q1": "c"},
                "score": 100,
                "mode": "boolean",
            },
            {
                "id": "current1",
                "projectId": "proj1",
                "timestamp": 6,
                "questions": [
                    {"id": "q1", "type": "boolean", "subject": " Penal ", "statement": "?", "correctOptionId": "E"},
                    {"id": "q2", "type": "flashcard", "subject": "Penal", "statement": "Front", "explanation": "Back"},
                ],
                "answers": {"q1": "C"},
                "score": 0,
                "mode": "boolean",
            },
        ],
    }

    imported = client.post("/api/dataset/import", json=snapshot).json()
    assert imported == {"imported_projects": 1, "imported_attempts": 2, "skipped_attempts": 0}

    report = client.get("/api/report").json()
    assert report["project_id"] == "proj1"
    assert report["total_questions_answered"] == 2
    assert report["subjects"] == [
        {"name": "Penal", "total_questions": 1, "correct_answers": 0, "wrong_answers": 1, "accuracy": 0.0}
    ]
    assert client.get("/api/preferences/current-tab").json()["tab"] == "reports"

    exported = client.get("/api/dataset/export").json()
    assert exported["activeProjectId"] == "proj1"
    by_id = {a["id"]: a for a in exported["attempts"]}
    assert by_id["legacy1"]["projectId"] == "default"
    assert by_id["current1"]["questions"][0]["correctOptionId"] == "E"

    again = client.post("/api/dataset/import", json=snapshot).json()
    assert again["skipped_attempts"] == 2


def test_project_switch_racing_an_attempt_keeps_the_newest_report(client, monkeypatch):
    switch_has_read = threading.Event()
    attempt_recorded = threading.Event()
    pause_next_filter = [True]
    real_filter = main.filter_by_project
    real_record_attempt = main.StudyStore.record_attempt

    def slow_filter(items, active_project_id):
        if pause_next_filter:
            pause_next_filter.clear()
            switch_has_read.set()
            attempt_recorded.wait(timeout=5)
        return real_filter(items, active_project_id)

    def signalling_record_attempt(self, record):
        stored = real_record_attempt(self, record)
        attempt_recorded.set()
        return stored

    monkeypatch.setattr("app.main.filter_by_project", slow_filter)
    monkeypatch.setattr(main.StudyStore, "record_attempt", signalling_record_attempt)

    responses = {}

    def switch_project():
        responses["switch"] = TestClient(main.app).put(
            "/api/preferences/active-project", json={"project_id": "default"}
        )

    def submit_attempt():
        responses["submit"] = TestClient(main.app).post("/api/attempts", json=TWO_QUESTION_ATTEMPT)

    switcher = threading.Thread(target=switch_project)
    switcher.start()
    assert switch_has_read.wait(timeout=5)

    submitter = threading.Thread(target=submit_attempt)
    submitter.start()
    switcher.join(timeout=10)
    submitter.join(timeout=10)

    assert responses["switch"].status_code == 200
    assert responses["submit"].status_code == 200
    report = client.get("/api/report").json()
    assert report["total_questions_answered"] == 2
    assert report["overall_accuracy"] == 0.5
    assert report["recommendation_status"] == "ready"


def test_attempts_and_uploads_need_an_existing_project(client):
    assert client.delete("/api/projects/default", params={"confirm": "true"}).status_code == 200
    assert client.get("/api/preferences/active-project").json()["project_id"] is None

    attempt = client.post("/api/attempts", json=TWO_QUESTION_ATTEMPT)
    assert attempt.status_code == 409
    upload = client.post("/api/files", json={"name": "prova.pdf", "type": "prova", "content_base64": PDF_BASE64})
    assert upload.status_code == 409

    exported = client.get("/api/dataset/export").json()
    assert exported["projects"] == []
    assert exported["attempts"] == []


def test_restart_after_deleting_every_project_keeps_list_empty(client):
    client.delete("/api/projects/default", params={"confirm": "true"})

    main._initialize_storage()

    assert client.get("/api/projects").json() == []
    assert client.get("/api/preferences/active-project").json()["project_id"] is None
    assert client.get("/api/report").json()["recommendation_status"] == "empty"
