from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

QuestionType = Literal["multiple", "boolean", "flashcard"]
FileType = Literal["edital", "prova"]
KnowledgeType = Literal["Geral", "Específico"]
NarrativeStatus = Literal["pending", "ready", "stale", "empty"]


class QuestionOption(BaseModel):
    id: str
    text: str = ""

    @field_validator("id", mode="before")
    @classmethod
    def coerce_id(cls, value):
        return "" if value is None else str(value)


class StudyQuestion(BaseModel):
    id: str
    type: QuestionType = "multiple"
    subject: str = ""
    topic: str = ""
    statement: str = ""
    options: List[QuestionOption] = Field(default_factory=list)
    correct_option_id: Optional[str] = None
    explanation: str = ""

    @field_validator("subject", "topic", "statement", "explanation", mode="before")
    @classmethod
    def none_to_empty(cls, value):
        return "" if value is None else value

    @field_validator("correct_option_id", mode="before")
    @classmethod
    def coerce_correct_option(cls, value):
        return None if value is None else str(value)

    @field_validator("options", mode="before")
    @classmethod
    def none_to_no_options(cls, value):
        return value or []


class AttemptRecord(BaseModel):
    id: str
    project_id: Optional[str] = None
    timestamp: int
    questions: List[StudyQuestion] = Field(default_factory=list)
    answers: Dict[str, str] = Field(default_factory=dict)
    score: float
    mode: QuestionType

    @field_validator("answers", mode="before")
    @classmethod
    def stringify_answers(cls, value):
        if not value:
            return {}
        return {str(k): str(v) for k, v in dict(value).items() if v is not None}


class SubjectAnalysis(BaseModel):
    name: str
    total_questions: int = 0
    correct_answers: int = 0
    wrong_answers: int = 0
    accuracy: float = 0.0


class PerformanceSummary(BaseModel):
    overall_accuracy: float
    total_questions_answered: int
    subjects: List[SubjectAnalysis]


class StudyTopic(BaseModel):
    subject: str
    subtopics: List[str] = Field(default_factory=list)
    relevance_score: int = 0
    is_pareto_priority: bool = False
    question_count: Optional[int] = None
    knowledge_type: Optional[KnowledgeType] = None

    @field_validator("relevance_score", mode="before")
    @classmethod
    def clamp_relevance(cls, value):
        try:
            score = int(round(float(value)))
        except (TypeError, ValueError):
            return 0
        return max(0, min(100, score))

    @field_validator("knowledge_type", mode="before")
    @classmethod
    def drop_unknown_knowledge_type(cls, value):
        return value if value in ("Geral", "Específico") else None


class CargoData(BaseModel):
    name: str
    topics: List[StudyTopic] = Field(default_factory=list)


class ExamProfile(BaseModel):
    difficulty: str = "Média"
    style_description: str = ""
    predominant_subjects: List[str] = Field(default_factory=list)


class ExamAnalysis(BaseModel):
    topics: List[StudyTopic] = Field(default_factory=list)
    profile: ExamProfile = Field(default_factory=ExamProfile)


class ProjectCreateRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None

    @model_validator(mode="after")
    def name_not_blank(self):
        if not self.name.strip():
            raise ValueError("Project name must not be blank")
        return self


class ProjectRenameRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)


class ProjectOut(BaseModel):
    id: str
    name: str
    color: str
    description: Optional[str] = None


class ProjectDeletionResponse(BaseModel):
    deleted_project_id: str
    deleted_files: int
    deleted_attempts: int
    failed_blob_ids: List[str]
    active_project_id: Optional[str]


class ActiveProjectRequest(BaseModel):
    project_id: str


class ActiveProjectOut(BaseModel):
    project_id: Optional[str]


class CurrentTabRequest(BaseModel):
    tab: str = Field(min_length=1, max_length=64)


class CurrentTabOut(BaseModel):
    tab: str


class FileUploadRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    type: FileType
    content_base64: str = Field(min_length=1)
    selected_cargo_name: Optional[str] = None


class CargoSelectionRequest(BaseModel):
    cargo_name: str


class FileOut(BaseModel):
    id: str
    project_id: Optional[str]
    name: str
    type: FileType
    available_cargos: List[CargoData]
    selected_cargo_name: Optional[str]
    parsed_topics: List[StudyTopic]
    exam_profile: Optional[ExamProfile] = None
    pending_cargo_selection: bool = False


class GenerateQuestionsRequest(BaseModel):
    file_id: str
    subject: str = Field(min_length=1)
    mode: QuestionType = "multiple"
    count: int = Field(default=5, ge=1, le=30)


class GenerateQuestionsResponse(BaseModel):
    file_id: str
    subject: str
    mode: QuestionType
    questions: List[StudyQuestion]


class SubmitAttemptRequest(BaseModel):
    questions: List[StudyQuestion] = Field(min_length=1)
    answers: Dict[str, str] = Field(default_factory=dict)
    mode: QuestionType = "multiple"
    timestamp: Optional[int] = None

    @model_validator(mode="after")
    def question_ids_unique(self):
        ids = [q.id for q in self.questions]
        if len(set(ids)) != len(ids):
            raise ValueError("Question ids must be unique within an attempt")
        return self


class PerformanceReportResponse(BaseModel):
    project_id: Optional[str]
    overall_accuracy: float
    total_questions_answered: int
    subjects: List[SubjectAnalysis]
    ai_recommendations: str
    recommendation_status: NarrativeStatus
    recommendation_lines: List[str]


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class SnapshotOption(_CamelModel):
    id: str
    text: str = ""


class SnapshotQuestion(_CamelModel):
    id: str
    type: QuestionType = "multiple"
    subject: Optional[str] = ""
    topic: Optional[str] = ""
    statement: Optional[str] = ""
    options: Optional[List[SnapshotOption]] = None
    correct_option_id: Optional[Union[str, int]] = None
    explanation: Optional[str] = ""


class SnapshotAttempt(_CamelModel):
    id: str
    project_id: Optional[str] = None
    timestamp: int
    questions: List[SnapshotQuestion] = Field(default_factory=list)
    answers: Dict[str, Any] = Field(default_factory=dict)
    score: float = 0
    mode: QuestionType = "multiple"


class SnapshotProject(_CamelModel):
    id: str
    name: str
    color: str = "#4f46e5"
    description: Optional[str] = None


class DatasetSnapshot(_CamelModel):
    format_version: str = "1.0"
    current_tab: Optional[str] = None
    active_project_id: Optional[str] = None
    projects: List[SnapshotProject] = Field(default_factory=list)
    attempts: List[SnapshotAttempt] = Field(default_factory=list)


class DatasetImportResponse(BaseModel):
    imported_projects: int
    imported_attempts: int
    skipped_attempts: int
