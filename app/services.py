import base64
import json
import logging
import os
from typing import List

from openai import AuthenticationError, OpenAI, OpenAIError
from pydantic import ValidationError

from app.analytics import new_id
from app.schemas import CargoData, ExamAnalysis, ExamProfile, StudyQuestion, StudyTopic, SubjectAnalysis

logger = logging.getLogger(__name__)

DEFAULT_RECOMMENDATION = "Continue focado nos seus simulados!"

_TOPIC_SHAPE = (
    "{subject: string, subtopics: string[], relevance_score: integer 0-100, "
    "is_pareto_priority: boolean, question_count: integer, knowledge_type: 'Geral' | 'Específico'}"
)


class AIServiceError(RuntimeError):
    pass


def _items(payload, key: str) -> list:
    if isinstance(payload, dict):
        payload = payload.get(key)
    return payload if isinstance(payload, list) else []


def _parse_topics(raw_topics) -> List[StudyTopic]:
    topics = []
    for raw in raw_topics if isinstance(raw_topics, list) else []:
        try:
            topics.append(StudyTopic.model_validate(raw))
        except ValidationError as exc:
            logger.warning("Skipping malformed topic: %s", exc.errors()[0]["msg"])
    return topics


def parse_cargos(payload) -> List[CargoData]:
    cargos = []
    for raw in _items(payload, "cargos"):
        if not isinstance(raw, dict) or not str(raw.get("name") or "").strip():
            logger.warning("Skipping role without a name")
            continue
        cargos.append(CargoData(name=str(raw["name"]).strip(), topics=_parse_topics(raw.get("topics"))))
    return cargos


def parse_exam_analysis(payload) -> ExamAnalysis:
    if not isinstance(payload, dict):
        return ExamAnalysis()
    try:
        profile = ExamProfile.model_validate(payload.get("profile") or {})
    except ValidationError:
        logger.warning("Malformed exam profile; using defaults")
        profile = ExamProfile()
    return ExamAnalysis(topics=_parse_topics(payload.get("topics")), profile=profile)


def parse_questions(payload, *, subject: str, mode: str) -> List[StudyQuestion]:
    """Typed questions from a model payload, tagged with the requested subject and mode.

    Ids from the model are replaced so they stay unique inside one attempt.
    Items missing their statement, or their answer key when gradable, are dropped.
    """
    questions = []
    for raw in _items(payload, "questions"):
        if not isinstance(raw, dict) or not str(raw.get("statement") or "").strip():
            continue
        data = {**raw, "id": new_id(), "subject": subject, "type": mode}
        if mode == "flashcard":
            data["options"] = []
            data["correct_option_id"] = None
        elif mode == "boolean":
            data["options"] = []
        try:
            question = StudyQuestion.model_validate(data)
        except ValidationError as exc:
            logger.warning("Skipping malformed question: %s", exc.errors()[0]["msg"])
            continue
        if mode != "flashcard" and not (question.correct_option_id or "").strip():
            continue
        if mode == "multiple" and not question.options:
            continue
        questions.append(question)
    return questions


class LLMStudyService:
    def __init__(self):
        self.api_key = os.getenv("OPENAI_API_KEY")
        self.model = os.getenv("OPENAI_MODEL", "gpt-5")
        self.client = OpenAI(api_key=self.api_key) if self.api_key else None

    @staticmethod
    def _build_input(prompt: str, pdf_bytes: bytes | None = None, filename: str = "document.pdf"):
        if pdf_bytes is None:
            return prompt
        encoded = base64.b64encode(pdf_bytes).decode("ascii")
        return [
            {
                "role": "user",
                "content": [
                    {
                        "type": "input_file",
                        "filename": filename,
                        "file_data": f"data:application/pdf;base64,{encoded}",
                    },
                    {"type": "input_text", "text": prompt},
                ],
            }
        ]

    def _request_text(self, prompt: str, *, purpose: str, pdf_bytes: bytes | None = None, filename: str = "") -> str:
        if not self.client:
            raise AIServiceError(f"OPENAI_API_KEY is required for {purpose}")

        try:
            response = self.client.responses.create(
                model=self.model,
                input=self._build_input(prompt, pdf_bytes, filename or "document.pdf"),
            )
        except AuthenticationError as exc:
            raise AIServiceError("Invalid OpenAI API key") from exc
        except OpenAIError as exc:
            raise AIServiceError(f"OpenAI request failed during {purpose}: {exc}") from exc

        text = response.output_text or ""
        logger.info("OpenAI %s response length=%s", purpose, len(text))
        return text

    def _request_json(self, prompt: str, *, purpose: str, pdf_bytes: bytes | None = None, filename: str = ""):
        text = self._request_text(prompt, purpose=purpose, pdf_bytes=pdf_bytes, filename=filename)
        try:
            return self._extract_json(text)
        except AIServiceError as first_exc:
            logger.warning("Initial parse failed (%s). Retrying %s once.", first_exc, purpose)

        retry_prompt = f"{prompt} IMPORTANT: Return STRICT JSON only. No markdown fences and no prose outside JSON."
        retry_text = self._request_text(retry_prompt, purpose=purpose, pdf_bytes=pdf_bytes, filename=filename)
        try:
            return self._extract_json(retry_text)
        except AIServiceError as exc:
            logger.warning("Could not parse %s response (%s); treating it as empty", purpose, exc)
            return None

    def analyze_announcement(self, pdf_bytes: bytes, filename: str = "edital.pdf") -> List[CargoData]:
        prompt = (
            "You are a data engineer specialised in Brazilian public-exam announcements (editais). "
            "Locate the exam breakdown tables ('QUADRO DE PROVAS', 'DA PROVA OBJETIVA' or scoring tables). "
            "For every role (cargo) extract each subject with its number of questions, the weight of each "
            "question and whether it is general ('Geral') or specific ('Específico') knowledge. "
            "Compute relevance_score = (subject questions * weight) / (total exam points) * 100, rounded to an "
            "integer, and flag is_pareto_priority for the subjects that carry most of the score. "
            "List the subtopics to study for each subject. Keep subject names in Portuguese. "
            f"Return JSON only with key 'cargos': Array<{{name: string, topics: Array<{_TOPIC_SHAPE}>}}>."
        )
        logger.info("Analyzing announcement %r (%s bytes)", filename, len(pdf_bytes))
        payload = self._request_json(
            prompt, purpose="announcement analysis", pdf_bytes=pdf_bytes, filename=filename
        )
        cargos = parse_cargos(payload)
        logger.info("Announcement analysis found %s roles", len(cargos))
        return cargos

    def analyze_exam(self, pdf_bytes: bytes, filename: str = "prova.pdf") -> ExamAnalysis:
        prompt = (
            "Analyze this past exam paper. Identify the subjects it covers and the profile of the exam board. "
            "Return JSON only with keys 'topics' and 'profile'. "
            "topics: Array<{subject: string, subtopics: string[], relevance_score: integer 0-100, "
            "is_pareto_priority: boolean}>. "
            "profile: {difficulty: 'Fácil' | 'Média' | 'Difícil' | 'Extrema', style_description: string, "
            "predominant_subjects: string[]}."
        )
        logger.info("Analyzing past exam %r (%s bytes)", filename, len(pdf_bytes))
        payload = self._request_json(prompt, purpose="exam analysis", pdf_bytes=pdf_bytes, filename=filename)
        return parse_exam_analysis(payload)

    def generate_questions(
        self,
        *,
        pdf_bytes: bytes,
        filename: str,
        subject: str,
        mode: str,
        count: int = 5,
    ) -> List[StudyQuestion]:
        if mode == "multiple":
            mode_description = (
                "multiple-choice questions with options identified 'A', 'B', 'C', 'D', 'E'; "
                "correct_option_id is the id of the single correct option"
            )
        elif mode == "boolean":
            mode_description = (
                "true/false (certo/errado) items; use strictly 'C' for true and 'E' for false in "
                "correct_option_id and leave options empty"
            )
        else:
            mode_description = (
                "flashcards; statement is the front of the card and explanation holds the answer side"
            )

        prompt = (
            f"Generate {count} {mode_description} about \"{subject}\" based on the attached document. "
            "Write every item in Brazilian Portuguese and include a detailed explanation of why the answer is "
            "correct. Return JSON only with key 'questions': Array<{id: string, subject: string, topic: string, "
            "statement: string, options: Array<{id: string, text: string}>, correct_option_id: string, "
            "explanation: string}>."
        )
        logger.info("Generating questions (subject=%r, mode=%s, count=%s)", subject, mode, count)
        payload = self._request_json(
            prompt, purpose="question generation", pdf_bytes=pdf_bytes, filename=filename
        )
        return parse_questions(payload, subject=subject, mode=mode)

    def get_recommendations(self, subjects: List[SubjectAnalysis]) -> str:
        stats_summary = "\n".join(
            f"{s.name}: {round(s.accuracy * 100)}% correct ({s.total_questions} questions)" for s in subjects
        )
        prompt = (
            "You are an elite tutor for public-service exams. Analyze the student's performance and give "
            "strategic guidance in Brazilian Portuguese.\n\n"
            f"STUDENT DATA:\n{stats_summary}\n\n"
            "1. Identify the subjects with CRITICAL performance (below 70%).\n"
            "2. For each critical subject, name it and give practical study advice.\n"
            "3. If performance is excellent everywhere (above 85%), suggest maintenance techniques such as "
            "flashcards and spaced review.\n"
            "4. Be direct, motivating and technical.\n"
            "Return a list of short suggestions (at most 4 items), one per line."
        )
        logger.info("Requesting recommendations for %s subjects", len(subjects))
        text = self._request_text(prompt, purpose="recommendations")
        return text.strip() or DEFAULT_RECOMMENDATION

    @staticmethod
    def _extract_json(text: str):
        if not text or not text.strip():
            raise AIServiceError("Model returned empty output while JSON was expected")

        normalized = text.strip()
        if normalized.startswith("```"):
            normalized = normalized.strip("`")
            if normalized.startswith("json"):
                normalized = normalized[4:]

        openers = [idx for idx in (normalized.find("{"), normalized.find("[")) if idx != -1]
        if not openers:
            preview = normalized[:200].replace("\n", " ")
            raise AIServiceError(f"Model did not return JSON. Preview: {preview!r}")
        start = min(openers)
        closer = "}" if normalized[start] == "{" else "]"
        end = normalized.rfind(closer)
        if end < start:
            preview = normalized[:200].replace("\n", " ")
            raise AIServiceError(f"Model did not return JSON. Preview: {preview!r}")

        candidate = normalized[start : end + 1]
        try:
            return json.loads(candidate)
        except json.JSONDecodeError as exc:
            preview = candidate[:220].replace("\n", " ")
            raise AIServiceError(
                f"Model returned invalid JSON ({exc.msg} at line {exc.lineno}, col {exc.colno}). Preview: {preview!r}"
            ) from exc
