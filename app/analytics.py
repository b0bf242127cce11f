"""Scoring, aggregation and project scoping for quiz attempts.

Everything here is a pure function of its arguments: callers pass the
already-loaded attempt records and get fresh results back, so the report can
be recomputed from scratch whenever the attempt set or active project changes.
"""
import random
import re
import string
from typing import Iterable, List, Mapping, Optional, Sequence, TypeVar

from app.schemas import AttemptRecord, PerformanceSummary, StudyQuestion, SubjectAnalysis

DEFAULT_SUBJECT = "Geral"
ID_LENGTH = 9

_ID_ALPHABET = string.ascii_lowercase + string.digits
_ANSWER_NOISE = re.compile(r"[.)\s]")
_id_rng = random.Random()

T = TypeVar("T")


def new_id() -> str:
    return "".join(_id_rng.choice(_ID_ALPHABET) for _ in range(ID_LENGTH))


def normalize_answer(token: Optional[str]) -> str:
    """Canonical form of an answer token: no dots, closing parens or whitespace, uppercased."""
    if token is None:
        return ""
    return _ANSWER_NOISE.sub("", str(token)).upper()


def score_attempt(questions: Sequence[StudyQuestion], answers: Mapping[str, str]) -> float:
    """Session-end percentage (0-100) over the non-flashcard questions.

    Only uppercases both sides before comparing; the aggregation engine applies
    the stricter ``normalize_answer`` when it recomputes history.
    """
    gradable = [q for q in questions if q.type != "flashcard"]
    if not gradable:
        return 100.0

    correct = 0
    for question in gradable:
        answer = answers.get(question.id)
        if answer is None or question.correct_option_id is None:
            continue
        if str(answer).upper() == str(question.correct_option_id).upper():
            correct += 1
    return correct / len(gradable) * 100


def _subject_key(question: StudyQuestion) -> str:
    return (question.subject or "").strip() or DEFAULT_SUBJECT


def aggregate_performance(attempts: Iterable[AttemptRecord]) -> PerformanceSummary:
    by_subject: dict[str, dict[str, int]] = {}
    absolute_total = 0
    evaluated = 0
    evaluated_correct = 0

    for attempt in attempts:
        answers = attempt.answers or {}
        for question in attempt.questions:
            absolute_total += 1
            subject = _subject_key(question)
            stats = by_subject.setdefault(subject, {"total": 0, "correct": 0, "wrong": 0})

            if question.type == "flashcard":
                continue

            user_answer = normalize_answer(answers.get(question.id))
            correct_answer = normalize_answer(question.correct_option_id)
            if not user_answer or not correct_answer:
                continue

            evaluated += 1
            stats["total"] += 1
            if user_answer == correct_answer:
                evaluated_correct += 1
                stats["correct"] += 1
            else:
                stats["wrong"] += 1

    subjects = [
        SubjectAnalysis(
            name=name,
            total_questions=stats["total"],
            correct_answers=stats["correct"],
            wrong_answers=stats["wrong"],
            accuracy=stats["correct"] / stats["total"] if stats["total"] else 0.0,
        )
        for name, stats in by_subject.items()
    ]
    # stable sort: ties keep encounter order
    subjects = sorted(subjects, key=lambda s: s.total_questions, reverse=True)

    return PerformanceSummary(
        overall_accuracy=evaluated_correct / evaluated if evaluated else 0.0,
        total_questions_answered=absolute_total,
        subjects=subjects,
    )


def filter_by_project(items: Iterable[T], active_project_id: Optional[str]) -> List[T]:
    target = (active_project_id or "").strip()
    if not target:
        return []

    scoped = []
    for item in items:
        project_id = getattr(item, "project_id", None)
        if project_id is not None and str(project_id).strip() == target:
            scoped.append(item)
    return scoped
