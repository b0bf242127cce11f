import logging
import re
import threading
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

from app.analytics import aggregate_performance
from app.schemas import AttemptRecord, SubjectAnalysis

logger = logging.getLogger(__name__)

ANALYZING_PLACEHOLDER = "Analisando seu histórico..."
NO_DATA_NARRATIVE = "Finalize seu primeiro simulado para receber mentoria personalizada da IA!"
MIN_LINE_LENGTH = 5

_LEADING_BULLET = re.compile(r"^[•#\-\s*12345.]+")


@dataclass
class RecommendationRequest:
    sequence: int
    subjects: List[SubjectAnalysis]


@dataclass
class PerformanceReport:
    overall_accuracy: float = 0.0
    total_questions_answered: int = 0
    subjects: List[SubjectAnalysis] = field(default_factory=list)
    ai_recommendations: str = ANALYZING_PLACEHOLDER
    recommendation_status: str = "pending"


def split_recommendation_lines(text: str) -> List[str]:
    lines = []
    for raw_line in (text or "").split("\n"):
        line = raw_line.strip()
        if len(line) <= MIN_LINE_LENGTH:
            continue
        cleaned = _LEADING_BULLET.sub("", line)
        if cleaned:
            lines.append(cleaned)
    return lines


class ReportAssembler:
    """Holds the latest performance report for the active project.

    Numeric fields are replaced synchronously by ``refresh``. The narrative is
    filled in later by ``apply_recommendation``; every refresh issues a new
    sequence number and only the response for the latest one is applied.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._report = PerformanceReport()
        self._sequence = 0
        self._ready = False

    @property
    def ready(self) -> bool:
        with self._lock:
            return self._ready

    @property
    def latest_sequence(self) -> int:
        with self._lock:
            return self._sequence

    def mark_ready(self):
        with self._lock:
            self._ready = True

    def snapshot(self) -> PerformanceReport:
        with self._lock:
            return PerformanceReport(
                overall_accuracy=self._report.overall_accuracy,
                total_questions_answered=self._report.total_questions_answered,
                subjects=list(self._report.subjects),
                ai_recommendations=self._report.ai_recommendations,
                recommendation_status=self._report.recommendation_status,
            )

    def refresh(self, attempts: Sequence[AttemptRecord]) -> Optional[RecommendationRequest]:
        with self._lock:
            return self._refresh_locked(attempts)

    def refresh_from(self, load_attempts: Callable[[], Sequence[AttemptRecord]]) -> Optional[RecommendationRequest]:
        """Load the attempt list and recompute, holding the lock throughout.

        Concurrent refreshes are serialized from read to write, so the report
        always reflects the attempts as they were when the last refresh ran.
        """
        with self._lock:
            return self._refresh_locked(load_attempts() if self._ready else [])

    def _refresh_locked(self, attempts: Sequence[AttemptRecord]) -> Optional[RecommendationRequest]:
        if not self._ready:
            logger.info("Skipping report refresh until stored files have been loaded")
            return None

        summary = aggregate_performance(attempts)

        self._sequence += 1
        self._report.overall_accuracy = summary.overall_accuracy
        self._report.total_questions_answered = summary.total_questions_answered
        self._report.subjects = list(summary.subjects)

        if not attempts:
            self._report.ai_recommendations = NO_DATA_NARRATIVE
            self._report.recommendation_status = "empty"
            return None

        self._report.recommendation_status = "pending"
        return RecommendationRequest(sequence=self._sequence, subjects=list(summary.subjects))

    def apply_recommendation(self, sequence: int, text: str) -> bool:
        with self._lock:
            if sequence != self._sequence:
                logger.info(
                    "Discarding stale recommendation (sequence=%s, latest=%s)", sequence, self._sequence
                )
                return False
            self._report.ai_recommendations = text
            self._report.recommendation_status = "ready"
            return True

    def fail_recommendation(self, sequence: int, exc: BaseException):
        logger.warning("Recommendation request %s failed: %s", sequence, exc)
        with self._lock:
            if sequence == self._sequence:
                self._report.recommendation_status = "stale"
