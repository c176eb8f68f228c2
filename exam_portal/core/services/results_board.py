"""Service for aggregating the stored submissions of one exam."""

from __future__ import annotations

from dataclasses import dataclass

from exam_portal.constants.exam_constants import DEFAULT_DISCIPLINE
from exam_portal.core.models import (
    DisciplineScore,
    Exam,
    Profile,
    Question,
    StudentResultDetail,
    Submission,
    UserId,
)


@dataclass(slots=True)
class ResultsSummary:
    """Snapshot returned to staff consumers."""

    exam: Exam
    rows: list[StudentResultDetail]
    eligible_students: int

    @property
    def participants(self) -> int:
        return len(self.rows)

    @property
    def participation_share(self) -> float:
        if self.eligible_students <= 0:
            return 0.0
        return self.participants / self.eligible_students

    @property
    def average_percent(self) -> float:
        scored = [row for row in self.rows if row.total_questions > 0]
        if not scored:
            return 0.0
        return sum(100.0 * row.total_correct / row.total_questions for row in scored) / len(scored)

    @property
    def passed_count(self) -> int:
        return sum(1 for row in self.rows if row.passed)


class ResultsBoard:
    """Scores submissions against the answer key."""

    def __init__(self, questions: list[Question]) -> None:
        self._questions = sorted(questions, key=lambda q: q.question_order)

    def score(self, submission: Submission, profile: Profile | None) -> StudentResultDetail:
        """Return the per-discipline result of one submission."""
        by_discipline: dict[str, DisciplineScore] = {}
        total_correct = 0
        for question in self._questions:
            discipline = question.discipline or DEFAULT_DISCIPLINE
            entry = by_discipline.setdefault(discipline, DisciplineScore())
            entry.total += 1
            chosen = submission.answers.get(question.id)
            if chosen is not None and chosen == question.correct_letter:
                entry.correct += 1
                total_correct += 1

        return StudentResultDetail(
            student_id=submission.student_id,
            full_name=(profile.full_name if profile else None) or "N/A",
            enrollment_id=(profile.enrollment_id if profile else None) or "N/A",
            class_tag=(profile.class_tag if profile else None) or "N/A",
            total_questions=len(self._questions),
            total_correct=total_correct,
            score_by_discipline=by_discipline,
        )

    def summarize(
        self,
        exam: Exam,
        submissions: list[Submission],
        profiles: dict[UserId, Profile],
        eligible_students: int,
    ) -> ResultsSummary:
        rows = [self.score(submission, profiles.get(submission.student_id)) for submission in submissions]
        rows.sort(key=lambda row: (row.full_name, row.student_id))
        return ResultsSummary(exam=exam, rows=rows, eligible_students=eligible_students)
