"""Domain models for the exam portal."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from exam_portal.constants.exam_constants import PASSING_SHARE

ExamId = int
UserId = str
QuestionId = int


class Role(Enum):
    """Closed set of user roles."""

    STUDENT = "student"
    PROFESSOR = "professor"
    ADMIN = "admin"

    @property
    def is_staff(self) -> bool:
        return self is not Role.STUDENT


class AccessPolicy(Enum):
    """Exam-wide access setting."""

    CLOSED = "closed"
    OPEN_TO_ALL = "open_to_all"


class AccessStatus(Enum):
    """Derived status of one exam for one user. Never persisted."""

    COMPLETED = "completed"
    EXPIRED = "expired"
    LOCKED_PERMISSION = "locked_permission"
    LOCKED_TIME = "locked_time"
    AVAILABLE = "available"


@dataclass(slots=True, frozen=True)
class Exam:
    """One scheduled assessment, without its question content."""

    id: ExamId
    title: str
    area: str
    series: str
    start_at: datetime
    end_at: datetime
    policy: AccessPolicy = AccessPolicy.CLOSED
    granted_student_ids: frozenset[UserId] = frozenset()


@dataclass(slots=True, frozen=True)
class Profile:
    """Authenticated user as stored in the profiles table."""

    id: UserId
    role: Role
    email: str | None = None
    full_name: str | None = None
    enrollment_id: str | None = None
    class_tag: str | None = None
    is_blocked: bool = False

    @property
    def is_complete(self) -> bool:
        """Students need name, enrollment id and class before taking any exam."""
        if self.role is not Role.STUDENT:
            return True
        return bool(self.full_name and self.enrollment_id and self.class_tag)


@dataclass(slots=True, frozen=True)
class Alternative:
    """One multiple-choice alternative, including its correctness flag."""

    letter: str
    text: str
    is_correct: bool = False
    id: int | None = None


@dataclass(slots=True, frozen=True)
class StudentAlternative:
    """Alternative as shown to a student. Carries no correctness information."""

    id: int | None
    letter: str
    text: str


@dataclass(slots=True, frozen=True)
class StudentQuestion:
    """Question as shown to a student."""

    id: QuestionId
    title: str
    question_order: int
    alternatives: tuple[StudentAlternative, ...]
    long_text: str | None = None
    discipline: str | None = None
    image_urls: tuple[str, ...] = ()


@dataclass(slots=True, frozen=True)
class Question:
    """Authoritative question content, only read by staff and scoring code."""

    id: QuestionId
    exam_id: ExamId
    title: str
    alternatives: tuple[Alternative, ...]
    question_order: int = 0
    long_text: str | None = None
    discipline: str | None = None
    image_urls: tuple[str, ...] = ()

    @property
    def correct_letter(self) -> str | None:
        return next((alt.letter for alt in self.alternatives if alt.is_correct), None)

    def for_student(self) -> StudentQuestion:
        """Return a copy with every correctness flag removed."""
        return StudentQuestion(
            id=self.id,
            title=self.title,
            question_order=self.question_order,
            alternatives=tuple(
                StudentAlternative(id=alt.id, letter=alt.letter, text=alt.text)
                for alt in self.alternatives
            ),
            long_text=self.long_text,
            discipline=self.discipline,
            image_urls=self.image_urls,
        )


@dataclass(slots=True, frozen=True)
class Submission:
    """The one permanent record of a student's answers to an exam."""

    exam_id: ExamId
    student_id: UserId
    answers: dict[QuestionId, str]
    created_at: datetime


@dataclass(slots=True, frozen=True)
class ExamCard:
    """Exam entry of a listing, tagged with its advisory status."""

    exam: Exam
    status: AccessStatus


@dataclass(slots=True)
class ExamArea:
    """Listing group for one subject area."""

    area: str
    exams: list[ExamCard] = field(default_factory=list)


@dataclass(slots=True)
class DisciplineScore:
    correct: int = 0
    total: int = 0


@dataclass(slots=True)
class StudentResultDetail:
    """Aggregated result of one submission."""

    student_id: UserId
    full_name: str
    enrollment_id: str
    class_tag: str
    total_questions: int
    total_correct: int
    score_by_discipline: dict[str, DisciplineScore]

    @property
    def passed(self) -> bool:
        if self.total_questions <= 0:
            return False
        return self.total_correct / self.total_questions >= PASSING_SHARE
