"""Ports for the collaborators the portal core reads from and writes to.

The relational store, the realtime feed and the file storage live outside
this package. The core only talks to them through these interfaces, so any
transport that honours the contracts can back it.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum

from exam_portal.core.models import (
    AccessPolicy,
    Exam,
    ExamId,
    Profile,
    Question,
    QuestionId,
    Role,
    Submission,
    UserId,
)


class ChangeScope(Enum):
    """Tables whose changes invalidate access decisions."""

    EXAMS = "exams"
    ACCESS_GRANTS = "access_grants"
    SUBMISSIONS = "submissions"
    PROFILE = "profile"


class SubmissionOutcome(Enum):
    """Result of a submission write. Both values mean the answers are stored."""

    CREATED = "created"
    ALREADY_EXISTS = "already_exists"


@dataclass(slots=True, frozen=True)
class ExamScope:
    """Which exams a listing may include. ``class_tag=None`` means every exam."""

    class_tag: str | None = None
    include_all: bool = False

    @classmethod
    def for_profile(cls, profile: Profile) -> ExamScope:
        if profile.role is Role.ADMIN:
            return cls(include_all=True)
        return cls(class_tag=profile.class_tag)

    def includes(self, exam: Exam) -> bool:
        if self.include_all:
            return True
        return self.class_tag is not None and exam.series == self.class_tag


class ExamStore(ABC):
    """Authoritative store of profiles, exams, grants and submissions.

    Every read returns a fresh snapshot. Implementations raise
    ``StoreUnavailableError`` when the store cannot be reached.
    """

    @abstractmethod
    async def fetch_profile(self, user_id: UserId) -> Profile | None:
        """Return the profile, or ``None`` when it does not exist."""
        ...

    @abstractmethod
    async def fetch_profiles(self, user_ids: set[UserId]) -> dict[UserId, Profile]:
        ...

    @abstractmethod
    async def fetch_students(self) -> list[Profile]:
        ...

    @abstractmethod
    async def save_profile(self, profile: Profile) -> Profile:
        ...

    @abstractmethod
    async def fetch_exams(self, scope: ExamScope) -> list[Exam]:
        """Return exams in scope, each with its individual grant set."""
        ...

    @abstractmethod
    async def fetch_exam(self, exam_id: ExamId) -> Exam | None:
        ...

    @abstractmethod
    async def fetch_exam_content(self, exam_id: ExamId) -> list[Question]:
        ...

    @abstractmethod
    async def save_exam(self, exam: Exam, questions: list[Question] | None = None) -> Exam:
        """Insert or update an exam. ``questions=None`` keeps existing content."""
        ...

    @abstractmethod
    async def delete_exam(self, exam_id: ExamId) -> None:
        ...

    @abstractmethod
    async def set_access_policy(self, exam_id: ExamId, policy: AccessPolicy) -> Exam:
        ...

    @abstractmethod
    async def set_individual_access(self, exam_id: ExamId, student_id: UserId, grant: bool) -> Exam:
        ...

    @abstractmethod
    async def fetch_submitted_exam_ids(self, student_id: UserId) -> set[ExamId]:
        ...

    @abstractmethod
    async def fetch_submissions(self, exam_id: ExamId) -> list[Submission]:
        ...

    @abstractmethod
    async def create_submission(
        self,
        exam_id: ExamId,
        student_id: UserId,
        answers: dict[QuestionId, str],
    ) -> SubmissionOutcome:
        """Store the answers once per (exam, student) pair.

        A second write for the same pair returns ``ALREADY_EXISTS`` and leaves
        the stored record untouched.
        """
        ...


class ArtifactUploader(ABC):
    """File storage receiving result transcripts."""

    @abstractmethod
    async def upload_result_artifact(
        self,
        student_id: UserId,
        exam_id: ExamId,
        path: str,
        document: bytes,
    ) -> None:
        ...
