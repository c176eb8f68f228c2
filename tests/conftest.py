from datetime import datetime, timedelta, timezone

import pytest

from exam_portal.core.models import AccessPolicy, Alternative, Exam, Profile, Question, Role
from exam_portal.core.services.change_feed import ChangeFeed
from exam_portal.core.services.memory_store import InMemoryArtifactUploader, InMemoryExamStore

NOW = datetime(2025, 5, 10, 12, 0, tzinfo=timezone.utc)


class FixedClock:
    """Callable clock that tests can move forward."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


def make_exam(
    exam_id: int = 0,
    *,
    series: str = "3A",
    area: str = "Matemática",
    title: str = "Prova 1",
    start_offset: timedelta = timedelta(hours=-1),
    end_offset: timedelta = timedelta(hours=1),
    policy: AccessPolicy = AccessPolicy.CLOSED,
    granted: frozenset = frozenset(),
) -> Exam:
    return Exam(
        id=exam_id,
        title=title,
        area=area,
        series=series,
        start_at=NOW + start_offset,
        end_at=NOW + end_offset,
        policy=policy,
        granted_student_ids=granted,
    )


def make_student(user_id: str = "s1", **overrides) -> Profile:
    fields = {
        "id": user_id,
        "role": Role.STUDENT,
        "email": f"{user_id}@example.com",
        "full_name": "MARIA SILVA",
        "enrollment_id": "2025001",
        "class_tag": "3A",
    }
    fields.update(overrides)
    return Profile(**fields)


def make_question(title: str = "Quanto vale 2 + 2?", correct: str = "B", order: int = 0, discipline=None) -> Question:
    return Question(
        id=0,
        exam_id=0,
        title=title,
        question_order=order,
        discipline=discipline,
        alternatives=(
            Alternative(letter="A", text="3", is_correct=correct == "A"),
            Alternative(letter="B", text="4", is_correct=correct == "B"),
            Alternative(letter="C", text="5", is_correct=correct == "C"),
        ),
    )


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def feed() -> ChangeFeed:
    return ChangeFeed()


@pytest.fixture
def store(feed: ChangeFeed) -> InMemoryExamStore:
    return InMemoryExamStore(feed)


@pytest.fixture
def uploader() -> InMemoryArtifactUploader:
    return InMemoryArtifactUploader()
