"""Result transcript handed to file storage after a submission is stored.

The transcript lists what the student chose. It never includes the answer
key, since the session that builds it only holds student-facing content.
"""

from __future__ import annotations

import re
import unicodedata
from datetime import datetime

from exam_portal.constants.exam_constants import (
    ARTIFACT_CLASS_PREFIX,
    ARTIFACT_EXTENSION,
    NO_RESPONSE_MARK,
)
from exam_portal.core.markdown_math_renderer import renderer
from exam_portal.core.models import Exam, Profile, QuestionId, StudentQuestion


def normalize_path_segment(value: str | None) -> str:
    """Strip accents, upper-case, turn whitespace into ``_`` and drop other punctuation."""
    if not value:
        return ""
    decomposed = unicodedata.normalize("NFD", value)
    without_marks = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    underscored = re.sub(r"\s+", "_", without_marks.upper())
    return re.sub(r"[^A-Z0-9_-]", "", underscored)


def artifact_path(exam: Exam, profile: Profile) -> str:
    """Storage path such as ``3A_MATEMATICA/TURMA_3A/2025001-MARIA_SILVA.html``."""
    main_folder = f"{normalize_path_segment(exam.series)}_{normalize_path_segment(exam.area)}"
    class_folder = f"{ARTIFACT_CLASS_PREFIX}{profile.class_tag or ''}"
    student_name = normalize_path_segment(profile.full_name)
    file_name = f"{profile.enrollment_id or profile.id}-{student_name}{ARTIFACT_EXTENSION}"
    return f"{main_folder}/{class_folder}/{file_name}"


def build_transcript(
    exam: Exam,
    profile: Profile,
    questions: list[StudentQuestion],
    answers: dict[QuestionId, str],
    submitted_at: datetime,
) -> bytes:
    lines = [
        f"# {_escape_cell(exam.title)}",
        "",
        f"**Student:** {_escape_cell(profile.full_name or profile.email or profile.id)}  ",
        f"**Enrollment:** {_escape_cell(profile.enrollment_id or '-')}  ",
        f"**Class:** {_escape_cell(profile.class_tag or '-')}  ",
        f"**Submitted at:** {submitted_at.strftime('%d/%m/%Y %H:%M')} UTC",
        "",
        "| # | Question | Answer |",
        "|---|---|---|",
    ]
    for number, question in enumerate(questions, start=1):
        chosen = answers.get(question.id, NO_RESPONSE_MARK)
        lines.append(f"| {number} | {_escape_cell(question.title)} | {chosen} |")

    answered = sum(1 for question in questions if question.id in answers)
    lines.extend(["", f"Answered {answered} of {len(questions)} questions."])

    document = renderer.render_document("\n".join(lines), title=exam.title)
    return document.encode("utf-8")


def _escape_cell(text: str) -> str:
    return text.replace("|", "\\|").replace("\n", " ")
