"""Utilities for importing exam questions from a human-friendly text file.

File format (repeat blocks separated by blank lines or '---'):

    Q: Question title. Continuation lines belong to the title.
    TEXT: Optional long text (markdown + LaTeX). Continuation lines allowed.
    DISCIPLINE: Optional discipline name
    IMAGE: Optional image URL (at most two lines)
    A: First alternative
    B: Second alternative
    ...            (two to five alternatives, A-E)
    CORRECT: A|B|C|D|E

Example:

    Q: Quanto vale $2 + 2$?
    DISCIPLINE: Matemática
    A: 3
    B: 4
    CORRECT: B

Blank lines end a block, so a long text with paragraphs must be written with
its paragraphs separated by continuation lines instead.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from exam_portal.constants.exam_constants import ALTERNATIVE_LETTERS
from exam_portal.core.errors import ExamContentError, ExamImportError
from exam_portal.core.models import Alternative, Question
from exam_portal.core.question_rules import normalize_question


@dataclass(slots=True)
class ImportedQuestionBank:
    """Container for the source path and parsed questions."""

    source_path: Path | None
    questions: list[Question]


def load_questions_from_file(file_path: Path) -> ImportedQuestionBank:
    text = file_path.read_text(encoding="utf-8")
    questions = parse_question_bank(text)
    return ImportedQuestionBank(source_path=file_path, questions=questions)


def parse_question_bank(text: str) -> list[Question]:
    """Parse question bank text. Raises ``ExamImportError`` on malformed input."""
    questions = [
        _parse_block(block, position)
        for position, block in enumerate(_split_blocks(text), start=1)
    ]
    if not questions:
        raise ExamImportError("Question bank did not contain any questions.")
    return questions


def _split_blocks(text: str) -> list[str]:
    blocks: list[str] = []
    current_block: list[str] = []
    for raw_line in text.splitlines():
        stripped = raw_line.strip()
        if stripped == "---" or not stripped:
            if current_block:
                blocks.append("\n".join(current_block))
                current_block = []
            continue
        current_block.append(raw_line)
    if current_block:
        blocks.append("\n".join(current_block))
    return blocks


def _parse_block(block: str, position: int) -> Question:
    title_lines: list[str] = []
    long_text_lines: list[str] = []
    discipline: str | None = None
    image_urls: list[str] = []
    alternatives: dict[str, str] = {}
    correct_letter: str | None = None
    current_section: str | None = None

    for raw_line in block.splitlines():
        line = raw_line.strip()
        upper = line.upper()

        if upper.startswith("Q:"):
            title_lines = [line[2:].strip()]
            current_section = "Q"
            continue
        if upper.startswith("TEXT:"):
            long_text_lines = [line[5:].strip()]
            current_section = "TEXT"
            continue
        if upper.startswith("DISCIPLINE:"):
            discipline = line.split(":", 1)[1].strip()
            current_section = None
            continue
        if upper.startswith("IMAGE:"):
            image_urls.append(line.split(":", 1)[1].strip())
            current_section = None
            continue
        if upper.startswith("CORRECT:"):
            correct_letter = line.split(":", 1)[1].strip().upper()
            current_section = None
            continue

        if len(line) > 2 and line[0].upper() in ALTERNATIVE_LETTERS and line[1] == ":":
            letter = line[0].upper()
            if letter in alternatives:
                raise ExamImportError(f"Question {position}: alternative {letter} is defined twice.")
            alternatives[letter] = line[2:].strip()
            current_section = letter
            continue

        if current_section == "Q":
            title_lines.append(line)
        elif current_section == "TEXT":
            long_text_lines.append(line)
        elif current_section in alternatives:
            alternatives[current_section] = f"{alternatives[current_section]}\n{line}"
        else:
            raise ExamImportError(f"Question {position}: text outside of a known section: '{line}'.")

    title = "\n".join(title_lines).strip()
    if not title:
        raise ExamImportError(f"Question {position}: title missing (Q: ...).")
    if correct_letter is None:
        raise ExamImportError(f"Question {position}: CORRECT is required.")
    if correct_letter not in alternatives:
        raise ExamImportError(f"Question {position}: CORRECT must name one of {', '.join(alternatives) or 'A-E'}.")

    question = Question(
        id=0,  # assigned by the store
        exam_id=0,
        title=title,
        question_order=position,
        long_text="\n".join(long_text_lines).strip() or None,
        discipline=discipline or None,
        image_urls=tuple(image_urls),
        alternatives=tuple(
            Alternative(letter=letter, text=text, is_correct=letter == correct_letter)
            for letter, text in alternatives.items()
        ),
    )
    try:
        return normalize_question(question)
    except ExamContentError as exc:
        raise ExamImportError(f"Question {position}: {exc}") from exc
