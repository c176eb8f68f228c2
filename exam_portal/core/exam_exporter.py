"""Utilities for exporting exam questions to the plain-text import format."""

from __future__ import annotations

from pathlib import Path

from exam_portal.core.models import Question


def save_questions_to_file(file_path: Path, questions: list[Question]) -> None:
    """Persist the provided questions to disk in the text import format."""

    if not questions:
        raise ValueError("Cannot export an exam without questions.")

    file_path = file_path.resolve()
    file_path.parent.mkdir(parents=True, exist_ok=True)
    file_path.write_text(serialize_questions(questions), encoding="utf-8")


def serialize_questions(questions: list[Question]) -> str:
    ordered = sorted(questions, key=lambda q: q.question_order)
    blocks = [_serialize_question(question) for question in ordered]
    return "\n\n---\n\n".join(blocks) + "\n"


def _serialize_question(question: Question) -> str:
    lines = _with_marker("Q", question.title)

    if question.long_text:
        lines.extend(_with_marker("TEXT", _collapse_blank_lines(question.long_text)))
    if question.discipline:
        lines.append(f"DISCIPLINE: {question.discipline}")
    for url in question.image_urls:
        lines.append(f"IMAGE: {url}")

    for alternative in question.alternatives:
        lines.extend(_with_marker(alternative.letter, alternative.text))

    if question.correct_letter is not None:
        lines.append(f"CORRECT: {question.correct_letter}")

    return "\n".join(lines)


def _with_marker(marker: str, text: str) -> list[str]:
    text_lines = text.splitlines() or [text]
    return [f"{marker}: {text_lines[0]}", *text_lines[1:]]


def _collapse_blank_lines(text: str) -> str:
    # Blank lines would end the block on import.
    return "\n".join(line for line in text.splitlines() if line.strip())
