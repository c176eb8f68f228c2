"""Validation and normalization of authored question content."""

from __future__ import annotations

from dataclasses import replace

from exam_portal.constants.exam_constants import (
    ALTERNATIVE_LETTERS,
    MAX_QUESTION_IMAGES,
    MIN_ALTERNATIVES,
)
from exam_portal.core.errors import ExamContentError
from exam_portal.core.models import Alternative, Question


def normalize_question(question: Question) -> Question:
    """Validate a question and return a cleaned copy.

    Raises ``ExamContentError`` when the question cannot be stored.
    """
    title = question.title.strip()
    if not title:
        raise ExamContentError("Question title must not be empty.")

    alternatives = _normalize_alternatives(question.alternatives)

    image_urls = tuple(url.strip() for url in question.image_urls if url and url.strip())
    if len(image_urls) > MAX_QUESTION_IMAGES:
        raise ExamContentError(f"A question may carry at most {MAX_QUESTION_IMAGES} images.")

    long_text = question.long_text.strip() if question.long_text else None
    discipline = question.discipline.strip() if question.discipline else None

    return replace(
        question,
        title=title,
        alternatives=alternatives,
        image_urls=image_urls,
        long_text=long_text or None,
        discipline=discipline or None,
    )


def _normalize_alternatives(alternatives: tuple[Alternative, ...]) -> tuple[Alternative, ...]:
    if not MIN_ALTERNATIVES <= len(alternatives) <= len(ALTERNATIVE_LETTERS):
        raise ExamContentError(
            f"Each question needs between {MIN_ALTERNATIVES} and {len(ALTERNATIVE_LETTERS)} alternatives."
        )

    cleaned: list[Alternative] = []
    seen_letters: set[str] = set()
    for alternative in alternatives:
        letter = alternative.letter.strip().upper()
        if letter not in ALTERNATIVE_LETTERS:
            raise ExamContentError(f"Unknown alternative letter '{alternative.letter}'.")
        if letter in seen_letters:
            raise ExamContentError(f"Alternative letter '{letter}' is used twice.")
        text = alternative.text.strip()
        if not text:
            raise ExamContentError("Alternative text cannot be empty.")
        seen_letters.add(letter)
        cleaned.append(replace(alternative, letter=letter, text=text))

    correct_count = sum(1 for alternative in cleaned if alternative.is_correct)
    if correct_count != 1:
        raise ExamContentError("Exactly one alternative must be marked as correct.")

    return tuple(sorted(cleaned, key=lambda alt: ALTERNATIVE_LETTERS.index(alt.letter)))
