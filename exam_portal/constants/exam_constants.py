"""Exam-related constants shared across the core and server layers."""

QUESTIONS_PER_PAGE: int = 5
FINISHED_SESSIONS_KEPT: int = 500
CLASS_TAGS: tuple[str, ...] = ("1A", "2A", "2B", "3A", "3B")
ALTERNATIVE_LETTERS: tuple[str, ...] = ("A", "B", "C", "D", "E")
MIN_ALTERNATIVES: int = 2
MAX_QUESTION_IMAGES: int = 2

PROFILE_SAVE_ATTEMPTS: int = 3
PROFILE_SAVE_BACKOFF_SECONDS: float = 1.0

PASSING_SHARE: float = 0.6
DEFAULT_DISCIPLINE: str = "Geral"
NO_RESPONSE_MARK: str = "N/R"
ARTIFACT_CLASS_PREFIX: str = "TURMA_"
ARTIFACT_EXTENSION: str = ".html"
