import pytest

from conftest import make_question
from exam_portal.core.errors import ExamContentError, ExamImportError
from exam_portal.core.exam_exporter import save_questions_to_file, serialize_questions
from exam_portal.core.exam_importer import load_questions_from_file, parse_question_bank
from exam_portal.core.models import Alternative, Question
from exam_portal.core.question_rules import normalize_question

_BANK = """\
Q: Quanto vale $2 + 2$?
TEXT: Considere a soma
de dois números.
DISCIPLINE: Matemática
IMAGE: https://example.com/a.png
A: 3
B: 4
CORRECT: b

---

Q: Capital do Brasil
A: Rio
B: São Paulo
C: Brasília
CORRECT: C
"""


class TestQuestionRules:
    def test_normalizes_letters_and_order(self):
        shuffled = Question(
            id=0,
            exam_id=0,
            title="  Título  ",
            alternatives=(
                Alternative(letter="b", text=" quatro ", is_correct=True),
                Alternative(letter="a", text="três"),
            ),
        )

        cleaned = normalize_question(shuffled)

        assert cleaned.title == "Título"
        assert [alt.letter for alt in cleaned.alternatives] == ["A", "B"]
        assert cleaned.correct_letter == "B"
        assert cleaned.alternatives[1].text == "quatro"

    @pytest.mark.parametrize(
        "alternatives",
        [
            (Alternative("A", "x", True),),
            (Alternative("A", "x", True), Alternative("A", "y")),
            (Alternative("A", "x"), Alternative("B", "y")),
            (Alternative("A", "x", True), Alternative("B", "y", True)),
            (Alternative("A", "x", True), Alternative("F", "y")),
            (Alternative("A", "x", True), Alternative("B", "  ")),
        ],
    )
    def test_rejects_malformed_alternatives(self, alternatives):
        question = Question(id=0, exam_id=0, title="T", alternatives=alternatives)
        with pytest.raises(ExamContentError):
            normalize_question(question)

    def test_rejects_more_than_two_images(self):
        question = make_question()
        too_many = Question(
            id=0,
            exam_id=0,
            title="T",
            alternatives=question.alternatives,
            image_urls=("a", "b", "c"),
        )
        with pytest.raises(ExamContentError):
            normalize_question(too_many)


class TestImporter:
    def test_parses_every_section(self):
        first, second = parse_question_bank(_BANK)

        assert first.title == "Quanto vale $2 + 2$?"
        assert first.long_text == "Considere a soma\nde dois números."
        assert first.discipline == "Matemática"
        assert first.image_urls == ("https://example.com/a.png",)
        assert first.correct_letter == "B"
        assert first.question_order == 1
        assert second.discipline is None
        assert [alt.letter for alt in second.alternatives] == ["A", "B", "C"]
        assert second.question_order == 2

    def test_missing_correct_is_an_error(self):
        with pytest.raises(ExamImportError, match="CORRECT"):
            parse_question_bank("Q: T\nA: x\nB: y\n")

    def test_correct_must_name_an_alternative(self):
        with pytest.raises(ExamImportError):
            parse_question_bank("Q: T\nA: x\nB: y\nCORRECT: D\n")

    def test_single_alternative_is_an_error(self):
        with pytest.raises(ExamImportError):
            parse_question_bank("Q: T\nA: x\nCORRECT: A\n")

    def test_text_outside_sections_is_an_error(self):
        with pytest.raises(ExamImportError, match="outside"):
            parse_question_bank("stray line\nQ: T\nA: x\nB: y\nCORRECT: A\n")

    def test_empty_bank_is_an_error(self):
        with pytest.raises(ExamImportError):
            parse_question_bank("\n---\n")

    def test_load_from_file(self, tmp_path):
        path = tmp_path / "bank.txt"
        path.write_text(_BANK, encoding="utf-8")

        imported = load_questions_from_file(path)

        assert imported.source_path == path
        assert len(imported.questions) == 2


class TestExporter:
    def test_export_can_be_imported_again(self, tmp_path):
        questions = parse_question_bank(_BANK)
        path = tmp_path / "out" / "bank.txt"

        save_questions_to_file(path, questions)
        reloaded = load_questions_from_file(path).questions

        assert [q.title for q in reloaded] == [q.title for q in questions]
        assert [q.correct_letter for q in reloaded] == ["B", "C"]
        assert reloaded[0].long_text == questions[0].long_text

    def test_blank_lines_in_long_text_are_collapsed(self):
        question = make_question()
        with_paragraphs = Question(
            id=0,
            exam_id=0,
            title="T",
            alternatives=question.alternatives,
            long_text="first\n\nsecond",
        )

        text = serialize_questions([with_paragraphs])

        assert "TEXT: first\nsecond" in text
        assert "CORRECT: B" in text

    def test_refuses_empty_export(self, tmp_path):
        with pytest.raises(ValueError):
            save_questions_to_file(tmp_path / "x.txt", [])
