"""Markdown + LaTeX rendering for question text and result transcripts.

Question long texts are authored in Markdown with ``$...$`` math. They are
rendered to HTML fragments on the server and MathJax typesets the math in the
browser, so the same source produces the exam page and the transcript.
Raw HTML in authored text is not passed through.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from html import escape

from markdown_it import MarkdownIt

_MATHJAX_SCRIPT = "https://cdn.jsdelivr.net/npm/mathjax@3/es5/tex-mml-chtml.js"


@dataclass(slots=True)
class MarkdownMathRenderer:
    """Converts markdown-with-math into HTML fragments or full documents."""

    enable_html: bool = False
    _markdown: MarkdownIt = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._markdown = (
            MarkdownIt("commonmark", {"html": self.enable_html})
            .enable("table")
            .enable("strikethrough")
        )

    def render_fragment(self, markdown_text: str | None) -> str:
        """Render a markdown string into an HTML fragment. Empty input gives an empty string."""
        sanitized = (markdown_text or "").strip()
        if not sanitized:
            return ""
        return self._markdown.render(sanitized)

    def render_document(self, markdown_text: str, title: str) -> str:
        """Render markdown into a standalone printable HTML document."""
        body_html = self.render_fragment(markdown_text)
        return f"""<!doctype html>
<html lang="pt-BR">
  <head>
    <meta charset="utf-8" />
    <title>{escape(title)}</title>
    <style>
      body {{ font-family: Arial, sans-serif; margin: 0; padding: 40px; font-size: 12px; color: #333; }}
      table {{ border-collapse: collapse; width: 100%; }}
      th, td {{ border: 1px solid #dee2e6; padding: 8px; text-align: center; }}
    </style>
    <script>
      window.MathJax = {{ tex: {{ inlineMath: [['$','$']], displayMath: [['$$','$$']] }}, svg: {{ fontCache: 'global' }} }};
    </script>
    <script defer src="{_MATHJAX_SCRIPT}"></script>
  </head>
  <body>
{body_html}  </body>
</html>"""


renderer = MarkdownMathRenderer()
# Shared instance; MarkdownIt renders are read-only, so one parser serves the
# whole process.
