import unicodedata
from datetime import datetime

from fpdf import FPDF
from fpdf.enums import XPos, YPos

_REPLACEMENTS = {
    "‘": "'", "’": "'", "“": '"', "”": '"',
    "–": "-", "—": "-", "•": "-", "…": "...",
    " ": " ", "→": "->", "←": "<-", "≤": "<=", "≥": ">=",
}


def to_latin1(text) -> str:
    """Transliterate to Latin-1 so the core PDF fonts can render it."""
    s = str(text or "")
    for src, dst in _REPLACEMENTS.items():
        s = s.replace(src, dst)
    try:
        s.encode("latin-1")
        return s
    except UnicodeEncodeError:
        pass
    out = []
    for ch in s:
        try:
            ch.encode("latin-1")
            out.append(ch)
        except UnicodeEncodeError:
            decomposed = unicodedata.normalize("NFKD", ch).encode("latin-1", "ignore").decode("latin-1")
            out.append(decomposed or "?")
    return "".join(out)


class LearningReportPDF(FPDF):
    def footer(self):
        self.set_y(-15)
        self.set_font("Helvetica", "I", 8)
        self.set_text_color(128, 128, 128)
        self.cell(0, 10, f"Page {self.page_no()}", align="C")
        self.set_text_color(0, 0, 0)

    def line_text(self, text, size=11, style="", height=6, align="L"):
        self.set_font("Helvetica", style, size)
        self.multi_cell(0, height, to_latin1(text), align=align, new_x=XPos.LMARGIN, new_y=YPos.NEXT)

    def section_title(self, title):
        self.line_text(title, size=14, style="B", height=8)
        self.ln(2)


def build_learning_report(material: dict, messages: list, quizzes: list, glossary: list, flashcards: list) -> bytes:
    pdf = LearningReportPDF()
    pdf.set_margins(18, 18, 18)
    pdf.set_auto_page_break(auto=True, margin=18)
    pdf.add_page()

    pdf.line_text("Learning Report", size=24, style="B", height=12, align="C")
    pdf.ln(2)
    pdf.line_text(material.get("title") or "Untitled Material", size=16, style="B", height=9, align="C")
    pdf.line_text(f"Generated on: {datetime.now().strftime('%Y-%m-%d')}", size=10, align="C")
    pdf.ln(8)

    summary = material.get("summary")
    if summary:
        pdf.section_title("Summary")
        pdf.line_text(summary)
        pdf.ln(8)

    if glossary:
        pdf.section_title("Glossary & Key Terms")
        for term in glossary:
            pdf.line_text(term.get("term", ""), style="B")
            pdf.line_text(term.get("definition", ""))
            pdf.ln(2)
        pdf.ln(6)

    if flashcards:
        pdf.section_title("Flashcards")
        for card in flashcards:
            pdf.line_text(f"Q: {card.get('front', '')}", style="B")
            pdf.line_text(f"A: {card.get('back', '')}")
            pdf.ln(2)
        pdf.ln(6)

    if messages:
        pdf.section_title("Key Discussions")
        for msg in messages:
            if msg.get("role") == "user":
                pdf.set_text_color(85, 85, 85)
                pdf.line_text("You", style="B")
            else:
                pdf.line_text("AI Assistant", style="B")
            pdf.set_text_color(0, 0, 0)
            pdf.line_text(msg.get("content", ""))
            pdf.ln(2)
        pdf.ln(6)

    if quizzes:
        pdf.add_page()
        pdf.section_title("Practice Questions")
        for i, quiz in enumerate(quizzes, start=1):
            pdf.line_text(f"{i}. {quiz.get('question', '')}", style="B")
            for idx, opt in enumerate(quiz.get("options") or []):
                style = "BI" if idx == quiz.get("answer") else ""
                pdf.line_text(f"   {chr(97 + idx)}) {opt}", style=style)
            if quiz.get("hint"):
                pdf.set_text_color(128, 128, 128)
                pdf.line_text(f"   Hint: {quiz['hint']}", size=10, style="I")
                pdf.set_text_color(0, 0, 0)
            pdf.ln(4)

    return bytes(pdf.output())
