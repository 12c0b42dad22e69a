import re
import unicodedata


def estimate_tokens(s: str) -> int:
    """Estimate the number of tokens in a string."""
    return max(1, int(len(s or "") / 4))


def clip(s: str | None, limit: int | None) -> str:
    """Slice text to at most `limit` characters."""
    s = s or ""
    if limit is None or limit <= 0:
        return s
    return s[:limit]


def normalize_text(s: str) -> str:
    """Normalize extracted document text for storage."""
    if not s:
        return ""
    t = unicodedata.normalize("NFKC", s)
    t = t.replace("\r\n", "\n").replace("\r", "\n")
    t = re.sub(r"[\x00-\x08\x0B\x0C\x0E-\x1F]", "", t)
    t = "\n".join(ln.rstrip() for ln in t.splitlines())
    t = re.sub(r"\n{3,}", "\n\n", t)
    return t.strip()


def sanitize_summary(s: str) -> str:
    """Remove unwanted follow-up offers from LLM-generated text."""
    if not s:
        return s
    banned = [
        "if you'd like", "i can turn this", "would you like", "let me know",
        "tailor it", "feel free to ask",
    ]
    keep: list[str] = []
    for ln in s.splitlines():
        low = ln.strip().lower()
        if not low:
            keep.append(ln)
            continue
        if any(p in low for p in banned):
            continue
        keep.append(ln)
    return "\n".join(keep).strip()


_LIST_ITEM = r"(?:\d+[.)]|[-*+])\s"


def clean_markdown_spacing(s: str) -> str:
    """Remove blank lines between consecutive list items.

    The frontend renders each blank-separated item as its own list, which
    restarts numbering.
    """
    if not s:
        return s
    pattern = re.compile(rf"(^[ \t]*{_LIST_ITEM}.*)\n[ \t]*\n(?=[ \t]*{_LIST_ITEM})", re.MULTILINE)
    prev = None
    out = s
    while prev != out:
        prev = out
        out = pattern.sub(r"\1\n", out)
    return out


def to_index_from_answer(ans, options: list[str]) -> int | None:
    """Convert an answer given as index, letter, "Option N" or option text to an index."""
    if ans is None or isinstance(ans, bool):
        return None
    if isinstance(ans, int):
        return ans if 0 <= ans < len(options) else None
    s = str(ans).strip()
    if not s:
        return None
    if s.isdigit():
        n = int(s)
        return n if 0 <= n < len(options) else None
    letters = {"a": 0, "b": 1, "c": 2, "d": 3}
    low = s.lower().rstrip(").:")
    if low in letters:
        return letters[low] if letters[low] < len(options) else None
    if low.startswith("option "):
        try:
            n = int(low.split("option ", 1)[1]) - 1
            return n if 0 <= n < len(options) else None
        except ValueError:
            pass
    try:
        return options.index(s)
    except ValueError:
        return None


def estimate_flashcard_count(text: str) -> int:
    """Heuristic to pick number of flashcards proportional to input size."""
    t = estimate_tokens(text or "")
    # Roughly 1 card per ~50 tokens, clamp to [5, 40]
    return max(5, min(40, t // 50))


def clamp_int(value, default: int, lo: int, hi: int) -> int:
    try:
        n = int(value)
    except (TypeError, ValueError):
        return default
    return max(lo, min(hi, n))


def as_bool(value) -> bool:
    """Read a JSON flag that may arrive as a bool, a number or a string like "false"."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "correct", "1")
    return bool(value)
