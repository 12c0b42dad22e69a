"""Best-effort recovery of JSON from LLM output.

Models wrap JSON in prose, fence it in markdown, or get cut off by the token
limit halfway through an array. `parse_json_lenient` tries progressively more
forgiving strategies; `repair_truncated_json` closes whatever the model left
open, cutting back to the last complete value. It never invents keys or
values beyond closing an unterminated string.
"""

import json
import re

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*([\s\S]*?)(?:```|$)")
_LITERAL_RE = re.compile(r"-?\d+(?:\.\d+)?(?:[eE][+-]?\d+)?|true|false|null")
_PARTIAL_ESCAPE_RE = re.compile(r"\\u[0-9a-fA-F]{0,3}$")
_CLOSERS = {"{": "}", "[": "]"}


def strip_code_fences(text: str) -> str:
    """Return the body of the first ``` fence, or the text unchanged."""
    if not text:
        return ""
    m = _FENCE_RE.search(text)
    if m:
        return m.group(1).strip()
    return text.strip()


def extract_json_block(text: str) -> str:
    """Return text from the first '{' or '[' to the end ('' if neither occurs)."""
    if not text:
        return ""
    starts = [i for i in (text.find("{"), text.find("[")) if i != -1]
    if not starts:
        return ""
    return text[min(starts):]


def _openers(text: str) -> list[int]:
    return [i for i, ch in enumerate(text) if ch in "{["]


def _repair_from(candidate: str) -> tuple[str, int, bool]:
    """Scan one JSON block from its opening bracket.

    Returns (repaired text, characters consumed, ok). ok is False when the
    scan hit something that cannot be JSON (a bad literal or a mismatched
    closer), meaning the opener was prose rather than the start of a value.
    """
    out: list[str] = []
    # each frame: [opening char, state]; object states: key | colon | value | after
    stack: list[list[str]] = []
    good_len = 0
    good_stack: list[str] = []
    in_string = False
    escape = False
    literal_start = None

    def mark():
        nonlocal good_len, good_stack
        good_len = len(out)
        good_stack = [frame[0] for frame in stack]

    def value_done():
        if stack and stack[-1][0] == "{":
            frame = stack[-1]
            if frame[1] == "key":
                frame[1] = "colon"
                return
            frame[1] = "after"
        mark()

    for pos, ch in enumerate(candidate):
        if in_string:
            out.append(ch)
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
                value_done()
            continue

        if literal_start is not None:
            if ch not in ",]}: \t\r\n":
                out.append(ch)
                continue
            token = "".join(out[literal_start:])
            literal_start = None
            if not _LITERAL_RE.fullmatch(token):
                return "", pos, False
            value_done()

        if ch == '"':
            in_string = True
            out.append(ch)
        elif ch in "{[":
            out.append(ch)
            stack.append([ch, "key" if ch == "{" else "value"])
            mark()
        elif ch in "}]":
            if not stack or _CLOSERS[stack[-1][0]] != ch:
                return "", pos, False
            while out and out[-1].isspace():
                out.pop()
            if out and out[-1] == ",":
                out.pop()
            out.append(ch)
            stack.pop()
            value_done()
            if not stack:
                return "".join(out), pos + 1, True
        elif ch == ":":
            if stack and stack[-1][0] == "{":
                stack[-1][1] = "value"
            out.append(ch)
        elif ch == ",":
            if stack and stack[-1][0] == "{":
                stack[-1][1] = "key"
            out.append(ch)
        elif ch.isspace():
            out.append(ch)
        else:
            literal_start = len(out)
            out.append(ch)

    # ran off the end of the input: finish the token we were inside
    if in_string:
        is_key = bool(stack) and stack[-1][0] == "{" and stack[-1][1] == "key"
        if not is_key:
            if escape:
                out.pop()
            partial = _PARTIAL_ESCAPE_RE.search("".join(out))
            if partial:
                del out[partial.start():]
            out.append('"')
            value_done()
    elif literal_start is not None and _LITERAL_RE.fullmatch("".join(out[literal_start:])):
        value_done()

    repaired = "".join(out[:good_len]).rstrip()
    return repaired + "".join(_CLOSERS[c] for c in reversed(good_stack)), len(candidate), True


def repair_truncated_json(text: str) -> str:
    """Close a truncated JSON document.

    Each '{' or '[' is tried as the start of the document, skipping openers
    that turn out to be prose (e.g. "[see below]"). For the longest block
    that scans cleanly, the output is cut back to the last complete value
    (dropping a dangling key, colon or comma), an unterminated string value
    is closed, trailing commas before a closer are removed, and the brackets
    still open at the cut point are closed in reverse order.
    """
    source = strip_code_fences(text or "")
    best, best_len, covered_to = "", 0, -1
    for i in _openers(source):
        if i < covered_to:
            continue
        repaired, consumed, ok = _repair_from(source[i:])
        if not ok:
            continue
        covered_to = i + consumed
        if consumed > best_len:
            best, best_len = repaired, consumed
    return best


def _recover_embedded(text: str):
    """Longest JSON value starting at some '{' or '[' in the text.

    Each opener is first decoded as-is, then repaired as a truncated
    document. Openers inside an accepted value are skipped.
    """
    decoder = json.JSONDecoder()
    best, best_len, covered_to = None, 0, -1
    for i in _openers(text):
        if i < covered_to:
            continue
        try:
            value, end = decoder.raw_decode(text, i)
        except ValueError:
            repaired, consumed, ok = _repair_from(text[i:])
            if not ok:
                continue
            try:
                value = json.loads(repaired)
            except ValueError:
                continue
            end = i + consumed
        covered_to = end
        if end - i > best_len:
            best, best_len = value, end - i
    return best, best_len > 0


def parse_json_lenient(text: str, default=None):
    """Parse JSON with fallback extraction and truncation repair."""
    if not text or not text.strip():
        return default
    fenced = strip_code_fences(text)
    for candidate in (text, fenced):
        try:
            return json.loads(candidate)
        except ValueError:
            continue
    value, found = _recover_embedded(fenced)
    return value if found else default


def extract_items(data, *keys: str) -> list:
    """Pull a list of items out of a parsed reply that may be a list or a wrapper object."""
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        for key in keys + ("items",):
            value = data.get(key)
            if isinstance(value, list):
                return value
    return []
