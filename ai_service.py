"""
AI gateway layer.

Thin wrappers over an OpenAI-compatible chat completion endpoint. Each
generator builds its prompt from `prompts`, makes one call, and shapes or
repairs the reply. A failing non-default model (or a user's custom gateway)
is retried once on the default gateway and model before giving up.
"""

import logging
import re

from openai import OpenAI, OpenAIError

import prompts
from config import config
from json_repair import extract_items, parse_json_lenient
from text_utils import (
    as_bool,
    clamp_int,
    clean_markdown_spacing,
    clip,
    estimate_flashcard_count,
    sanitize_summary,
    to_index_from_answer,
)

logger = logging.getLogger(__name__)

SUMMARY_FALLBACK = "Unable to generate summary due to AI service error."
CHAT_FALLBACK = (
    "I apologize, but I'm having trouble connecting to the AI service right now. "
    "Please try again later."
)
EMPTY_REPLY = "I couldn't generate a response."

QUIZ_DIFFICULTIES = ("easy", "medium", "hard")
MAX_MIND_MAP_DEPTH = 4


class AIServiceError(Exception):
    """Raised when the gateway fails on both the requested and the default model."""


# ============================================================================
# CLIENTS
# ============================================================================

_default_client = None


def _get_default_client() -> OpenAI:
    global _default_client
    if _default_client is None:
        if not config.AI_API_KEY:
            logger.warning("AI_API_KEY not set; gateway calls will fail")
        _default_client = OpenAI(
            api_key=config.AI_API_KEY or "dummy-key-for-init",
            base_url=config.AI_API_URL,
        )
    return _default_client


def get_ai_client(custom: dict | None = None) -> tuple[OpenAI, str]:
    """Return (client, default model) for the default gateway or a user's custom one."""
    if custom and custom.get("customApiUrl"):
        client = OpenAI(
            api_key=custom.get("customApiKey") or "dummy-key-for-init",
            base_url=custom["customApiUrl"],
        )
        return client, custom.get("customModel") or config.AI_MODEL
    return _get_default_client(), config.AI_MODEL


def custom_config_for(user: dict | None) -> dict | None:
    if not user or not user.get("customApiUrl"):
        return None
    return {
        "customApiUrl": user.get("customApiUrl"),
        "customApiKey": user.get("customApiKey"),
        "customModel": user.get("customModel"),
    }


def max_tokens_for(user: dict | None) -> int:
    if not user:
        return config.DEFAULT_MAX_TOKENS
    if user.get("customApiUrl") and user.get("customMaxTokens"):
        return int(user["customMaxTokens"])
    return int(user.get("maxTokens") or config.DEFAULT_MAX_TOKENS)


def context_limit_for(user: dict | None) -> int:
    if not user:
        return config.DEFAULT_MAX_CONTEXT
    if user.get("customApiUrl") and user.get("customMaxContext"):
        return int(user["customMaxContext"])
    return int(user.get("maxContext") or config.DEFAULT_MAX_CONTEXT)


def model_for(user: dict | None, requested: str | None = None) -> str | None:
    """Pick the model for a request: explicit choice, custom model, then preference."""
    if requested:
        return requested
    if not user:
        return None
    if user.get("customApiUrl"):
        return user.get("customModel") or None
    return user.get("preferredModel") or None


# ============================================================================
# COMPLETION PRIMITIVES
# ============================================================================

def _create(client: OpenAI, model: str, messages: list[dict], max_tokens: int) -> str:
    response = client.chat.completions.create(
        model=model,
        messages=messages,
        max_tokens=max_tokens,
    )
    if not response.choices:
        return ""
    return (response.choices[0].message.content or "").strip()


def _should_fallback(model: str, custom: dict | None) -> bool:
    return bool(custom) or model != config.AI_MODEL


def complete(messages: list[dict], model: str | None = None, max_tokens: int = 1000, custom: dict | None = None) -> str:
    """Run one chat completion, retrying once on the default model."""
    client, default_model = get_ai_client(custom)
    use_model = model or default_model
    try:
        return _create(client, use_model, messages, max_tokens)
    except OpenAIError as e:
        if not _should_fallback(use_model, custom):
            raise AIServiceError(str(e)) from e
        logger.warning("Model %s failed (%s), retrying with default...", use_model, e)
    try:
        return _create(_get_default_client(), config.AI_MODEL, messages, max_tokens)
    except OpenAIError as e:
        raise AIServiceError(str(e)) from e


def _stream_deltas(client: OpenAI, model: str, messages: list[dict], max_tokens: int):
    response = client.chat.completions.create(
        model=model,
        messages=messages,
        max_tokens=max_tokens,
        stream=True,
    )
    for chunk in response:
        if not chunk.choices:
            continue
        delta = getattr(chunk.choices[0].delta, "content", None)
        if delta:
            yield delta


def stream(messages: list[dict], model: str | None = None, max_tokens: int = 1000, custom: dict | None = None):
    """Yield text deltas. The default-model retry only happens before any delta was sent."""
    client, default_model = get_ai_client(custom)
    use_model = model or default_model
    produced = False
    try:
        for delta in _stream_deltas(client, use_model, messages, max_tokens):
            produced = True
            yield delta
        return
    except OpenAIError as e:
        if produced or not _should_fallback(use_model, custom):
            raise AIServiceError(str(e)) from e
        logger.warning("Stream model %s failed (%s), retrying with default...", use_model, e)
    try:
        yield from _stream_deltas(_get_default_client(), config.AI_MODEL, messages, max_tokens)
    except OpenAIError as e:
        raise AIServiceError(str(e)) from e


def _system(prompt: str, language: str | None = None) -> dict:
    content = prompt if language is None else prompt + prompts.language_instruction(language)
    return {"role": "system", "content": content}


def _user(content: str) -> dict:
    return {"role": "user", "content": content}


# ============================================================================
# SUMMARY & KEY CONCEPTS
# ============================================================================

def generate_summary(
    content: str,
    model: str | None = None,
    custom_text: str | None = None,
    language: str = "en",
    custom: dict | None = None,
) -> str:
    messages = [
        _system(prompts.SUMMARY_SYSTEM_PROMPT, language),
        _user(prompts.summary_user_prompt(content, custom_text)),
    ]
    try:
        text = complete(messages, model, 1000, custom)
    except AIServiceError as e:
        logger.error("AI Summary Error: %s", e)
        return SUMMARY_FALLBACK
    text = clean_markdown_spacing(sanitize_summary(text))
    return text or "Unable to generate summary."


def generate_key_concepts(content: str, model: str | None = None, language: str = "en", custom: dict | None = None) -> str:
    messages = [
        _system(prompts.KEY_CONCEPTS_SYSTEM_PROMPT, language),
        _user(prompts.key_concepts_user_prompt(content)),
    ]
    text = complete(messages, model, 1500, custom)
    return clean_markdown_spacing(text) or "Unable to extract key concepts."


# ============================================================================
# GLOSSARY
# ============================================================================

def _normalize_glossary(items: list) -> list[dict]:
    glossary: list[dict] = []
    seen = set()
    for it in items:
        if not isinstance(it, dict):
            continue
        term = str(it.get("term") or "").strip()
        definition = str(it.get("definition") or it.get("meaning") or "").strip()
        if not term or not definition or term.lower() in seen:
            continue
        seen.add(term.lower())
        entry = {"term": term, "definition": definition}
        category = str(it.get("category") or "").strip()
        if category:
            entry["category"] = category
        glossary.append(entry)
    return glossary


def generate_glossary(content: str, model: str | None = None, language: str = "en", custom: dict | None = None) -> list[dict]:
    messages = [
        _system(prompts.GLOSSARY_SYSTEM_PROMPT, language),
        _user(prompts.glossary_user_prompt(content)),
    ]
    try:
        raw = complete(messages, model, 2000, custom)
    except AIServiceError as e:
        logger.error("AI Glossary Error: %s", e)
        return []
    data = parse_json_lenient(raw, default={})
    return _normalize_glossary(extract_items(data, "glossary", "terms"))


# ============================================================================
# QUIZ
# ============================================================================

def normalize_question(q) -> dict | None:
    """Coerce one model-produced question into {question, options[4], answer, ...}."""
    if not isinstance(q, dict):
        return None
    question = str(q.get("question") or q.get("prompt") or q.get("q") or "").strip()
    opts = q.get("options") or q.get("choices") or q.get("answers") or []
    if not isinstance(opts, list):
        return None
    options = [str(o).strip() for o in opts if str(o).strip()]
    if len(options) >= 4:
        options = options[:4]
    elif len(options) == 3:
        options.append("None of the above")
    else:
        return None
    answer = None
    for key in ("answer", "correctIndex", "answerIndex", "correct", "correctOption"):
        answer = to_index_from_answer(q.get(key), options)
        if answer is not None:
            break
    if answer is None or not question:
        return None
    out = {"question": question, "options": options, "answer": answer}
    explanation = str(q.get("explanation") or "").strip()
    if explanation:
        out["explanation"] = explanation
    hint = str(q.get("hint") or "").strip()
    if hint:
        out["hint"] = hint
    return out


def generate_quiz(
    content: str,
    count: int = 10,
    model: str | None = None,
    difficulty: str = "medium",
    language: str = "en",
    custom: dict | None = None,
) -> list[dict]:
    count = clamp_int(count, 10, 1, 30)
    if difficulty not in QUIZ_DIFFICULTIES:
        difficulty = "medium"
    messages = [
        _system(prompts.quiz_system_prompt(count, difficulty), language),
        _user(prompts.quiz_user_prompt(content, count, difficulty)),
    ]
    try:
        raw = complete(messages, model, min(4000, count * 300), custom)
    except AIServiceError as e:
        logger.error("AI Quiz Error: %s", e)
        return []
    data = parse_json_lenient(raw, default={})
    questions: list[dict] = []
    for q in extract_items(data, "questions", "quiz"):
        cleaned = normalize_question(q)
        if cleaned:
            questions.append(cleaned)
        if len(questions) >= count:
            break
    return questions


# ============================================================================
# FLASHCARDS
# ============================================================================

def generate_flashcards(
    content: str,
    count: int | None = None,
    model: str | None = None,
    language: str = "en",
    custom: dict | None = None,
) -> list[dict]:
    if count is None:
        count = estimate_flashcard_count(content)
    count = clamp_int(count, 10, 1, 40)
    messages = [
        _system(prompts.flashcards_system_prompt(count), language),
        _user(prompts.flashcards_user_prompt(content)),
    ]
    try:
        raw = complete(messages, model, min(4000, count * 150), custom)
    except AIServiceError as e:
        logger.error("AI Flashcards Error: %s", e)
        return []
    data = parse_json_lenient(raw, default={})
    cards: list[dict] = []
    for it in extract_items(data, "flashcards", "cards"):
        if not isinstance(it, dict):
            continue
        front = str(it.get("front") or it.get("question") or "").strip()
        back = str(it.get("back") or it.get("answer") or "").strip()
        if not front or not back:
            continue
        cards.append({"front": front, "back": back})
        if len(cards) >= count:
            break
    return cards


# ============================================================================
# MIND MAP
# ============================================================================

def _normalize_node(node, depth: int) -> dict | None:
    if not isinstance(node, dict):
        return None
    label = str(node.get("label") or node.get("name") or node.get("title") or "").strip()
    if not label:
        return None
    children: list[dict] = []
    if depth < MAX_MIND_MAP_DEPTH:
        raw_children = node.get("children") or []
        if isinstance(raw_children, list):
            for child in raw_children:
                normalized = _normalize_node(child, depth + 1)
                if normalized:
                    children.append(normalized)
    return {"label": label, "children": children}


def generate_mind_map(
    title: str,
    content: str,
    model: str | None = None,
    language: str = "en",
    custom: dict | None = None,
) -> dict | None:
    messages = [
        _system(prompts.MIND_MAP_SYSTEM_PROMPT, language),
        _user(prompts.mind_map_user_prompt(title, content)),
    ]
    try:
        raw = complete(messages, model, 3000, custom)
    except AIServiceError as e:
        logger.error("AI Mind Map Error: %s", e)
        return None
    data = parse_json_lenient(raw, default=None)
    if isinstance(data, dict) and not data.get("label") and isinstance(data.get("mindMap"), dict):
        data = data["mindMap"]
    if isinstance(data, dict) and not (data.get("label") or data.get("name") or data.get("title")):
        data = dict(data, label=title)
    root = _normalize_node(data, 1)
    if not root or not root["children"]:
        return None
    return root


# ============================================================================
# STUDY PLAN
# ============================================================================

def generate_study_plan(
    content: str,
    days: int = 7,
    model: str | None = None,
    language: str = "en",
    custom: dict | None = None,
) -> list[dict]:
    days = clamp_int(days, 7, 1, 30)
    messages = [
        _system(prompts.study_plan_system_prompt(days), language),
        _user(prompts.study_plan_user_prompt(content)),
    ]
    try:
        raw = complete(messages, model, 4000, custom)
    except AIServiceError as e:
        logger.error("AI Study Plan Error: %s", e)
        return []
    data = parse_json_lenient(raw, default={})
    tasks: list[dict] = []
    for it in extract_items(data, "tasks", "plan"):
        if not isinstance(it, dict):
            continue
        task = str(it.get("task") or it.get("title") or "").strip()
        if not task:
            continue
        tasks.append({
            "day": clamp_int(it.get("day"), 1, 1, days),
            "task": task,
            "description": str(it.get("description") or "").strip() or None,
            "question": str(it.get("question") or "").strip() or None,
            "questionHint": str(it.get("questionHint") or it.get("hint") or "").strip() or None,
        })
    tasks.sort(key=lambda t: t["day"])
    return tasks


def verify_task_answer(
    task: str,
    question: str,
    answer: str,
    content: str,
    model: str | None = None,
    language: str = "en",
    custom: dict | None = None,
) -> dict:
    messages = [
        _system(prompts.VERIFY_TASK_SYSTEM_PROMPT, language),
        _user(prompts.verify_task_user_prompt(task, question, answer, content)),
    ]
    raw = complete(messages, model, 500, custom)
    data = parse_json_lenient(raw, default=None)
    if isinstance(data, dict) and "correct" in data:
        return {
            "correct": as_bool(data.get("correct")),
            "feedback": str(data.get("feedback") or "").strip(),
        }
    return {"correct": False, "feedback": raw.strip()}


# ============================================================================
# CHAT
# ============================================================================

def system_prompt_for_material(material: dict, context_limit: int) -> str:
    """Ground on content, or on title/description for research materials without content."""
    content = material.get("content") or ""
    if material.get("type") == "research" and not content.strip():
        return prompts.research_chat_system_prompt(material.get("title") or "", material.get("description"))
    return prompts.chat_system_prompt(clip(content, context_limit))


def build_chat_messages(system_prompt: str, history: list[dict], language: str = "en") -> list[dict]:
    messages = [_system(system_prompt, language)]
    for m in history:
        role = m.get("role")
        if role not in ("user", "assistant"):
            continue
        messages.append({"role": role, "content": m.get("content") or ""})
    return messages


def chat_with_material(
    system_prompt: str,
    history: list[dict],
    model: str | None = None,
    max_tokens: int | None = None,
    custom: dict | None = None,
    language: str = "en",
) -> str:
    messages = build_chat_messages(system_prompt, history, language)
    try:
        reply = complete(messages, model, max_tokens or config.DEFAULT_MAX_TOKENS, custom)
    except AIServiceError as e:
        logger.error("AI Chat Error: %s", e)
        return CHAT_FALLBACK
    return reply or EMPTY_REPLY


def chat_with_material_stream(
    system_prompt: str,
    history: list[dict],
    model: str | None = None,
    max_tokens: int | None = None,
    custom: dict | None = None,
    language: str = "en",
):
    messages = build_chat_messages(system_prompt, history, language)
    return stream(messages, model, max_tokens or config.DEFAULT_MAX_TOKENS, custom)


# ============================================================================
# SMART CLEANUP
# ============================================================================

def smart_cleanup(content: str) -> str:
    """Strip tables of contents, page furniture and other filler from parsed documents."""
    if not content or len(content) <= 100:
        return content
    messages = [
        _system(prompts.SMART_CLEANUP_SYSTEM_PROMPT),
        _user(prompts.smart_cleanup_user_prompt(content)),
    ]
    try:
        cleaned = complete(messages, None, 16000)
    except AIServiceError as e:
        logger.error("Smart cleanup failed, using original content: %s", e)
        return content
    if cleaned and len(cleaned) > 50:
        logger.info(
            "Smart cleanup: %d -> %d chars (removed %d)",
            len(content), len(cleaned), len(content) - len(cleaned),
        )
        return cleaned
    return content


# ============================================================================
# MODERATION
# ============================================================================

def is_content_safe(text: str) -> dict:
    """Ask the model whether content may be published. Fails open when the gateway is down."""
    messages = [
        _system(prompts.MODERATION_SYSTEM_PROMPT),
        _user(prompts.moderation_user_prompt(text or "")),
    ]
    try:
        raw = complete(messages, None, 200)
    except AIServiceError as e:
        logger.warning("Moderation unavailable, allowing content: %s", e)
        return {"safe": True, "reason": "moderation unavailable"}
    data = parse_json_lenient(raw, default=None)
    if isinstance(data, dict) and "safe" in data:
        return {
            "safe": as_bool(data.get("safe")),
            "reason": str(data.get("reason") or "").strip() or None,
        }
    if re.search(r"\bUNSAFE\b", raw or ""):
        return {"safe": False, "reason": raw.strip()[:300]}
    return {"safe": True, "reason": None}


# ============================================================================
# LEARNING EVALUATION
# ============================================================================

_SCORE_RE = re.compile(r"(\d+)\s*/\s*10")


def extract_score(text: str) -> int:
    """Pull the "X/10" understanding score out of an evaluation (5 when absent)."""
    m = _SCORE_RE.search(text or "")
    if not m:
        return 5
    return max(1, min(10, int(m.group(1))))


def evaluate_learning(
    title: str,
    messages: list[dict],
    quiz_attempts: list[dict],
    previous: dict | None,
    language: str = "en",
) -> tuple[str, int]:
    chat_history = "\n\n".join(
        f"{'Student' if m['role'] == 'user' else 'AI'}: {m['content']}" for m in messages
    )
    quiz_context = ""
    if quiz_attempts:
        quiz_context = "\n\nQuiz Results:\n" + "\n".join(
            f"- Score: {a['score']}/{a['totalQuestions']} ({a['percentage']}%)" for a in quiz_attempts
        )
    previous_context = ""
    if previous:
        previous_context = (
            f"\n\nPrevious evaluation (score: {previous['score']}/10, "
            f"{previous['questionsCount']} questions):\n{previous['content'][:500]}..."
        )
    prompt_messages = [
        _system(prompts.evaluation_system_prompt(bool(previous)), language),
        _user(prompts.evaluation_user_prompt(title, chat_history, quiz_context, previous_context)),
    ]
    content = complete(prompt_messages, None, 1500) or "Failed to create evaluation"
    return content, extract_score(content)
