"""
Tests for the AI gateway layer against a fake OpenAI client.
"""
import json

import pytest
from openai import OpenAIError

import ai_service
from config import config
from conftest import FakeOpenAI


class TestCompletionFallback:
    def test_complete_returns_stripped_content(self, fake_ai):
        client = fake_ai("  hello  ")
        assert ai_service.complete([{"role": "user", "content": "hi"}]) == "hello"
        assert client.calls[0]["model"] == config.AI_MODEL
        assert client.calls[0]["max_tokens"] == 1000

    def test_non_default_model_retries_on_default(self, fake_ai):
        client = fake_ai(OpenAIError("model overloaded"), "recovered")
        reply = ai_service.complete([{"role": "user", "content": "hi"}], model="claude-sonnet-4-5")
        assert reply == "recovered"
        assert [c["model"] for c in client.calls] == ["claude-sonnet-4-5", config.AI_MODEL]

    def test_default_model_failure_raises(self, fake_ai):
        client = fake_ai(OpenAIError("down"))
        with pytest.raises(ai_service.AIServiceError):
            ai_service.complete([{"role": "user", "content": "hi"}])
        assert len(client.calls) == 1

    def test_custom_gateway_falls_back_to_default_gateway(self, fake_ai, monkeypatch):
        default = fake_ai("from default")
        custom = FakeOpenAI(OpenAIError("bad key"))
        monkeypatch.setattr(ai_service, "get_ai_client", lambda c=None: (custom, "my-model"))
        reply = ai_service.complete([{"role": "user", "content": "hi"}], custom={"customApiUrl": "http://x"})
        assert reply == "from default"
        assert custom.calls[0]["model"] == "my-model"
        assert default.calls[0]["model"] == config.AI_MODEL

    def test_stream_yields_deltas(self, fake_ai):
        fake_ai(["Hel", "lo", "!"])
        assert list(ai_service.stream([{"role": "user", "content": "hi"}])) == ["Hel", "lo", "!"]

    def test_stream_retries_before_first_delta(self, fake_ai):
        client = fake_ai(OpenAIError("nope"), ["ok"])
        out = list(ai_service.stream([{"role": "user", "content": "hi"}], model="gemini-2.5-pro"))
        assert out == ["ok"]
        assert client.calls[1]["stream"] is True

    def test_stream_error_after_delta_raises(self, fake_ai):
        fake_ai(["partial", OpenAIError("cut")])
        gen = ai_service.stream([{"role": "user", "content": "hi"}], model="gemini-2.5-pro")
        assert next(gen) == "partial"
        with pytest.raises(ai_service.AIServiceError):
            next(gen)


class TestUserSettings:
    def test_custom_config_and_limits(self):
        user = {
            "preferredModel": "gemini-2.5-pro",
            "maxTokens": 2000,
            "maxContext": 1000,
            "customApiUrl": None,
        }
        assert ai_service.custom_config_for(user) is None
        assert ai_service.model_for(user) == "gemini-2.5-pro"
        assert ai_service.model_for(user, "claude-sonnet-4-5") == "claude-sonnet-4-5"
        assert ai_service.max_tokens_for(user) == 2000
        assert ai_service.context_limit_for(user) == 1000

    def test_custom_settings_override(self):
        user = {
            "preferredModel": "gemini-2.5-pro",
            "maxTokens": 2000,
            "maxContext": 1000,
            "customApiUrl": "http://localhost:11434/v1",
            "customApiKey": "sk-local",
            "customModel": "llama3",
            "customMaxTokens": 512,
            "customMaxContext": 8000,
        }
        assert ai_service.custom_config_for(user)["customModel"] == "llama3"
        assert ai_service.model_for(user) == "llama3"
        assert ai_service.max_tokens_for(user) == 512
        assert ai_service.context_limit_for(user) == 8000

    def test_defaults_without_user(self):
        assert ai_service.max_tokens_for(None) == config.DEFAULT_MAX_TOKENS
        assert ai_service.context_limit_for(None) == config.DEFAULT_MAX_CONTEXT


class TestGenerators:
    def test_quiz_normalizes_items(self, fake_ai):
        reply = json.dumps({
            "questions": [
                {"question": "Where does photosynthesis happen?",
                 "options": ["Mitochondria", "Chloroplast", "Nucleus", "Ribosome"],
                 "answer": "B", "explanation": "Chloroplasts hold chlorophyll.", "hint": "Green"},
                {"question": "Three options only?", "options": ["x", "y", "z"], "correctIndex": 2},
                {"question": "Broken", "options": ["only one"], "answer": 0},
                {"question": "No valid answer", "options": ["a", "b", "c", "d"], "answer": "Q"},
            ]
        })
        client = fake_ai(reply)
        quiz = ai_service.generate_quiz("content", count=5, difficulty="extreme")
        assert len(quiz) == 2
        assert quiz[0]["answer"] == 1
        assert quiz[0]["hint"] == "Green"
        assert quiz[1]["options"][-1] == "None of the above"
        assert quiz[1]["answer"] == 2
        assert client.calls[0]["max_tokens"] == 1500
        assert "MEDIUM" in client.calls[0]["messages"][0]["content"].upper()

    def test_quiz_recovers_truncated_reply(self, fake_ai):
        fake_ai('```json\n{"questions": [{"question": "Q1", "options": ["a", "b", "c", "d"], "answer": 0}, {"question": "Q2", "opt')
        quiz = ai_service.generate_quiz("content", count=2)
        assert [q["question"] for q in quiz] == ["Q1"]

    def test_quiz_count_is_clamped(self, fake_ai):
        client = fake_ai('{"questions": []}')
        assert ai_service.generate_quiz("content", count=500) == []
        assert client.calls[0]["max_tokens"] == 4000

    def test_quiz_gateway_failure_returns_empty(self, fake_ai):
        fake_ai(OpenAIError("down"))
        assert ai_service.generate_quiz("content") == []

    def test_flashcards_accept_question_answer_keys(self, fake_ai):
        fake_ai('[{"front": "ATP", "back": "Energy currency"}, {"question": "NADPH?", "answer": "Electron carrier"}, {"front": ""}]')
        cards = ai_service.generate_flashcards("content", count=10)
        assert cards == [
            {"front": "ATP", "back": "Energy currency"},
            {"front": "NADPH?", "back": "Electron carrier"},
        ]

    def test_glossary_dedupes_terms(self, fake_ai):
        fake_ai('{"glossary": [{"term": "ATP", "definition": "Energy", "category": "Molecule"}, {"term": "atp", "definition": "dup"}, {"term": "x"}]}')
        assert ai_service.generate_glossary("content") == [
            {"term": "ATP", "definition": "Energy", "category": "Molecule"}
        ]

    def test_mind_map_caps_depth_and_uses_title(self, fake_ai):
        tree = {"children": [{"label": "L2", "children": [{"label": "L3", "children": [
            {"label": "L4", "children": [{"label": "L5", "children": []}]}]}]}, {"children": []}]}
        fake_ai(json.dumps(tree))
        root = ai_service.generate_mind_map("Photosynthesis", "content")
        assert root["label"] == "Photosynthesis"
        assert len(root["children"]) == 1
        level4 = root["children"][0]["children"][0]["children"][0]
        assert level4["label"] == "L4"
        assert level4["children"] == []

    def test_study_plan_clamps_days(self, fake_ai):
        fake_ai('{"tasks": [{"day": 9, "task": "Review"}, {"day": 1, "task": "Read", "questionHint": "chapter 1"}, {"day": 2}]}')
        tasks = ai_service.generate_study_plan("content", days=3)
        assert [(t["day"], t["task"]) for t in tasks] == [(1, "Read"), (3, "Review")]
        assert tasks[0]["questionHint"] == "chapter 1"

    def test_verify_task_answer(self, fake_ai):
        fake_ai('{"correct": "true", "feedback": "Nice work"}')
        assert ai_service.verify_task_answer("Read", "What is ATP?", "Energy", "content") == {
            "correct": True,
            "feedback": "Nice work",
        }

    def test_summary_failure_message(self, fake_ai):
        fake_ai(OpenAIError("down"))
        assert ai_service.generate_summary("content") == ai_service.SUMMARY_FALLBACK

    def test_summary_language_instruction(self, fake_ai):
        client = fake_ai("1. One\n\n2. Two\n\nLet me know if you want more!")
        assert ai_service.generate_summary("content", language="id") == "1. One\n2. Two"
        assert "Indonesian" in client.calls[0]["messages"][0]["content"]


class TestChatAndCleanup:
    def test_research_material_prompt(self):
        prompt = ai_service.system_prompt_for_material(
            {"type": "research", "content": None, "title": "Black holes", "description": "Event horizons"}, 1000
        )
        assert "RESEARCH TOPIC" in prompt
        assert "Black holes" in prompt

    def test_material_prompt_clips_content(self):
        prompt = ai_service.system_prompt_for_material({"type": "text", "content": "x" * 50 + "TAIL"}, 50)
        assert "TAIL" not in prompt

    def test_chat_drops_unknown_roles_and_falls_back(self, fake_ai):
        client = fake_ai(OpenAIError("down"))
        reply = ai_service.chat_with_material(
            "system", [{"role": "system", "content": "x"}, {"role": "user", "content": "hi"}]
        )
        assert reply == ai_service.CHAT_FALLBACK
        roles = [m["role"] for m in client.calls[0]["messages"]]
        assert roles == ["system", "user"]

    def test_smart_cleanup_skips_short_content(self, fake_ai):
        client = fake_ai("cleaned")
        assert ai_service.smart_cleanup("short text") == "short text"
        assert client.calls == []

    def test_smart_cleanup_keeps_original_on_tiny_reply(self, fake_ai):
        original = "Table of contents\n" + "Body text. " * 20
        fake_ai("too short")
        assert ai_service.smart_cleanup(original) == original

    def test_smart_cleanup_uses_cleaned_text(self, fake_ai):
        original = "Page 1\n" + "Photosynthesis converts light. " * 10
        cleaned = "Photosynthesis converts light. " * 5
        fake_ai(cleaned)
        assert ai_service.smart_cleanup(original) == cleaned.strip()


class TestModerationAndEvaluation:
    def test_moderation_json_verdict(self, fake_ai):
        fake_ai('{"safe": false, "reason": "Spam"}')
        assert ai_service.is_content_safe("buy now") == {"safe": False, "reason": "Spam"}

    def test_moderation_plain_text_unsafe(self, fake_ai):
        fake_ai("UNSAFE: contains scams")
        assert ai_service.is_content_safe("x")["safe"] is False

    def test_moderation_fails_open(self, fake_ai):
        fake_ai(OpenAIError("down"))
        assert ai_service.is_content_safe("x") == {"safe": True, "reason": "moderation unavailable"}

    @pytest.mark.parametrize(
        "text, expected",
        [
            ("## Understanding Score: 8/10\nGreat", 8),
            ("Score 14/10", 10),
            ("Score 0/10", 1),
            ("no score", 5),
        ],
    )
    def test_extract_score(self, text, expected):
        assert ai_service.extract_score(text) == expected

    def test_evaluate_learning_builds_context(self, fake_ai):
        client = fake_ai("## Understanding Score: 7/10")
        content, score = ai_service.evaluate_learning(
            "Photosynthesis",
            [{"role": "user", "content": "What is ATP?"}, {"role": "assistant", "content": "Energy."}],
            [{"score": 4, "totalQuestions": 5, "percentage": 80.0}],
            {"score": 5, "questionsCount": 2, "content": "Earlier evaluation"},
        )
        assert score == 7
        user_prompt = client.calls[0]["messages"][1]["content"]
        assert "Student: What is ATP?" in user_prompt
        assert "Score: 4/5 (80.0%)" in user_prompt
        assert "Previous evaluation (score: 5/10, 2 questions)" in user_prompt
        assert "Changes Since the Previous Evaluation" in client.calls[0]["messages"][0]["content"]
