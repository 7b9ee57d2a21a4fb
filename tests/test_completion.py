"""
Tests for completion context assembly.
"""

import pytest
from codementor.completion import build_completion_context, format_prompt
from codementor.search import SearchHit


class TestBuildCompletionContext:
    """Test bounds and validation of the backend payload."""

    def test_truncates_relevant_files(self):
        hits = [SearchHit(path="big.py", content="x" * 5000, score=2.5)]

        context = build_completion_context("What does big.py do?", relevant=hits)

        assert len(context.relevant_files[0].content) == 3000
        assert context.relevant_files[0].score == 2.5

    def test_primary_file_is_not_truncated(self):
        primary = SearchHit(path="main.py", content="y" * 5000)

        context = build_completion_context("Explain", primary=primary)

        assert context.selected_file == "main.py"
        assert len(context.file_content) == 5000

    def test_keeps_last_three_turns(self):
        history = [{"role": "user", "content": f"turn {i}"} for i in range(5)]

        context = build_completion_context("Next?", history=history)

        assert [turn["content"] for turn in context.conversation_history] == [
            "turn 2",
            "turn 3",
            "turn 4",
        ]

    def test_blank_question_rejected(self):
        with pytest.raises(ValueError):
            build_completion_context("   ")

    def test_unknown_skill_level_rejected(self):
        with pytest.raises(ValueError):
            build_completion_context("Why?", skill_level="wizard")

    def test_to_dict_uses_wire_keys(self):
        context = build_completion_context(
            "Why?",
            primary=SearchHit(path="a.py", content="a"),
            relevant=[SearchHit(path="b.py", content="b", score=1.0)],
            insights={"summary": "Demo"},
            skill_level="advanced",
        )

        payload = context.to_dict()

        assert payload["selectedFile"] == "a.py"
        assert payload["fileContent"] == "a"
        assert payload["relevantFiles"] == [{"path": "b.py", "content": "b", "score": 1.0}]
        assert payload["skillLevel"] == "advanced"
        assert payload["conversationHistory"] == []


class TestFormatPrompt:
    def test_includes_every_part(self):
        context = build_completion_context(
            "How do I log in?",
            primary=SearchHit(path="auth.py", content="def login(): ..."),
            relevant=[SearchHit(path="README.md", content="# Demo")],
            insights={"summary": "A demo app"},
            history=[{"role": "assistant", "content": "Hello"}],
        )

        prompt = format_prompt(context)

        assert "Repository summary:\nA demo app" in prompt
        assert "Currently open file: auth.py" in prompt
        assert "File: README.md" in prompt
        assert "assistant: Hello" in prompt
        assert prompt.endswith("Question: How do I log in?")
