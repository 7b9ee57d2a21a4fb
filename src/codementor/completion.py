"""
Context assembly for the completion backend.

The backend itself is opaque: it accepts a prompt plus the assembled
context and returns text. This module only builds that context and bounds
how much file content is sent with it.
"""

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any, Protocol

from .config import MAX_CONTEXT_CHARS
from .search import SearchHit

MAX_HISTORY_TURNS = 3
SKILL_LEVELS = ("beginner", "intermediate", "advanced")


@dataclass
class RelevantFile:
    path: str
    content: str
    score: float


@dataclass
class CompletionContext:
    """Everything the completion backend is given for one question."""

    question: str
    selected_file: str | None = None
    file_content: str | None = None
    relevant_files: list[RelevantFile] = field(default_factory=list)
    insights: dict[str, str | None] | None = None
    conversation_history: list[dict[str, str]] = field(default_factory=list)
    skill_level: str = "beginner"

    def to_dict(self) -> dict[str, Any]:
        return {
            "question": self.question,
            "selectedFile": self.selected_file,
            "fileContent": self.file_content,
            "relevantFiles": [
                {"path": f.path, "content": f.content, "score": f.score}
                for f in self.relevant_files
            ],
            "insights": self.insights,
            "conversationHistory": self.conversation_history,
            "skillLevel": self.skill_level,
        }


class CompletionBackend(Protocol):
    """Natural-language generation service."""

    def complete(self, prompt: str, context: CompletionContext | None = None) -> str:
        ...


def build_completion_context(
    question: str,
    primary: SearchHit | None = None,
    relevant: Iterable[SearchHit] = (),
    insights: dict[str, str | None] | None = None,
    history: Sequence[dict[str, str]] | None = None,
    skill_level: str = "beginner",
    max_chars: int = MAX_CONTEXT_CHARS,
    max_turns: int = MAX_HISTORY_TURNS,
) -> CompletionContext:
    """Assemble the backend payload.

    Each relevant file is truncated to ``max_chars`` characters and only
    the last ``max_turns`` conversation turns are kept.

    Raises:
        ValueError: If the question is blank or the skill level is unknown
    """
    if not question or not question.strip():
        raise ValueError("question is required")
    if skill_level not in SKILL_LEVELS:
        raise ValueError(
            f"skill_level must be one of {', '.join(SKILL_LEVELS)}, got {skill_level!r}"
        )

    turns = list(history or [])
    if max_turns <= 0:
        turns = []
    else:
        turns = turns[-max_turns:]

    return CompletionContext(
        question=question.strip(),
        selected_file=primary.path if primary else None,
        file_content=primary.content if primary else None,
        relevant_files=[
            RelevantFile(path=hit.path, content=hit.content[:max_chars], score=hit.score)
            for hit in relevant
        ],
        insights=insights,
        conversation_history=[dict(turn) for turn in turns],
        skill_level=skill_level,
    )


def format_prompt(context: CompletionContext) -> str:
    """Render the context as a plain-text prompt."""
    sections = [f"Skill level: {context.skill_level}"]

    if context.insights and context.insights.get("summary"):
        sections.append(f"Repository summary:\n{context.insights['summary']}")

    if context.selected_file:
        sections.append(
            f"Currently open file: {context.selected_file}\n"
            f"```\n{context.file_content or ''}\n```"
        )

    for relevant in context.relevant_files:
        sections.append(f"File: {relevant.path}\n```\n{relevant.content}\n```")

    if context.conversation_history:
        lines = [
            f"{turn.get('role', 'user')}: {turn.get('content', '')}"
            for turn in context.conversation_history
        ]
        sections.append("Previous conversation:\n" + "\n".join(lines))

    sections.append(f"Question: {context.question}")
    return "\n\n".join(sections)
