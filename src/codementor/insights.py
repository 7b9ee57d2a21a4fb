"""
Repository insights: summary, quickstart and contribution guide.

Insights are derived from the README when one exists, either through the
completion backend or, without one, by reading the README's own sections.
When no README is usable a structural summary is built from the file
listing alone. Also hosts the path heuristics shared with indexing.
"""

import re
from collections import Counter
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from pathlib import PurePosixPath

from .completion import CompletionBackend
from .logging import get_logger

logger = get_logger("insights")

README_PATTERN = re.compile(r"^readme(\.md|\.rst|\.txt)?$", re.IGNORECASE)

LANGUAGE_BY_EXTENSION = {
    "js": "javascript",
    "jsx": "javascript",
    "ts": "typescript",
    "tsx": "typescript",
    "py": "python",
    "java": "java",
    "cpp": "cpp",
    "c": "c",
    "cs": "csharp",
    "php": "php",
    "rb": "ruby",
    "go": "go",
    "rs": "rust",
    "swift": "swift",
    "kt": "kotlin",
    "scala": "scala",
    "html": "html",
    "css": "css",
    "scss": "scss",
    "sass": "sass",
    "json": "json",
    "xml": "xml",
    "yaml": "yaml",
    "yml": "yaml",
    "md": "markdown",
    "txt": "text",
}

SUMMARY_UNAVAILABLE = "Repository summary unavailable."
QUICKSTART_UNAVAILABLE = "Quickstart guide unavailable."
CONTRIBUTION_UNAVAILABLE = "Contribution guide unavailable."

MAX_LISTED_FILES = 50

_QUICKSTART_HEADINGS = re.compile(
    r"install|getting started|quick\s*start|setup|set up|usage|running|build",
    re.IGNORECASE,
)
_CONTRIBUTING_HEADINGS = re.compile(r"contribut|development|developing", re.IGNORECASE)
_MARKDOWN_HEADING = re.compile(r"^(#{1,6})\s+(.*?)\s*#*\s*$")
_SETEXT_UNDERLINE = re.compile(r"^(=+|-+)\s*$")


@dataclass
class Insights:
    summary: str | None = None
    quickstart: str | None = None
    contribution_guide: str | None = None

    def to_dict(self) -> dict[str, str | None]:
        return {
            "summary": self.summary,
            "quickstart": self.quickstart,
            "contribution_guide": self.contribution_guide,
        }


def detect_language(path: str) -> str | None:
    """Language name derived from a file extension."""
    suffix = PurePosixPath(path).suffix.lower().lstrip(".")
    return LANGUAGE_BY_EXTENSION.get(suffix)


def is_readme(path: str) -> bool:
    return bool(README_PATTERN.match(path.rsplit("/", 1)[-1]))


def find_readme(paths: Iterable[str]) -> str | None:
    """The shallowest README-like path, first listed wins among equals."""
    candidates = [path for path in paths if is_readme(path)]
    if not candidates:
        return None
    return min(candidates, key=lambda path: path.count("/"))


def score_file_importance(path: str) -> int:
    """Heuristic importance of a path for orientation in a repository.

    Docs and manifests rank highest, then entry points and shallow source
    files; minified bundles and build output rank lowest.
    """
    lowered = path.lower()
    name = lowered.rsplit("/", 1)[-1]
    score = 0

    if README_PATTERN.match(name):
        score += 10
    if re.match(r"^contributing(\.md)?$", name):
        score += 9
    if name.startswith("license"):
        score += 8

    if lowered.endswith("package.json"):
        score += 9
    if re.search(r"(requirements\.txt|pyproject\.toml|setup\.py)$", lowered):
        score += 8
    if re.search(r"(go\.mod|cargo\.toml|build\.gradle|pom\.xml)$", lowered):
        score += 8
    if re.search(r"(pnpm-lock\.yaml|yarn\.lock|npm-shrinkwrap\.json)$", lowered):
        score += 2

    if re.search(r"(^|/)src/(index|main)\.", lowered):
        score += 7
    if re.search(r"(^|/)app/(index|main)\.", lowered):
        score += 7
    if re.search(r"server\.|router\.|routes?\.", lowered):
        score += 5

    score += max(0, 5 - path.count("/"))

    if re.search(r"\.(ts|tsx|js|jsx|py|go|rs|java|rb|php)$", lowered):
        score += 3
    if re.search(r"\.min\.|dist/", lowered):
        score -= 5

    return score


def rank_by_importance(paths: Iterable[str]) -> list[str]:
    """Paths sorted by importance, most important first."""
    return sorted(paths, key=lambda path: (-score_file_importance(path), path))


def extract_section(text: str, name: str) -> str:
    """Body of a ``NAME:`` section in a backend reply, up to the next one."""
    pattern = re.compile(
        rf"(?i:{re.escape(name)}):\s*([\s\S]*?)(?=\n[A-Z_]+:|$)"
    )
    match = pattern.search(text)
    return match.group(1).strip() if match else ""


def build_insights_prompt(repo_name: str, readme: str, paths: Sequence[str]) -> str:
    listed = ", ".join(paths[:MAX_LISTED_FILES])
    return f"""Extract key information from this README to create repository insights.

Repository: {repo_name}
README Content:
{readme}

Files in repo: {listed}

Please provide THREE sections:

1. SUMMARY (2-3 sentences):
- What this project does
- Main purpose and key features
- Technology stack if mentioned

2. QUICKSTART (step-by-step setup):
- Prerequisites/requirements
- Installation steps
- How to run locally
- Basic usage

3. CONTRIBUTION_GUIDE (contribution process):
- How to contribute
- Development setup
- Code style/standards
- Where to ask questions

Format your response as:
SUMMARY: [your summary here]
QUICKSTART: [your quickstart here]
CONTRIBUTION_GUIDE: [your contribution guide here]"""


def insights_from_backend(
    backend: CompletionBackend, repo_name: str, readme: str, paths: Sequence[str]
) -> Insights:
    """Ask the completion backend to split a README into insight sections.

    Raises:
        ValueError: If the backend returns an empty reply
    """
    reply = backend.complete(build_insights_prompt(repo_name, readme, paths))
    if not reply or not reply.strip():
        raise ValueError("No response from completion backend")

    return Insights(
        summary=extract_section(reply, "SUMMARY") or SUMMARY_UNAVAILABLE,
        quickstart=extract_section(reply, "QUICKSTART") or QUICKSTART_UNAVAILABLE,
        contribution_guide=(
            extract_section(reply, "CONTRIBUTION_GUIDE") or CONTRIBUTION_UNAVAILABLE
        ),
    )


def _split_sections(readme: str) -> list[tuple[str, str]]:
    """(heading, body) pairs; text before the first heading has heading ''."""
    sections: list[tuple[str, list[str]]] = [("", [])]
    lines = readme.splitlines()
    in_code = False
    index = 0
    while index < len(lines):
        line = lines[index]
        if line.strip().startswith("```"):
            in_code = not in_code
            sections[-1][1].append(line)
            index += 1
            continue

        heading = None
        if not in_code:
            match = _MARKDOWN_HEADING.match(line)
            if match:
                heading = match.group(2)
            elif (
                line.strip()
                and index + 1 < len(lines)
                and _SETEXT_UNDERLINE.match(lines[index + 1])
            ):
                heading = line.strip()
                index += 1

        if heading is not None:
            sections.append((heading, []))
        else:
            sections[-1][1].append(line)
        index += 1

    return [(heading, "\n".join(body).strip()) for heading, body in sections]


def _first_paragraph(text: str) -> str:
    for block in re.split(r"\n\s*\n", text):
        block = block.strip()
        if not block or block.startswith(("[![", "![", "<", "```")):
            continue
        return " ".join(line.strip() for line in block.splitlines())
    return ""


def _section_body(sections: list[tuple[str, str]], pattern: re.Pattern[str]) -> str:
    for heading, body in sections:
        if heading and body and pattern.search(heading):
            return body
    return ""


def insights_from_readme(readme: str) -> Insights:
    """Derive insight sections from README headings without a backend."""
    sections = _split_sections(readme)

    summary = ""
    for heading, body in sections:
        if _QUICKSTART_HEADINGS.search(heading) or _CONTRIBUTING_HEADINGS.search(heading):
            continue
        summary = _first_paragraph(body)
        if summary:
            break

    quickstart = _section_body(sections, _QUICKSTART_HEADINGS)
    contribution = _section_body(sections, _CONTRIBUTING_HEADINGS)

    return Insights(
        summary=summary or SUMMARY_UNAVAILABLE,
        quickstart=quickstart or QUICKSTART_UNAVAILABLE,
        contribution_guide=contribution or CONTRIBUTION_UNAVAILABLE,
    )


def structural_summary(
    repo_name: str,
    paths: Sequence[str],
    languages: Sequence[str] | None = None,
    description: str | None = None,
) -> str:
    """Overview of a repository built from its file listing alone."""
    lines = []
    if description:
        lines.append(f"{repo_name}: {description}")
    else:
        lines.append(f"{repo_name} contains {len(paths)} files.")

    if languages:
        lines.append(f"Languages: {', '.join(languages)}.")
    else:
        detected = Counter(
            language for language in (detect_language(path) for path in paths) if language
        )
        if detected:
            common = ", ".join(language for language, _ in detected.most_common(5))
            lines.append(f"Languages: {common}.")

    directories = Counter(path.split("/", 1)[0] for path in paths if "/" in path)
    if directories:
        top = ", ".join(
            f"{directory}/ ({count} files)"
            for directory, count in sorted(
                directories.items(), key=lambda item: (-item[1], item[0])
            )[:8]
        )
        lines.append(f"Key directories: {top}.")

    entry_points = [
        path for path in rank_by_importance(paths) if score_file_importance(path) >= 10
    ][:5]
    if entry_points:
        lines.append(f"Start with: {', '.join(entry_points)}.")

    return "\n".join(lines)


def generate_insights(
    repo_name: str,
    paths: Sequence[str],
    readme: str | None = None,
    backend: CompletionBackend | None = None,
    languages: Sequence[str] | None = None,
    description: str | None = None,
) -> Insights:
    """README-first insight derivation with a structural fallback.

    A backend failure falls back to the structural summary rather than
    raising.
    """
    ordered = rank_by_importance(paths)
    if readme and readme.strip():
        if backend is None:
            return insights_from_readme(readme)
        try:
            return insights_from_backend(backend, repo_name, readme, ordered)
        except Exception as e:
            logger.warning(
                "README-based insights failed for %s, using structure: %s", repo_name, e
            )

    return Insights(
        summary=structural_summary(repo_name, ordered, languages, description)
    )
