"""
Retrieval ranker: picks the indexed files relevant to a question.

Combines an explicitly open file, a filename mentioned in the question and
intent-bucketed search queries into one deduplicated, diverse ranked set.
The ranker never calls the completion backend itself.
"""

import asyncio
import re
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Protocol

from .config import MAX_RELEVANT_FILES
from .errors import CodeMentorError
from .fetcher import ContentFetcher
from .insights import detect_language
from .logging import get_logger
from .search import SearchHit, SearchIndex

logger = get_logger("ranker")

FILENAME_PATTERN = re.compile(
    r"([\w\-/]+\.(?:ts|tsx|js|jsx|py|java|kt|swift|go|rb|php|rs|c|cpp|cs|json|md"
    r"|yml|yaml|xml|html|css))\b",
    re.IGNORECASE,
)

STRUCTURE_KEYWORDS = ("structure", "overview", "architecture", "organization", "layout")
MAIN_KEYWORDS = ("main", "entry", "bootstrap", "start", "init", "primary")
WHERE_KEYWORDS = ("where", "find", "locate")

STRUCTURE_QUERIES = (
    "readme",
    "package.json setup.py pyproject.toml requirements.txt",
    "docs documentation",
)
MAIN_QUERY = "main index app server bootstrap router __init__.py"

# Words skipped when looking for the subject of a "where" question
_QUESTION_WORDS = {
    "a", "an", "the", "is", "are", "was", "were", "do", "does", "did", "can",
    "i", "we", "you", "my", "our", "this", "that", "these", "those", "it",
    "of", "in", "to", "for", "be", "being", "been", "all", "any", "which",
}

SELECTED_FILE_SCORE = 3.0


class RankableRepository(Protocol):
    id: int | None
    owner: str
    name: str
    default_branch: str


@dataclass
class RetrievalResult:
    """Primary context file plus the diverse ranked set."""

    primary: SearchHit | None = None
    files: list[SearchHit] = field(default_factory=list)
    queries: list[str] = field(default_factory=list)

    @property
    def all_files(self) -> list[SearchHit]:
        return ([self.primary] if self.primary else []) + self.files


def detect_mentioned_filename(question: str) -> str | None:
    """First filename with a known source extension in the question."""
    match = FILENAME_PATTERN.search(question or "")
    return match.group(1) if match else None


def score_filename_match(path: str, mentioned: str) -> int:
    """3 for the exact path, 2 for a path ending with the name, 1 for containing it."""
    lowered = path.lower()
    mentioned = mentioned.lower()
    base = mentioned.rsplit("/", 1)[-1]
    if lowered == mentioned:
        return 3
    if lowered.endswith(base):
        return 2
    if base in lowered:
        return 1
    return 0


def best_filename_match(
    hits: Iterable[SearchHit], mentioned: str
) -> tuple[SearchHit, int] | None:
    """Highest-scoring candidate, shorter paths winning ties."""
    scored = [(hit, score_filename_match(hit.path, mentioned)) for hit in hits]
    scored = [(hit, score) for hit, score in scored if score > 0]
    if not scored:
        return None
    return min(scored, key=lambda item: (-item[1], len(item[0].path)))


def classify_intent(question: str) -> set[str]:
    """Intent buckets triggered by keywords in the question."""
    lowered = question.lower()
    intents = set()
    if any(keyword in lowered for keyword in STRUCTURE_KEYWORDS):
        intents.add("structure")
    if any(keyword in lowered for keyword in MAIN_KEYWORDS):
        intents.add("main")
    if any(keyword in lowered for keyword in WHERE_KEYWORDS):
        intents.add("where")
    return intents


def extract_where_term(question: str) -> str | None:
    """Subject word following where/find/locate, skipping filler words."""
    lowered = question.lower()
    positions = [
        (lowered.find(keyword), keyword)
        for keyword in WHERE_KEYWORDS
        if keyword in lowered
    ]
    if not positions:
        return None
    start, keyword = min(positions)
    for word in re.findall(r"\w+", lowered[start + len(keyword):]):
        if word not in _QUESTION_WORDS:
            return word
    return None


def build_intent_queries(question: str) -> list[str]:
    """Bucket queries for the question's intents; the raw question comes last."""
    intents = classify_intent(question)
    queries: list[str] = []
    if "structure" in intents:
        queries.extend(STRUCTURE_QUERIES)
    if "main" in intents:
        queries.append(MAIN_QUERY)
    if "where" in intents:
        term = extract_where_term(question)
        if term:
            queries.append(term)
    queries.append(question)
    return list(dict.fromkeys(query for query in queries if query.strip()))


def dedupe_hits(
    hits: Iterable[SearchHit], already_selected: Iterable[str] = ()
) -> list[SearchHit]:
    """Keep the first hit per path and per lowercase basename, in encounter order.

    Paths in ``already_selected`` (and their basenames) count as seen.
    """
    seen_paths = set(already_selected)
    seen_bases = {path.rsplit("/", 1)[-1].lower() for path in seen_paths}
    kept = []
    for hit in hits:
        if not hit.path:
            continue
        base = hit.basename.lower()
        if hit.path in seen_paths or base in seen_bases:
            continue
        seen_paths.add(hit.path)
        seen_bases.add(base)
        kept.append(hit)
    return kept


def rank_hits(hits: Sequence[SearchHit]) -> list[SearchHit]:
    """Score descending, shorter path first on equal scores."""
    return sorted(hits, key=lambda hit: (-hit.score, len(hit.path)))


def select_diverse(
    ranked: Sequence[SearchHit], limit: int = MAX_RELEVANT_FILES
) -> list[SearchHit]:
    """Spread picks across the ranked list.

    Ranks 1 and 2 are always kept, then the middle element (more than
    three hits) and the last element (more than four), and the remaining
    slots are filled in rank order.
    """
    count = len(ranked)
    picks = [index for index in (0, 1) if index < count]
    if count > 3:
        picks.append(count // 2)
    if count > 4:
        picks.append(count - 1)

    selected: list[SearchHit] = []
    chosen: set[int] = set()
    for index in picks + list(range(count)):
        if len(selected) >= limit:
            break
        if index in chosen:
            continue
        chosen.add(index)
        selected.append(ranked[index])
    return selected


class RetrievalRanker:
    """Selects the files a completion request should see."""

    def __init__(
        self,
        search: SearchIndex,
        fetcher: ContentFetcher,
        max_results: int = MAX_RELEVANT_FILES,
        per_query_limit: int = 20,
    ):
        self.search = search
        self.fetcher = fetcher
        self.max_results = max_results
        self.per_query_limit = per_query_limit

    async def retrieve(
        self,
        repository: RankableRepository,
        question: str,
        selected_path: str | None = None,
    ) -> RetrievalResult:
        """Rank indexed files for a question.

        Args:
            repository: Indexed repository record
            question: Natural-language question
            selected_path: File currently open in the client, if any

        Returns:
            RetrievalResult whose ``files`` never repeat the primary file
        """
        if repository.id is None:
            raise ValueError("repository must be persisted before retrieval")

        result = RetrievalResult()

        if selected_path:
            result.primary = await self._load_selected(repository, selected_path)
        else:
            mentioned = detect_mentioned_filename(question)
            if mentioned:
                result.primary = await self._load_mentioned(repository, mentioned)

        result.queries = build_intent_queries(question)
        hits: list[SearchHit] = []
        for query in result.queries:
            try:
                hits.extend(
                    await asyncio.to_thread(
                        self.search.search_files,
                        repository.id,
                        query,
                        self.per_query_limit,
                    )
                )
            except CodeMentorError as e:
                logger.warning("Search failed for %r: %s", query, e)

        selected = [result.primary.path] if result.primary else []
        ranked = rank_hits(dedupe_hits(hits, already_selected=selected))
        for hit in select_diverse(ranked, self.max_results):
            if not hit.has_content:
                hit.content = await self._fetch_and_cache(repository, hit.path) or ""
            result.files.append(hit)

        return result

    async def _load_selected(
        self, repository: RankableRepository, path: str
    ) -> SearchHit | None:
        content = await self._fetch_and_cache(repository, path)
        if content is not None:
            return SearchHit(
                path=path,
                content=content,
                size=len(content),
                language=detect_language(path),
                score=SELECTED_FILE_SCORE,
            )

        try:
            cached = await asyncio.to_thread(self.search.get_file, repository.id, path)
        except CodeMentorError as e:
            logger.warning("Index lookup failed for %s: %s", path, e)
            return None
        if cached is not None:
            cached.score = SELECTED_FILE_SCORE
        return cached

    async def _load_mentioned(
        self, repository: RankableRepository, mentioned: str
    ) -> SearchHit | None:
        base = mentioned.rsplit("/", 1)[-1].lower()
        try:
            candidates = await asyncio.to_thread(
                self.search.find_by_filename, repository.id, base, self.per_query_limit
            )
        except CodeMentorError as e:
            logger.warning("Filename lookup failed for %s: %s", mentioned, e)
            return None

        match = best_filename_match(candidates, mentioned)
        if match is None:
            return None

        hit, score = match
        hit.score = float(score)
        if not hit.has_content:
            hit.content = await self._fetch_and_cache(repository, hit.path) or ""
        return hit if hit.has_content else None

    async def _fetch_and_cache(
        self, repository: RankableRepository, path: str
    ) -> str | None:
        """Fetch a file fresh from the host and write it back to the index."""
        try:
            fetched = await self.fetcher.fetch_limited(
                repository.owner, repository.name, path, repository.default_branch
            )
        except CodeMentorError as e:
            logger.warning("On-demand fetch failed for %s: %s", path, e)
            return None
        if fetched is None:
            return None

        try:
            await asyncio.to_thread(
                self.search.index_file,
                repository.id,
                path,
                fetched.content,
                fetched.size,
                detect_language(path),
            )
        except CodeMentorError as e:
            logger.warning("Could not cache %s in the index: %s", path, e)
        return fetched.content
