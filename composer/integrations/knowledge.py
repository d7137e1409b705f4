import logging
import re
from typing import Dict, Iterable, List, Optional

from composer.core.interfaces import KnowledgeSnippet

logger = logging.getLogger(__name__)

_WORD = re.compile(r"[a-z0-9]+")

# Too common to carry signal on their own
STOPWORDS = {"the", "a", "an", "and", "or", "of", "to", "in", "for", "on", "is", "are", "what", "how", "our", "we"}


def _terms(text: str) -> List[str]:
    return [t for t in _WORD.findall(text.lower()) if t not in STOPWORDS]


class StaticKnowledgeBase:
    """
    In-memory keyword search over a fixed set of snippets.

    Score is the fraction of query terms present in the snippet. Snippets can
    be shared (`user_id=None`) or scoped to a single user.
    """

    def __init__(self, snippets: Optional[Iterable[KnowledgeSnippet]] = None):
        self._entries: List[Dict] = []
        for snippet in snippets or []:
            self.add(snippet)

    def add(self, snippet: KnowledgeSnippet, user_id: Optional[str] = None) -> None:
        self._entries.append({"snippet": snippet, "user_id": user_id, "terms": set(_terms(snippet.content))})

    async def search(self, user_id: str, query: str, limit: int) -> List[KnowledgeSnippet]:
        query_terms = set(_terms(query))
        if not query_terms:
            return []

        scored = []
        for entry in self._entries:
            if entry["user_id"] not in (None, user_id):
                continue
            hits = len(query_terms & entry["terms"])
            if hits:
                score = round(hits / len(query_terms), 3)
                scored.append(entry["snippet"].model_copy(update={"score": score}))

        scored.sort(key=lambda s: s.score, reverse=True)
        logger.debug(f"Knowledge search '{query}' matched {len(scored)} snippets")
        return scored[:limit]
