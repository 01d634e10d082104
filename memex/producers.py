"""
Artifact producers.

A producer turns an entity into the string value of one artifact kind:
a summary, a tag list, an image description, a transcript. Model-backed
producers live outside this package and are registered by name; the
built-in ones here are local heuristics that need no network.

Producers are plain callables ``(entity, sub_key) -> str``. They raise
on failure; the orchestrator turns that into a failed enrichment.
"""

import logging
import re
from collections import Counter

from .types import Entity

logger = logging.getLogger(__name__)


def entity_text(entity: Entity) -> str:
    """The best available body text for an entity."""
    for value in (entity.content, entity.description, entity.notes, entity.title):
        if value and value.strip():
            return value.strip()
    return ""


class TruncateSummary:
    """
    Summary that returns the first N characters of the entity text.

    Useful for testing or when model summarization is not needed.
    """

    name = "truncate"

    def __init__(self, max_chars: int = 500):
        self.max_chars = max_chars

    def __call__(self, entity: Entity, sub_key: str) -> str:
        text = entity_text(entity)
        if len(text) <= self.max_chars:
            return text
        return text[:self.max_chars].rsplit(" ", 1)[0] + "..."


class FirstParagraphSummary:
    """Summary made of the first non-empty paragraph, capped at max_chars."""

    name = "first_paragraph"

    def __init__(self, max_chars: int = 500):
        self.max_chars = max_chars

    def __call__(self, entity: Entity, sub_key: str) -> str:
        text = entity_text(entity)
        paragraphs = [p.strip() for p in re.split(r"\n\s*\n", text) if p.strip()]
        first = paragraphs[0] if paragraphs else ""
        if len(first) <= self.max_chars:
            return first
        return first[:self.max_chars].rsplit(" ", 1)[0] + "..."


_STOPWORDS = frozenset("""
    a about above after again all also am an and any are as at be because been
    before being below between both but by can could did do does doing down
    during each few for from further had has have having he her here hers him
    his how i if in into is it its just me more most my no nor not now of off
    on once only or other our ours out over own same she should so some such
    than that the their theirs them then there these they this those through
    to too under until up very was we were what when where which while who
    whom why will with would you your yours http https www com
""".split())

_WORD_RE = re.compile(r"[a-zA-Z][a-zA-Z0-9_-]+")


class KeywordTags:
    """
    Tags from the most frequent non-stopword terms.

    Returns a comma-separated, lowercase list ordered by frequency, ties
    broken alphabetically.
    """

    name = "keywords"

    def __init__(self, max_tags: int = 5, min_length: int = 4):
        self.max_tags = max_tags
        self.min_length = min_length

    def __call__(self, entity: Entity, sub_key: str) -> str:
        text = " ".join(v for v in (entity.title, entity.description, entity.content) if v)
        words = [
            w.lower() for w in _WORD_RE.findall(text)
            if len(w) >= self.min_length and w.lower() not in _STOPWORDS
        ]
        counts = Counter(words)
        ranked = sorted(counts.items(), key=lambda kv: (-kv[1], kv[0]))
        return ", ".join(word for word, _ in ranked[:self.max_tags])


class ProducerRegistry:
    """
    Registry for discovering and instantiating producers.

    Producers are registered by name and created from configuration,
    so ``memex.toml`` can pick a producer per artifact kind without
    code changes.

    Example:
        registry = get_registry()
        registry.register("truncate", TruncateSummary)
        producer = registry.create("truncate", {"max_chars": 200})
    """

    def __init__(self):
        self._producers: dict[str, type] = {}

    def register(self, name: str, producer_class: type) -> None:
        """Register a producer class (or factory) under a name."""
        self._producers[name] = producer_class

    def create(self, name: str, params: dict | None = None):
        """
        Create a producer instance.

        Raises:
            ValueError: If no producer is registered under ``name``
            RuntimeError: If the producer cannot be constructed
        """
        if name not in self._producers:
            available = ", ".join(sorted(self._producers)) or "none"
            raise ValueError(f"Unknown producer: {name!r} (available: {available})")
        try:
            return self._producers[name](**(params or {}))
        except TypeError as e:
            raise RuntimeError(f"Failed to create producer '{name}': {e}") from e

    def list_producers(self) -> list[str]:
        """List registered producer names."""
        return sorted(self._producers)


def producer_name(producer) -> str:
    """Identify a producer for ``Artifact.produced_by``."""
    for attr in ("model_name", "name"):
        value = getattr(producer, attr, None)
        if isinstance(value, str) and value:
            return value
    return "unknown"


# Global registry instance
_registry = ProducerRegistry()
_registry.register("truncate", TruncateSummary)
_registry.register("first_paragraph", FirstParagraphSummary)
_registry.register("keywords", KeywordTags)


def get_registry() -> ProducerRegistry:
    """Get the global producer registry."""
    return _registry
