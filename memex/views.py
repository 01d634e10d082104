"""
Filter/View projection over the entity collection.

``project`` is a pure function from (entities, filter state) to the
ordered list the UI shows. ``FilterView`` keeps that list current by
recomputing whenever an entity or the filter state changes.
"""

from dataclasses import dataclass, field, replace
from typing import Any, Iterable, Optional

from .observable import ComputedView, ObservableStore
from .types import ENTITIES, FILTERS, MEMBERSHIPS, ContentKind, Entity, Membership, normalize_tags

SORT_RECENT = "recent"
SORT_OLDEST = "oldest"

FILTER_ID = "current"
FILTER_KEY = (FILTERS, FILTER_ID)


@dataclass(frozen=True)
class FilterState:
    """What the entity list is narrowed to, and in which order."""
    sort_order: str = SORT_RECENT
    content_kind: Optional[ContentKind] = None
    tags: frozenset[str] = field(default_factory=frozenset)  # all must match
    query: str = ""
    archived: Optional[bool] = False  # None shows both
    space_id: Optional[str] = None
    updated_at: str = ""

    def __post_init__(self):
        if self.sort_order not in (SORT_RECENT, SORT_OLDEST):
            raise ValueError(f"sort_order must be {SORT_RECENT!r} or {SORT_OLDEST!r}")

    @property
    def is_default(self) -> bool:
        return (
            self.content_kind is None and not self.tags and not self.query
            and self.archived is False and self.space_id is None
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": FILTER_ID,
            "sort_order": self.sort_order,
            "content_kind": self.content_kind.value if self.content_kind else None,
            "tags": sorted(self.tags),
            "query": self.query,
            "archived": self.archived,
            "space_id": self.space_id,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FilterState":
        kind = data.get("content_kind")
        sort_order = data.get("sort_order") or SORT_RECENT
        return cls(
            sort_order=sort_order if sort_order in (SORT_RECENT, SORT_OLDEST) else SORT_RECENT,
            content_kind=ContentKind.coerce(kind) if kind else None,
            tags=normalize_tags(data.get("tags")),
            query=data.get("query") or "",
            archived=data.get("archived", False),
            space_id=data.get("space_id") or None,
            updated_at=data.get("updated_at") or "",
        )


def _matches_query(entity: Entity, query: str) -> bool:
    needle = query.casefold()
    haystack = (entity.title, entity.description, entity.content, entity.notes, *entity.tags)
    return any(needle in (text or "").casefold() for text in haystack)


def project(
    entities: Iterable[Entity],
    filters: FilterState,
    memberships: Iterable[Membership] = (),
) -> list[Entity]:
    """Filter and sort entities. Tombstones are always excluded.

    ``memberships`` is only consulted when the filter selects a space.
    """
    query = filters.query.strip()
    members = None
    if filters.space_id is not None:
        members = {m.entity_id for m in memberships if m.space_id == filters.space_id}
    selected = []
    for entity in entities:
        if entity.deleted:
            continue
        if filters.archived is not None and entity.is_archived != filters.archived:
            continue
        if filters.content_kind is not None and entity.kind != filters.content_kind:
            continue
        if filters.tags and not filters.tags <= entity.tags:
            continue
        if members is not None and entity.id not in members:
            continue
        if query and not _matches_query(entity, query):
            continue
        selected.append(entity)

    newest_first = filters.sort_order == SORT_RECENT
    selected.sort(key=lambda e: (e.created_at, e.id), reverse=newest_first)
    return selected


def toggle_tag(filters: FilterState, tag: str) -> FilterState:
    """Add the tag to the filter, or remove it if already selected."""
    tag = tag.strip()
    if not tag:
        return filters
    tags = filters.tags - {tag} if tag in filters.tags else filters.tags | {tag}
    return replace(filters, tags=frozenset(tags))


def select_kind(filters: FilterState, kind: Optional[ContentKind]) -> FilterState:
    """Filter to a content kind; selecting the current kind clears it."""
    if kind is not None:
        kind = ContentKind.coerce(kind)
    if kind == filters.content_kind:
        kind = None
    return replace(filters, content_kind=kind)


def select_space(filters: FilterState, space_id: Optional[str]) -> FilterState:
    """Filter to a space; selecting the current space clears it."""
    if space_id == filters.space_id:
        space_id = None
    return replace(filters, space_id=space_id)


def toggle_sort(filters: FilterState) -> FilterState:
    """Switch between newest-first and oldest-first."""
    order = SORT_OLDEST if filters.sort_order == SORT_RECENT else SORT_RECENT
    return replace(filters, sort_order=order)


class FilterView:
    """
    Live projection of the store's entities through its filter state.

    The filter state is read from the ``filters`` namespace unless an
    explicit one is given, in which case the view is pinned to it.
    """

    def __init__(self, store: ObservableStore, filters: Optional[FilterState] = None):
        self._store = store
        self._pinned = filters
        depends_on: list = [ENTITIES, MEMBERSHIPS]
        if filters is None:
            depends_on.append(FILTER_KEY)
        self._view: ComputedView = store.computed(self._compute, depends_on)

    @property
    def filters(self) -> FilterState:
        if self._pinned is not None:
            return self._pinned
        return self._store.get(FILTER_KEY) or FilterState()

    def _compute(self) -> list[Entity]:
        return project(self._store.values(ENTITIES), self.filters, self._store.values(MEMBERSHIPS))

    def get(self) -> list[Entity]:
        """Current projected list."""
        return self._view.get()

    def subscribe(self, callback) -> Any:
        """Call ``callback(entities)`` after every recomputation."""
        return self._view.subscribe(callback)

    def close(self) -> None:
        self._view.close()
