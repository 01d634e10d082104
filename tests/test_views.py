"""Tests for filter state and the entity projection."""

import pytest

from memex.observable import ObservableStore
from memex.types import ContentKind, Entity, Membership, entity_key, membership_key
from memex.views import (
    FILTER_KEY,
    SORT_OLDEST,
    SORT_RECENT,
    FilterState,
    FilterView,
    project,
    select_kind,
    select_space,
    toggle_sort,
    toggle_tag,
)


def entity(id, created_at, **fields):
    return Entity(id=id, created_at=created_at, updated_at=created_at, **fields)


@pytest.fixture
def entities():
    return [
        entity("old", "2026-01-01T00:00:00.000000Z", kind=ContentKind.NOTE, tags=frozenset({"jazz"})),
        entity("mid", "2026-02-01T00:00:00.000000Z", kind=ContentKind.ARTICLE,
               title="Jazz history", tags=frozenset({"jazz", "history"})),
        entity("new", "2026-03-01T00:00:00.000000Z", kind=ContentKind.NOTE, notes="remember"),
        entity("gone", "2026-04-01T00:00:00.000000Z", deleted=True),
        entity("shelved", "2026-05-01T00:00:00.000000Z", is_archived=True),
    ]


class TestProject:
    def test_default_is_newest_first_without_tombstones_or_archive(self, entities):
        assert [e.id for e in project(entities, FilterState())] == ["new", "mid", "old"]

    def test_oldest_first(self, entities):
        filters = FilterState(sort_order=SORT_OLDEST)
        assert [e.id for e in project(entities, filters)] == ["old", "mid", "new"]

    def test_ties_break_on_id(self):
        same = "2026-01-01T00:00:00.000000Z"
        items = [entity("b", same), entity("a", same)]
        assert [e.id for e in project(items, FilterState(sort_order=SORT_OLDEST))] == ["a", "b"]

    def test_kind(self, entities):
        filters = FilterState(content_kind=ContentKind.NOTE)
        assert [e.id for e in project(entities, filters)] == ["new", "old"]

    def test_tags_must_all_match(self, entities):
        filters = FilterState(tags=frozenset({"jazz", "history"}))
        assert [e.id for e in project(entities, filters)] == ["mid"]

    def test_query_is_case_insensitive(self, entities):
        assert [e.id for e in project(entities, FilterState(query="JAZZ"))] == ["mid", "old"]
        assert [e.id for e in project(entities, FilterState(query="remember"))] == ["new"]

    def test_archived(self, entities):
        assert [e.id for e in project(entities, FilterState(archived=True))] == ["shelved"]
        assert len(project(entities, FilterState(archived=None))) == 4

    def test_space(self, entities):
        memberships = [
            Membership("old", "reading"),
            Membership("new", "reading"),
            Membership("mid", "work"),
            Membership("gone", "reading"),
        ]
        filters = FilterState(space_id="reading")
        assert [e.id for e in project(entities, filters, memberships)] == ["new", "old"]
        assert project(entities, FilterState(space_id="empty"), memberships) == []
        # Without a space filter, memberships don't matter
        assert len(project(entities, FilterState(), memberships)) == 3


class TestFilterState:
    def test_invalid_sort(self):
        with pytest.raises(ValueError):
            FilterState(sort_order="random")

    def test_dict_round_trip(self):
        filters = FilterState(
            sort_order=SORT_OLDEST, content_kind=ContentKind.PDF,
            tags=frozenset({"b", "a"}), query="q", archived=None, space_id="s1",
        )
        data = filters.to_dict()
        assert data["id"] == "current"
        assert data["tags"] == ["a", "b"]
        assert FilterState.from_dict(data) == filters

    def test_from_dict_repairs_bad_values(self):
        filters = FilterState.from_dict({"sort_order": "sideways", "content_kind": "nope"})
        assert filters.sort_order == SORT_RECENT
        assert filters.content_kind is ContentKind.BOOKMARK

    def test_is_default(self):
        assert FilterState().is_default
        assert FilterState(sort_order=SORT_OLDEST).is_default
        assert not FilterState(query="x").is_default
        assert not FilterState(space_id="s1").is_default


class TestToggles:
    def test_toggle_tag(self):
        filters = toggle_tag(FilterState(), "jazz")
        assert filters.tags == frozenset({"jazz"})
        assert toggle_tag(filters, "jazz").tags == frozenset()
        assert toggle_tag(filters, "  ") is filters

    def test_select_kind_twice_clears(self):
        filters = select_kind(FilterState(), "note")
        assert filters.content_kind is ContentKind.NOTE
        assert select_kind(filters, ContentKind.NOTE).content_kind is None
        assert select_kind(filters, None).content_kind is None

    def test_toggle_sort(self):
        assert toggle_sort(FilterState()).sort_order == SORT_OLDEST
        assert toggle_sort(toggle_sort(FilterState())).sort_order == SORT_RECENT

    def test_select_space_twice_clears(self):
        filters = select_space(FilterState(), "s1")
        assert filters.space_id == "s1"
        assert select_space(filters, "s2").space_id == "s2"
        assert select_space(filters, "s1").space_id is None
        assert select_space(filters, None).space_id is None


class TestFilterView:
    def test_tracks_entities_and_filters(self):
        store = ObservableStore()
        view = FilterView(store)
        assert view.get() == []

        store.set(entity_key("a"), entity("a", "2026-01-01T00:00:00.000000Z", kind=ContentKind.NOTE))
        store.set(entity_key("b"), entity("b", "2026-01-02T00:00:00.000000Z"))
        assert [e.id for e in view.get()] == ["b", "a"]

        store.set(FILTER_KEY, FilterState(content_kind=ContentKind.NOTE))
        assert [e.id for e in view.get()] == ["a"]
        assert view.filters.content_kind is ContentKind.NOTE
        view.close()

    def test_pinned_filters_ignore_stored_state(self):
        store = ObservableStore()
        store.set(entity_key("a"), entity("a", "2026-01-01T00:00:00.000000Z"))
        view = FilterView(store, FilterState(query="nothing matches"))
        store.set(FILTER_KEY, FilterState())
        assert view.get() == []
        view.close()

    def test_recomputes_when_memberships_change(self):
        store = ObservableStore()
        store.set(entity_key("a"), entity("a", "2026-01-01T00:00:00.000000Z"))
        store.set(entity_key("b"), entity("b", "2026-01-02T00:00:00.000000Z"))
        view = FilterView(store, FilterState(space_id="s1"))
        assert view.get() == []

        store.set(membership_key("a", "s1"), Membership("a", "s1"))
        assert [e.id for e in view.get()] == ["a"]
        store.delete(membership_key("a", "s1"))
        assert view.get() == []
        view.close()
