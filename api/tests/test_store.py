"""Tests for the result store against a throwaway SQLite database."""

from datetime import datetime, timezone

import pytest
import pytest_asyncio

from conftest import make_candidate, make_repo
from reposcout.errors import InvalidRequestError, StoreError


async def _attempt(store, session_id, query="workers"):
    return await store.create_attempt(
        session_id=session_id,
        search_query=query,
        expanded_queries=[query],
        query_hash="h",
    )


async def test_create_session_is_idempotent_on_id(store):
    first = await store.create_session("find worker templates", session_id="7b1f0c52-4c1e-4d8a-9a55-3f2d3c1e9b10")
    again = await store.create_session("something else", session_id=first.id)

    assert again.id == first.id
    assert again.natural_language_request == "find worker templates"


async def test_soft_deleted_session_is_hidden(store):
    session = await store.create_session("find worker templates")

    assert await store.soft_delete_session(session.id) is True
    assert await store.soft_delete_session(session.id) is False
    assert await store.get_session(session.id) is None
    assert (await store.get_session(session.id, include_deleted=True)).deleted_at is not None

    rows, _ = await store.list_sessions()
    assert session.id not in [r.id for r in rows]


async def test_list_sessions_pages_newest_first(store):
    ids = [(await store.create_session(f"request {i}")).id for i in range(3)]

    page, cursor = await store.list_sessions(limit=2)
    assert [r.id for r in page] == [ids[2], ids[1]]
    assert cursor is not None

    rest, cursor = await store.list_sessions(limit=2, cursor=cursor)
    assert [r.id for r in rest] == [ids[0]]
    assert cursor is None


async def test_list_sessions_keeps_sessions_sharing_a_timestamp(store, monkeypatch):
    moment = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
    monkeypatch.setattr("reposcout.services.store._now", lambda: moment)
    ids = {(await store.create_session(f"request {i}")).id for i in range(3)}

    page, cursor = await store.list_sessions(limit=2)
    rest, last = await store.list_sessions(limit=2, cursor=cursor)

    seen = [r.id for r in page + rest]
    assert sorted(seen) == sorted(ids)
    assert seen == sorted(ids, reverse=True)
    assert last is None


async def test_list_sessions_rejects_bad_cursor(store):
    with pytest.raises(InvalidRequestError):
        await store.list_sessions(cursor="not-a-timestamp")


async def test_result_groups_are_gap_free_per_session(store):
    a = await store.create_session("a")
    b = await store.create_session("b")

    groups_a = [(await _attempt(store, a.id)).result_group for _ in range(3)]
    groups_b = [(await _attempt(store, b.id)).result_group for _ in range(2)]

    assert groups_a == [1, 2, 3]
    assert groups_b == [1, 2]
    assert await store.next_result_group(a.id) == 4


async def test_create_attempt_for_unknown_session_fails(store):
    with pytest.raises(StoreError):
        await _attempt(store, "missing")


async def test_insert_results_is_idempotent_per_triple(store):
    session = await store.create_session("a")
    attempt = await _attempt(store, session.id)
    candidates = [make_candidate(1), make_candidate(2)]
    await store.insert_items([c.repo for c in candidates])

    await store.insert_results(session.id, attempt.id, candidates)
    await store.insert_results(session.id, attempt.id, candidates)

    assert await store.count_results(session.id) == 2
    items, _ = await store.list_results(session.id, sort="time_desc")
    assert {i.batch_id for i in items} == {0, 1}
    assert all(i.judge_relevance_score is None for i in items)


async def test_insert_items_keeps_stored_etag_when_new_one_is_null(store):
    await store.insert_items([make_repo(1, etag='"v1"')])
    await store.insert_items([make_repo(1, description="renamed")])

    assert await store.get_etags_for_items(["R_node1", "R_node2"]) == {"R_node1": '"v1"'}
    [item] = await store.get_items_by_keys(["R_node1"])
    assert item.description == "renamed"


async def test_judge_review_upsert_replaces_findings(store):
    session = await store.create_session("a")
    attempt = await _attempt(store, session.id)

    await store.upsert_judge_review(session.id, attempt.id, "first", ["q1"])
    await store.upsert_judge_review(session.id, attempt.id, "second", ["q2", "q3"])

    [listed] = await store.list_attempts(session.id)
    assert listed.judge_summary == "second"
    assert listed.recommendations == ["q2", "q3"]


async def test_cached_content_returns_latest_readme(store):
    session = await store.create_session("a")
    first = await _attempt(store, session.id)
    second = await _attempt(store, session.id)
    await store.insert_items([make_repo(1)])
    await store.insert_results(session.id, first.id, [make_candidate(1, readme="old")])
    await store.insert_results(session.id, second.id, [make_candidate(1, readme="new")])

    assert await store.get_cached_content("R_node1") == "new"
    assert await store.get_cached_content("R_node9") is None


async def test_item_keys_for_sessions_in_first_seen_order(store):
    session = await store.create_session("a")
    attempt = await _attempt(store, session.id)
    candidates = [make_candidate(3), make_candidate(1), make_candidate(2)]
    await store.insert_items([c.repo for c in candidates])
    await store.insert_results(session.id, attempt.id, candidates)

    keys = await store.get_item_keys_for_sessions([session.id])
    assert keys == ["R_node3", "R_node1", "R_node2"]
    assert [r.full_name for r in await store.get_items_by_keys(keys)] == [
        "owner/repo-3", "owner/repo-1", "owner/repo-2",
    ]


class TestListResults:
    @pytest_asyncio.fixture
    async def seeded(self, store):
        session = await store.create_session("a")
        first = await _attempt(store, session.id)
        second = await _attempt(store, session.id)
        repos = [make_repo(1), make_repo(2, description="Hono router starter"), make_repo(3)]
        await store.insert_items(repos)
        await store.insert_results(session.id, first.id, [make_candidate(1), make_candidate(2)])
        await store.insert_results(session.id, second.id, [make_candidate(2), make_candidate(3)])
        await store.update_result_scores(first.id, [("R_node1", 0.9, "great"), ("R_node2", 0.4, "meh")])
        await store.update_result_scores(second.id, [("R_node2", 0.7, "better"), ("R_node3", 0.2, "off")])
        return session, first, second

    async def test_dedupe_keeps_best_ranked_row(self, store, seeded):
        session, _, _ = seeded
        items, _ = await store.list_results(session.id)
        assert [(i.repo_id, i.judge_relevance_score) for i in items] == [
            ("R_node1", 0.9), ("R_node2", 0.7), ("R_node3", 0.2),
        ]

        all_rows, _ = await store.list_results(session.id, dedupe=False)
        assert len(all_rows) == 4

    async def test_min_score_and_text_filter(self, store, seeded):
        session, _, _ = seeded
        items, _ = await store.list_results(session.id, min_score=0.5)
        assert {i.repo_id for i in items} == {"R_node1", "R_node2"}

        items, _ = await store.list_results(session.id, q="HONO")
        assert [i.repo.full_name for i in items] == ["owner/repo-2"]

    async def test_exclude_previous_attempts(self, store, seeded):
        session, _, second = seeded
        items, _ = await store.list_results(
            session.id, attempt_id=second.id, exclude_previous_attempts=True
        )
        assert [i.repo_id for i in items] == ["R_node3"]

    async def test_cursor_pages_through_results(self, store, seeded):
        session, _, _ = seeded
        page, cursor = await store.list_results(session.id, limit=2)
        assert cursor == "2"
        rest, cursor = await store.list_results(session.id, limit=2, cursor=cursor)
        assert [i.repo_id for i in page + rest] == ["R_node1", "R_node2", "R_node3"]
        assert cursor is None

    async def test_stars_sort(self, store, seeded):
        session, _, _ = seeded
        items, _ = await store.list_results(session.id, sort="stars_desc")
        assert [i.repo_id for i in items] == ["R_node1", "R_node2", "R_node3"]

    async def test_unknown_sort_is_rejected(self, store, seeded):
        session, _, _ = seeded
        with pytest.raises(InvalidRequestError):
            await store.list_results(session.id, sort="random")
