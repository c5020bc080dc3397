"""Candidate deduplication and session-bias operations.

Within a round, the same repository often comes back from more than one
template query; the first occurrence wins, and because queries are processed
in template order, earlier templates win ties.

Across rounds there are two separate policies, kept as separate operations:
  - exclusion: drop repositories already surfaced by earlier attempts of the
    same session (pure set difference, no scoring)
  - session bias: force repositories found by other sessions back into the
    candidate set so they get judged against the new intent
"""

from typing import Callable, Iterable, TypeVar

import structlog

from reposcout.errors import InvalidRequestError
from reposcout.schemas.github import GitHubRepository

log = structlog.get_logger(__name__)

T = TypeVar("T")


def dedupe_by(items: Iterable[T], key: Callable[[T], str]) -> list[T]:
    """Keep the first item for each key, preserving order."""
    seen: set[str] = set()
    result: list[T] = []
    for item in items:
        k = key(item)
        if k in seen:
            continue
        seen.add(k)
        result.append(item)
    return result


def dedupe_candidates(candidates: list) -> list:
    """Collapse retrieved candidates by repository node id."""
    return dedupe_by(candidates, lambda c: c.repo.key)


def exclude_items(candidates: list, excluded_keys: set[str]) -> list:
    """Drop candidates whose repository key is in ``excluded_keys``."""
    if not excluded_keys:
        return candidates
    return [c for c in candidates if c.repo.key not in excluded_keys]


async def collect_excluded_keys(store, session_id: str, attempt_ids: list[int]) -> set[str]:
    """Union of repository keys surfaced by earlier attempts of this session.

    Raises:
        InvalidRequestError: If an attempt id does not belong to the session.
    """
    if not attempt_ids:
        return set()

    owned = await store.get_attempt_ids_for_session(session_id)
    foreign = sorted(set(attempt_ids) - set(owned))
    if foreign:
        raise InvalidRequestError(
            f"Attempts {foreign} do not belong to session {session_id}"
        )
    keys = set(await store.get_item_keys_for_attempts(attempt_ids))
    log.info("exclusion_set_collected", session_id=session_id, attempts=len(attempt_ids), excluded=len(keys))
    return keys


async def collect_session_bias_items(store, session_ids: list[str]) -> list[GitHubRepository]:
    """Repositories previously found by ``session_ids``, for forced inclusion."""
    if not session_ids:
        return []
    keys = await store.get_item_keys_for_sessions(session_ids)
    if not keys:
        return []
    return await store.get_items_by_keys(keys)
