"""Result store: durable audit trail of sessions, rounds, repos and scores.

Every method opens its own database session and commits before returning,
so a failure in a later step of a round never rolls back an earlier one.
SQLAlchemy errors surface as StoreError.

Upserts use ON CONFLICT, which PostgreSQL and SQLite both understand; typed
bind parameters keep JSON and timestamp columns portable across the two.
"""

import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import structlog
from sqlalchemy import DateTime, Float, String, and_, bindparam, func, or_, select, text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.types import JSON

from reposcout.errors import InvalidRequestError, StoreError
from reposcout.models import JudgeReview, Repo, SearchAttempt, SearchResult, SearchSession
from reposcout.schemas.github import GitHubRepository
from reposcout.schemas.session import AttemptListItem, ResultItem, ResultRepo

log = structlog.get_logger(__name__)

# Concurrent rounds on one session can race for the same result_group
MAX_GROUP_ALLOCATION_TRIES = 3

RESULT_SORTS = ("score_desc", "stars_desc", "time_desc")

_UPSERT_REPO = text(
    "INSERT INTO repos "
    "(id, full_name, html_url, description, stars, language, topics, updated_at, etag) "
    "VALUES (:id, :full_name, :html_url, :description, :stars, :language, :topics, "
    ":updated_at, :etag) "
    "ON CONFLICT (id) DO UPDATE SET "
    "full_name = excluded.full_name, html_url = excluded.html_url, "
    "description = excluded.description, stars = excluded.stars, "
    "language = excluded.language, topics = excluded.topics, "
    "updated_at = excluded.updated_at, "
    "etag = COALESCE(excluded.etag, repos.etag)"
).bindparams(
    bindparam("topics", type_=JSON),
    bindparam("updated_at", type_=DateTime(timezone=True)),
)

_INSERT_RESULT = text(
    "INSERT INTO search_results "
    "(session_id, search_attempt_id, repo_id, repo_url, readme_content, "
    "judge_finding, judge_relevance_score, batch_id, inserted_at) "
    "VALUES (:session_id, :search_attempt_id, :repo_id, :repo_url, :readme_content, "
    "NULL, NULL, :batch_id, :inserted_at) "
    "ON CONFLICT (session_id, search_attempt_id, repo_id) DO NOTHING"
).bindparams(bindparam("inserted_at", type_=DateTime(timezone=True)))

_UPSERT_REVIEW = text(
    "INSERT INTO judge_reviews "
    "(session_id, search_attempt_id, overall_judge_findings, judge_recommendations, "
    "created_at, updated_at) "
    "VALUES (:session_id, :attempt_id, :findings, :recommendations, :now, :now) "
    "ON CONFLICT (search_attempt_id) DO UPDATE SET "
    "overall_judge_findings = excluded.overall_judge_findings, "
    "judge_recommendations = excluded.judge_recommendations, "
    "updated_at = excluded.updated_at"
).bindparams(
    bindparam("recommendations", type_=JSON),
    bindparam("now", type_=DateTime(timezone=True)),
)

_INSERT_SESSION = text(
    "INSERT INTO sessions (id, natural_language_request, created_at) "
    "VALUES (:id, :request, :created_at) "
    "ON CONFLICT (id) DO NOTHING"
).bindparams(bindparam("created_at", type_=DateTime(timezone=True)))


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _repo_to_item(row: Repo) -> GitHubRepository:
    return GitHubRepository(
        node_id=row.id,
        full_name=row.full_name,
        html_url=row.html_url,
        description=row.description,
        stargazers_count=row.stars or 0,
        language=row.language,
        topics=row.topics or [],
        updated_at=row.updated_at,
        etag=row.etag,
    )


def _attempt_to_item(attempt: SearchAttempt, review: Optional[JudgeReview]) -> AttemptListItem:
    return AttemptListItem(
        attempt_id=attempt.id,
        result_group=attempt.result_group,
        search_query=attempt.search_query,
        expanded_queries=attempt.expanded_queries or [],
        query_hash=attempt.query_hash,
        created_at=attempt.created_at,
        judge_summary=review.overall_judge_findings if review else None,
        recommendations=(review.judge_recommendations or []) if review else [],
        latency_ms=attempt.latency_ms,
    )


class ResultStore:
    """Repository-style access to the search tables.

    Args:
        session_factory: async_sessionmaker bound to the target engine.
    """

    def __init__(self, session_factory: async_sessionmaker) -> None:
        self._factory = session_factory

    @asynccontextmanager
    async def _session(self, operation: str):
        try:
            async with self._factory() as session:
                yield session
        except SQLAlchemyError as exc:
            log.error("store_operation_failed", operation=operation, error=str(exc))
            raise StoreError(f"Store operation '{operation}' failed: {type(exc).__name__}") from exc

    # Sessions

    async def create_session(
        self, natural_language_request: str, session_id: Optional[str] = None
    ) -> SearchSession:
        """Create a session; an existing id is returned unchanged."""
        session_id = session_id or str(uuid.uuid4())
        async with self._session("create_session") as db:
            await db.execute(
                _INSERT_SESSION,
                {"id": session_id, "request": natural_language_request, "created_at": _now()},
            )
            await db.commit()
            row = await db.get(SearchSession, session_id)
        if row is None:
            raise StoreError(f"Session {session_id} was not persisted")
        return row

    async def get_session(self, session_id: str, include_deleted: bool = False) -> Optional[SearchSession]:
        async with self._session("get_session") as db:
            row = await db.get(SearchSession, session_id)
        if row is None or (row.deleted_at is not None and not include_deleted):
            return None
        return row

    async def list_sessions(
        self, limit: int = 20, cursor: Optional[str] = None
    ) -> tuple[list[SearchSession], Optional[str]]:
        """Non-deleted sessions, newest first.

        The cursor is ``<created_at>|<id>`` of the last row seen, so sessions
        sharing a timestamp are split across pages without loss.
        """
        stmt = select(SearchSession).where(SearchSession.deleted_at.is_(None))
        if cursor:
            created, _, last_id = cursor.rpartition("|")
            try:
                before = datetime.fromisoformat(created)
            except ValueError as exc:
                raise InvalidRequestError(f"Invalid cursor: {cursor}") from exc
            if not last_id:
                raise InvalidRequestError(f"Invalid cursor: {cursor}")
            stmt = stmt.where(
                or_(
                    SearchSession.created_at < before,
                    and_(SearchSession.created_at == before, SearchSession.id < last_id),
                )
            )
        stmt = stmt.order_by(SearchSession.created_at.desc(), SearchSession.id.desc()).limit(limit)

        async with self._session("list_sessions") as db:
            rows = list((await db.execute(stmt)).scalars().all())
        next_cursor = None
        if len(rows) == limit:
            last = rows[-1]
            next_cursor = f"{last.created_at.isoformat()}|{last.id}"
        return rows, next_cursor

    async def soft_delete_session(self, session_id: str) -> bool:
        async with self._session("soft_delete_session") as db:
            result = await db.execute(
                update(SearchSession)
                .where(SearchSession.id == session_id, SearchSession.deleted_at.is_(None))
                .values(deleted_at=_now())
            )
            await db.commit()
        return result.rowcount > 0

    # Attempts

    async def next_result_group(self, session_id: str) -> int:
        async with self._session("next_result_group") as db:
            return await self._next_group(db, session_id)

    @staticmethod
    async def _next_group(db: AsyncSession, session_id: str) -> int:
        value = await db.scalar(
            select(func.coalesce(func.max(SearchAttempt.result_group), 0) + 1).where(
                SearchAttempt.session_id == session_id
            )
        )
        return int(value or 1)

    async def create_attempt(
        self,
        session_id: str,
        search_query: str,
        expanded_queries: list[str],
        query_hash: str,
        judge_model: Optional[str] = None,
        judge_model_version: Optional[str] = None,
        search_strategy_version: Optional[str] = None,
    ) -> SearchAttempt:
        """Insert an attempt with the next result_group for the session.

        The group is read and written in one transaction holding a row lock
        on the session, so concurrent rounds of one session stay gap-free.
        """
        for attempt_no in range(1, MAX_GROUP_ALLOCATION_TRIES + 1):
            try:
                async with self._session("create_attempt") as db:
                    owner = await db.scalar(
                        select(SearchSession.id)
                        .where(SearchSession.id == session_id)
                        .with_for_update()
                    )
                    if owner is None:
                        raise StoreError(f"Session {session_id} does not exist")

                    row = SearchAttempt(
                        session_id=session_id,
                        result_group=await self._next_group(db, session_id),
                        search_query=search_query,
                        expanded_queries=list(expanded_queries),
                        query_hash=query_hash,
                        judge_model=judge_model,
                        judge_model_version=judge_model_version,
                        search_strategy_version=search_strategy_version,
                        created_at=_now(),
                    )
                    db.add(row)
                    await db.commit()
                    return row
            except StoreError as exc:
                if not isinstance(exc.__cause__, IntegrityError) or attempt_no == MAX_GROUP_ALLOCATION_TRIES:
                    raise
                log.warning("result_group_conflict", session_id=session_id, try_no=attempt_no)
        raise StoreError(f"Could not allocate result group for session {session_id}")

    async def record_attempt_cost(
        self,
        attempt_id: int,
        latency_ms: int,
        judge_prompt_tokens: int = 0,
        judge_completion_tokens: int = 0,
        github_requests: int = 0,
    ) -> None:
        async with self._session("record_attempt_cost") as db:
            await db.execute(
                update(SearchAttempt)
                .where(SearchAttempt.id == attempt_id)
                .values(
                    latency_ms=latency_ms,
                    judge_prompt_tokens=judge_prompt_tokens,
                    judge_completion_tokens=judge_completion_tokens,
                    github_requests=github_requests,
                )
            )
            await db.commit()

    async def get_attempt_ids_for_session(self, session_id: str) -> list[int]:
        async with self._session("get_attempt_ids_for_session") as db:
            rows = await db.scalars(
                select(SearchAttempt.id).where(SearchAttempt.session_id == session_id)
            )
            return list(rows.all())

    async def list_attempts(self, session_id: str) -> list[AttemptListItem]:
        """Attempts of a session, newest first, with their judge review."""
        stmt = (
            select(SearchAttempt, JudgeReview)
            .outerjoin(JudgeReview, JudgeReview.search_attempt_id == SearchAttempt.id)
            .where(SearchAttempt.session_id == session_id)
            .order_by(SearchAttempt.created_at.desc(), SearchAttempt.id.desc())
        )
        async with self._session("list_attempts") as db:
            rows = (await db.execute(stmt)).all()
        return [_attempt_to_item(attempt, review) for attempt, review in rows]

    async def get_latest_attempt(self, session_id: str) -> Optional[AttemptListItem]:
        attempts = await self.list_attempts(session_id)
        return attempts[0] if attempts else None

    async def count_attempts(self, session_id: str) -> int:
        async with self._session("count_attempts") as db:
            value = await db.scalar(
                select(func.count()).select_from(SearchAttempt).where(SearchAttempt.session_id == session_id)
            )
        return int(value or 0)

    # Repos and results

    async def insert_items(self, items: list[GitHubRepository]) -> None:
        """Insert-or-replace repositories; a null etag keeps the stored one."""
        if not items:
            return
        params = [
            {
                "id": item.node_id,
                "full_name": item.full_name,
                "html_url": item.html_url,
                "description": item.description,
                "stars": item.stargazers_count,
                "language": item.language,
                "topics": list(item.topics),
                "updated_at": item.updated_at,
                "etag": item.etag,
            }
            for item in items
        ]
        async with self._session("insert_items") as db:
            await db.execute(_UPSERT_REPO, params)
            await db.commit()

    async def insert_results(self, session_id: str, attempt_id: int, candidates: list) -> None:
        """Insert one unscored result per candidate; existing triples are left alone."""
        if not candidates:
            return
        now = _now()
        params = [
            {
                "session_id": session_id,
                "search_attempt_id": attempt_id,
                "repo_id": c.repo.key,
                "repo_url": c.repo.html_url,
                "readme_content": c.readme,
                "batch_id": position,
                "inserted_at": now,
            }
            for position, c in enumerate(candidates)
        ]
        async with self._session("insert_results") as db:
            await db.execute(_INSERT_RESULT, params)
            await db.commit()

    async def upsert_judge_review(
        self, session_id: str, attempt_id: int, findings: str, recommendations: list[str]
    ) -> None:
        async with self._session("upsert_judge_review") as db:
            await db.execute(
                _UPSERT_REVIEW,
                {
                    "session_id": session_id,
                    "attempt_id": attempt_id,
                    "findings": findings,
                    "recommendations": list(recommendations),
                    "now": _now(),
                },
            )
            await db.commit()

    async def update_result_scores(
        self, attempt_id: int, scores: list[tuple[str, float, str]]
    ) -> None:
        """Write judge score and note for (repo_id, score, note) entries of one attempt."""
        if not scores:
            return
        stmt = text(
            "UPDATE search_results SET judge_relevance_score = :score, judge_finding = :note "
            "WHERE search_attempt_id = :attempt_id AND repo_id = :repo_id"
        ).bindparams(bindparam("score", type_=Float), bindparam("repo_id", type_=String))
        async with self._session("update_result_scores") as db:
            await db.execute(
                stmt,
                [
                    {"attempt_id": attempt_id, "repo_id": repo_id, "score": score, "note": note}
                    for repo_id, score, note in scores
                ],
            )
            await db.commit()

    async def get_etags_for_items(self, keys: list[str]) -> dict[str, str]:
        if not keys:
            return {}
        async with self._session("get_etags_for_items") as db:
            rows = await db.execute(
                select(Repo.id, Repo.etag).where(Repo.id.in_(keys), Repo.etag.is_not(None))
            )
            return {key: etag for key, etag in rows.all()}

    async def get_cached_content(self, key: str) -> Optional[str]:
        """Most recently stored README for a repository, if any."""
        async with self._session("get_cached_content") as db:
            return await db.scalar(
                select(SearchResult.readme_content)
                .where(SearchResult.repo_id == key, SearchResult.readme_content.is_not(None))
                .order_by(SearchResult.id.desc())
                .limit(1)
            )

    async def get_item_keys_for_sessions(self, session_ids: list[str]) -> list[str]:
        """Distinct repository keys found by the sessions, in first-seen order."""
        if not session_ids:
            return []
        stmt = (
            select(SearchResult.repo_id)
            .where(SearchResult.session_id.in_(session_ids))
            .group_by(SearchResult.repo_id)
            .order_by(func.min(SearchResult.id))
        )
        async with self._session("get_item_keys_for_sessions") as db:
            return list((await db.scalars(stmt)).all())

    async def get_item_keys_for_attempts(self, attempt_ids: list[int]) -> list[str]:
        if not attempt_ids:
            return []
        stmt = (
            select(SearchResult.repo_id)
            .where(SearchResult.search_attempt_id.in_(attempt_ids))
            .distinct()
        )
        async with self._session("get_item_keys_for_attempts") as db:
            return list((await db.scalars(stmt)).all())

    async def get_items_by_keys(self, keys: list[str]) -> list[GitHubRepository]:
        """Stored repositories for ``keys``, in the order given."""
        if not keys:
            return []
        async with self._session("get_items_by_keys") as db:
            rows = (await db.scalars(select(Repo).where(Repo.id.in_(keys)))).all()
        by_key = {row.id: row for row in rows}
        return [_repo_to_item(by_key[k]) for k in keys if k in by_key]

    async def count_results(self, session_id: str) -> int:
        async with self._session("count_results") as db:
            value = await db.scalar(
                select(func.count()).select_from(SearchResult).where(SearchResult.session_id == session_id)
            )
        return int(value or 0)

    async def list_results(
        self,
        session_id: str,
        attempt_id: Optional[int] = None,
        min_score: Optional[float] = None,
        q: Optional[str] = None,
        dedupe: bool = True,
        sort: str = "score_desc",
        limit: int = 20,
        cursor: Optional[str] = None,
        exclude_previous_attempts: bool = False,
    ) -> tuple[list[ResultItem], Optional[str]]:
        """Filtered, sorted page of results. The cursor is an opaque row offset.

        ``exclude_previous_attempts`` (with ``attempt_id``) hides repositories
        already surfaced by earlier attempts of the session.
        """
        if sort not in RESULT_SORTS:
            raise InvalidRequestError(f"Unknown sort '{sort}'; expected one of {', '.join(RESULT_SORTS)}")
        try:
            offset = int(cursor) if cursor else 0
        except ValueError as exc:
            raise InvalidRequestError(f"Invalid cursor: {cursor}") from exc
        if offset < 0:
            raise InvalidRequestError(f"Invalid cursor: {cursor}")

        stmt = (
            select(SearchResult, Repo)
            .outerjoin(Repo, Repo.id == SearchResult.repo_id)
            .where(SearchResult.session_id == session_id)
        )
        if attempt_id is not None:
            stmt = stmt.where(SearchResult.search_attempt_id == attempt_id)
            if exclude_previous_attempts:
                earlier = select(SearchResult.repo_id).where(
                    and_(
                        SearchResult.session_id == session_id,
                        SearchResult.search_attempt_id < attempt_id,
                    )
                )
                stmt = stmt.where(SearchResult.repo_id.not_in(earlier))
        if min_score is not None:
            stmt = stmt.where(SearchResult.judge_relevance_score >= min_score)
        if q:
            pattern = f"%{q.lower()}%"
            stmt = stmt.where(
                or_(func.lower(Repo.full_name).like(pattern), func.lower(Repo.description).like(pattern))
            )

        if sort == "score_desc":
            stmt = stmt.order_by(
                SearchResult.judge_relevance_score.is_(None),
                SearchResult.judge_relevance_score.desc(),
                SearchResult.id.desc(),
            )
        elif sort == "stars_desc":
            stmt = stmt.order_by(Repo.stars.is_(None), Repo.stars.desc(), SearchResult.id.desc())
        else:
            stmt = stmt.order_by(SearchResult.inserted_at.desc(), SearchResult.id.desc())

        if not dedupe:
            stmt = stmt.offset(offset).limit(limit + 1)

        async with self._session("list_results") as db:
            rows = (await db.execute(stmt)).all()

        if dedupe:
            seen: set[str] = set()
            unique = []
            for result, repo in rows:
                if result.repo_id in seen:
                    continue
                seen.add(result.repo_id)
                unique.append((result, repo))
            rows = unique[offset:offset + limit + 1]

        has_more = len(rows) > limit
        items = [self._result_item(result, repo) for result, repo in rows[:limit]]
        next_cursor = str(offset + limit) if has_more else None
        return items, next_cursor

    @staticmethod
    def _result_item(result: SearchResult, repo: Optional[Repo]) -> ResultItem:
        return ResultItem(
            id=result.id,
            session_id=result.session_id,
            search_attempt_id=result.search_attempt_id,
            repo_id=result.repo_id,
            repo_url=result.repo_url,
            judge_finding=result.judge_finding,
            judge_relevance_score=result.judge_relevance_score,
            batch_id=result.batch_id,
            inserted_at=result.inserted_at,
            repo=ResultRepo(
                id=repo.id,
                full_name=repo.full_name,
                html_url=repo.html_url,
                description=repo.description,
                stars=repo.stars,
                language=repo.language,
                topics=repo.topics or [],
            ) if repo else None,
        )
