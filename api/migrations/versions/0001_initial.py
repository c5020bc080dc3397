"""Initial schema: sessions, repos, attempts, judge reviews, results

Revision ID: a1c3e5f7b9d1
Revises:
Create Date: 2026-10-17 09:00:00.000000

search_attempts.result_group is unique per session; the store allocates it
under a row lock on the session. search_results is unique on
(session_id, search_attempt_id, repo_id) so re-inserts are no-ops.

Written manually (not via autogenerate) consistent with project migration policy.
"""

from typing import Sequence, Union

import sqlalchemy as sa

from alembic import op

# revision identifiers, used by Alembic.
revision: str = "a1c3e5f7b9d1"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "sessions",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("natural_language_request", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_sessions_created_at", "sessions", ["created_at"])

    op.create_table(
        "repos",
        sa.Column("id", sa.String(100), primary_key=True),
        sa.Column("full_name", sa.String(255), nullable=False),
        sa.Column("html_url", sa.Text(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("stars", sa.Integer(), nullable=True),
        sa.Column("language", sa.String(100), nullable=True),
        sa.Column("topics", sa.JSON(), nullable=True),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("etag", sa.String(255), nullable=True),
    )
    op.create_index("ix_repos_full_name", "repos", ["full_name"])

    op.create_table(
        "search_attempts",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("session_id", sa.String(64), sa.ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False),
        sa.Column("result_group", sa.Integer(), nullable=False),
        sa.Column("search_query", sa.Text(), nullable=False),
        sa.Column("expanded_queries", sa.JSON(), nullable=False),
        sa.Column("query_hash", sa.String(64), nullable=True),
        sa.Column("judge_model", sa.String(100), nullable=True),
        sa.Column("judge_model_version", sa.String(50), nullable=True),
        sa.Column("search_strategy_version", sa.String(50), nullable=True),
        sa.Column("latency_ms", sa.Integer(), nullable=True),
        sa.Column("judge_prompt_tokens", sa.Integer(), nullable=True),
        sa.Column("judge_completion_tokens", sa.Integer(), nullable=True),
        sa.Column("github_requests", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("session_id", "result_group", name="uq_search_attempts_session_group"),
    )
    op.create_index("ix_search_attempts_query_hash", "search_attempts", ["query_hash"])

    op.create_table(
        "judge_reviews",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("session_id", sa.String(64), sa.ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "search_attempt_id",
            sa.Integer(),
            sa.ForeignKey("search_attempts.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("overall_judge_findings", sa.Text(), nullable=False),
        sa.Column("judge_recommendations", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "search_results",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("session_id", sa.String(64), sa.ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False),
        sa.Column(
            "search_attempt_id",
            sa.Integer(),
            sa.ForeignKey("search_attempts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("repo_id", sa.String(100), sa.ForeignKey("repos.id", ondelete="CASCADE"), nullable=False),
        sa.Column("repo_url", sa.Text(), nullable=False),
        sa.Column("readme_content", sa.Text(), nullable=True),
        sa.Column("judge_finding", sa.Text(), nullable=True),
        sa.Column("judge_relevance_score", sa.Float(), nullable=True),
        sa.Column("batch_id", sa.Integer(), nullable=True),
        sa.Column("inserted_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint(
            "session_id", "search_attempt_id", "repo_id",
            name="uq_search_results_session_attempt_repo",
        ),
    )
    op.create_index("ix_search_results_session_repo", "search_results", ["session_id", "repo_id"])


def downgrade() -> None:
    op.drop_index("ix_search_results_session_repo", table_name="search_results")
    op.drop_table("search_results")
    op.drop_table("judge_reviews")
    op.drop_index("ix_search_attempts_query_hash", table_name="search_attempts")
    op.drop_table("search_attempts")
    op.drop_index("ix_repos_full_name", table_name="repos")
    op.drop_table("repos")
    op.drop_index("ix_sessions_created_at", table_name="sessions")
    op.drop_table("sessions")
