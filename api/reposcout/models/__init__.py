from .base import Base
from .session import SearchSession
from .repo import Repo
from .search_attempt import SearchAttempt
from .search_result import SearchResult
from .judge_review import JudgeReview

__all__ = [
    "Base",
    "SearchSession",
    "Repo",
    "SearchAttempt",
    "SearchResult",
    "JudgeReview",
]
