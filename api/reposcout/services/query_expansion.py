"""Query expansion for GitHub repository search.

Turns one natural-language request into the concrete search strings sent to
GitHub. With template expansion on, three fixed strategies bias the search
toward repositories that:
  1. mention the platform's configuration file in their README
  2. carry the platform's topic tag and primary languages
  3. mention one of the platform's well-known frameworks

Output order is fixed. The query hash recorded on each attempt is taken over
this list, so identical input must always expand to an identical list.
"""

import hashlib
import json
import re
from dataclasses import dataclass

_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class ExpansionProfile:
    platform: str
    config_files: tuple[str, ...]
    topic: str
    languages: tuple[str, ...]
    frameworks: tuple[str, ...]
    readme_keyword: str


CLOUDFLARE_WORKERS = ExpansionProfile(
    platform="Cloudflare Workers",
    config_files=("wrangler.toml", "wrangler.jsonc"),
    topic="cloudflare-workers",
    languages=("TypeScript", "JavaScript"),
    frameworks=("hono", "itty-router"),
    readme_keyword="cloudflare",
)


def _or_group(terms: list[str]) -> str:
    return "(" + " OR ".join(terms) + ")"


def _quote(term: str) -> str:
    return f'"{term}"' if any(c in term for c in " .-") else term


def sanitize_query(natural_language: str) -> str:
    """Strip double quotes and collapse whitespace.

    Falls back to the raw input when nothing is left, so a query made only of
    quote characters still produces something to search for.
    """
    tokens = _WHITESPACE_RE.split(natural_language.replace('"', " ").strip())
    tokens = [t for t in tokens if t]
    return " ".join(tokens) if tokens else natural_language


def build_search_queries(
    natural_language: str,
    base_keywords: bool = False,
    profile: ExpansionProfile = CLOUDFLARE_WORKERS,
) -> list[str]:
    """Expand a request into GitHub search queries.

    Args:
        natural_language: Raw user query.
        base_keywords: When False, return the sanitized query alone.
        profile: Platform vocabulary used by the three templates.

    Returns:
        One query, or exactly three in template order.
    """
    query = sanitize_query(natural_language)
    if not base_keywords:
        return [query]

    config_files = _or_group([f"in:readme {_quote(f)}" for f in profile.config_files])
    topic = _or_group([
        f"topic:{profile.topic}",
        f"in:readme {_quote(profile.platform.lower())}",
    ])
    languages = _or_group([f"language:{lang}" for lang in profile.languages])
    frameworks = _or_group([_quote(f) for f in profile.frameworks])

    return [
        f"{config_files} AND {query}",
        f"{topic} AND {languages} AND {query}",
        f"{frameworks} AND (in:readme {profile.readme_keyword}) AND {query}",
    ]


def query_hash(queries: list[str]) -> str:
    """SHA-256 over the JSON-encoded query list (order-sensitive)."""
    return hashlib.sha256(json.dumps(queries).encode("utf-8")).hexdigest()
