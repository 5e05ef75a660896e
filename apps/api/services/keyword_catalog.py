"""Built-in keyword categories, aliases and starter pools."""

from __future__ import annotations

from typing import Dict, List, Optional

CATEGORY_ALIASES: Dict[str, str] = {
    "ai": "artificial-intelligence",
    "artificial intelligence": "artificial-intelligence",
    "artificial-intelligence": "artificial-intelligence",
    "content": "content-creation",
    "content creation": "content-creation",
    "content-creation": "content-creation",
    "business": "business",
    "biz": "business",
    "productivity": "productivity",
    "nutrition": "nutrition",
    "health": "nutrition",
}

KEYWORD_POOLS: Dict[str, List[str]] = {
    "artificial-intelligence": [
        "ChatGPT prompts",
        "prompt engineering",
        "custom GPTs",
        "AI agents",
        "AI workflows",
        "RAG pipelines",
        "AI for marketing",
        "AI coding helpers",
        "no code AI",
        "few-shot prompting",
    ],
    "content-creation": [
        "content pillars",
        "viral hooks",
        "retention tactics",
        "storytelling frameworks",
        "Instagram Reels tips",
        "YouTube Shorts strategy",
        "mobile editing tricks",
        "caption templates",
        "content batching",
        "hook formulas",
    ],
    "business": [
        "product market fit",
        "pricing strategy",
        "sales funnels",
        "lead generation",
        "cold email tips",
        "unit economics",
        "SaaS metrics",
        "churn reduction",
        "founder led sales",
        "objection handling",
    ],
    "productivity": [
        "time blocking",
        "second brain",
        "weekly review",
        "deep work",
        "notion workflows",
        "calendar mastery",
        "2 minute rule",
        "context switching",
    ],
    "nutrition": [
        "macros explained",
        "protein sources",
        "gut health",
        "meal prep tips",
        "budget eating",
        "high protein recipes",
        "sugar reduction",
    ],
}


def normalize_category(value: Optional[str]) -> Optional[str]:
    """Map a user-supplied category to its canonical slug.

    Known aliases resolve to the catalog slug; unknown categories are kept as
    lower-cased, hyphenated tags so callers can run their own pools.
    """
    text = " ".join(str(value or "").split()).lower()
    if not text:
        return None
    if text in CATEGORY_ALIASES:
        return CATEGORY_ALIASES[text]
    return text.replace(" ", "-")


def default_keywords(category: Optional[str]) -> List[str]:
    slug = normalize_category(category)
    if slug is None:
        return []
    return list(KEYWORD_POOLS.get(slug, []))
