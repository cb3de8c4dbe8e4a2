"""Keyword tables for workflow stages and skill areas."""

from __future__ import annotations

import re

WORKFLOW_STAGES = ("research", "design", "plan", "build", "test", "deploy", "launch")

WORKFLOW_KEYWORDS: dict[str, tuple[str, ...]] = {
    "research": ("research", "analysis", "analyze", "investigate", "discovery", "interview", "survey"),
    "design": ("design", "mockup", "wireframe", "prototype", "ux", "ui"),
    "plan": ("plan", "roadmap", "spec", "backlog", "groom", "architecture", "scope"),
    "build": ("build", "implement", "develop", "code", "create", "engineer", "integrate", "write"),
    "test": ("test", "qa", "validate", "verify", "quality", "bug", "regression"),
    "deploy": ("deploy", "release", "ship", "rollout", "publish", "handoff", "handover"),
    "launch": ("launch", "go live", "golive", "announce", "marketing push"),
}

SKILL_KEYWORDS: dict[str, tuple[str, ...]] = {
    "design": ("design", "ux", "ui", "prototype", "wireframe", "figma"),
    "frontend": ("frontend", "react", "typescript", "javascript", "ui component", "css"),
    "backend": ("backend", "api", "database", "server", "postgres", "endpoint"),
    "data": ("analytics", "data", "metrics", "sql", "dashboard"),
    "marketing": ("launch", "campaign", "marketing", "go-to-market", "growth", "seo"),
    "qa": ("test", "qa", "quality", "bugs", "regression", "verify"),
    "devops": ("deploy", "pipeline", "infrastructure", "devops", "ci", "cd", "kubernetes"),
    "research": ("research", "interview", "discovery", "analysis"),
    "product": ("plan", "strategy", "roadmap", "prioritize"),
}

STOPWORDS = frozenset(
    {
        "a", "an", "and", "are", "as", "at", "be", "by", "for", "from", "in", "into", "is", "it",
        "of", "on", "or", "our", "that", "the", "this", "to", "up", "with", "we", "all", "new",
    }
)

_WORD = re.compile(r"[a-z0-9][a-z0-9\-]*")


def _contains(text: str, keyword: str) -> bool:
    return re.search(rf"\b{re.escape(keyword)}", text) is not None


def workflow_stage(text: str) -> str | None:
    lowered = text.lower()
    for stage in WORKFLOW_STAGES:
        if any(_contains(lowered, keyword) for keyword in WORKFLOW_KEYWORDS[stage]):
            return stage
    return None


def stage_index(text: str) -> int | None:
    stage = workflow_stage(text)
    return None if stage is None else WORKFLOW_STAGES.index(stage)


def skill_tags(text: str) -> set[str]:
    lowered = text.lower()
    return {
        skill
        for skill, keywords in SKILL_KEYWORDS.items()
        if any(_contains(lowered, keyword) for keyword in keywords)
    }


def content_words(text: str) -> set[str]:
    """Lowercase words minus stopwords and stage verbs."""
    stage_words = {keyword for keywords in WORKFLOW_KEYWORDS.values() for keyword in keywords}
    return {
        word
        for word in _WORD.findall(text.lower())
        if len(word) > 2 and word not in STOPWORDS and word not in stage_words
    }
