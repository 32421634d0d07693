"""Prompt content loader with language fallback.

Renderable template text is packaged next to this module, one directory per
language, two files per template:

    prompts/<lang>/<template_id>.system.txt
    prompts/<lang>/<template_id>.user.txt

Content is loaded independently from the template definition in the registry.
Files are read once per (template, language) and kept in an LRU cache; a
missing language falls back to English and the fallback is logged.

Usage:
    from survey_insights.prompts.loader import load_content

    content = load_content("hierarchical_clustering_v2", "pl")
    content.system, content.user
"""
from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

import structlog

from survey_insights.error_handling import TemplateNotFoundError


_logger = structlog.get_logger()
PROMPTS_DIR = Path(__file__).parent
FALLBACK_LANGUAGE = "en"


@dataclass(frozen=True)
class TemplateContent:
    template_id: str
    language: str
    system: str
    user: str


def _read_pair(template_id: str, language: str) -> TemplateContent | None:
    lang_dir = PROMPTS_DIR / language
    system_file = lang_dir / f"{template_id}.system.txt"
    user_file = lang_dir / f"{template_id}.user.txt"
    if not (system_file.exists() and user_file.exists()):
        return None
    return TemplateContent(
        template_id=template_id,
        language=language,
        system=system_file.read_text(encoding="utf-8").strip(),
        user=user_file.read_text(encoding="utf-8"),
    )


@lru_cache(maxsize=64)
def load_content(template_id: str, language: str) -> TemplateContent:
    """Load system/user text for a template in the given language.

    Raises:
        TemplateNotFoundError: if neither the language nor the fallback has content
    """
    content = _read_pair(template_id, language)
    if content is not None:
        return content

    if language != FALLBACK_LANGUAGE:
        content = _read_pair(template_id, FALLBACK_LANGUAGE)
        if content is not None:
            _logger.warning(
                "prompt.fallback",
                template_id=template_id,
                requested_language=language,
                fallback_to=FALLBACK_LANGUAGE,
            )
            return content

    raise TemplateNotFoundError(
        f"Template content not found for: {template_id}",
        {"template_id": template_id, "language": language},
    )


def clear_content_cache() -> None:
    """Clear the LRU cache for content loading (useful for testing)."""
    load_content.cache_clear()
