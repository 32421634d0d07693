"""
Template rendering with a shared result cache.

`TemplateRenderer.render()` turns a template id plus run-time inputs into a
(system, user) prompt pair:

    - {{name}}                      → value (missing or None renders empty)
    - {{#if flag}}...{{/if}}        → body kept iff flag is truthy
    - {{#each items}}...{{/each}}   → body per item, {{this}} / {{@index}} bound,
                                      items joined by newline

Rendering is a pure function of its inputs, so results are cached under a
hash of the canonical JSON of (template id, context, variables, options).
A cache hit never touches the content loader.
"""

from __future__ import annotations

import hashlib
import json
import math
import re
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import structlog

from survey_insights.error_handling import TemplateNotFoundError
from survey_insights.prompts.loader import TemplateContent, load_content
from survey_insights.prompts.registry import TemplateRegistry

_logger = structlog.get_logger()

_EACH_RE = re.compile(r"\{\{#each\s+(\w+)\}\}(.*?)\{\{/each\}\}", re.DOTALL)
_IF_RE = re.compile(r"\{\{#if\s+(\w+)\}\}(.*?)\{\{/if\}\}", re.DOTALL)
_VAR_RE = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")

ContentLoader = Callable[[str, str], TemplateContent]


@dataclass(frozen=True)
class RenderedPrompt:
    template_id: str
    template_version: str
    language: str
    system: str
    user: str

    @property
    def token_estimate(self) -> int:
        return estimate_tokens(self.system) + estimate_tokens(self.user)


def estimate_tokens(text: str) -> int:
    """Rough token count: one token per four characters."""
    return math.ceil(len(text) / 4)


class RenderCache:
    """Process-wide key/value store for rendered prompts."""

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: Dict[str, RenderedPrompt] = {}
        self.hits = 0
        self.misses = 0

    @staticmethod
    def make_key(
        template_id: str,
        context: Dict[str, Any],
        variables: Dict[str, Any],
        options: Dict[str, Any],
    ) -> str:
        canonical = json.dumps(
            {
                "template_id": template_id,
                "context": context,
                "variables": variables,
                "options": options,
            },
            sort_keys=True,
            ensure_ascii=False,
            separators=(",", ":"),
            default=str,
        )
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def get(self, key: str) -> Optional[RenderedPrompt]:
        with self._lock:
            value = self._entries.get(key)
            if value is None:
                self.misses += 1
            else:
                self.hits += 1
            return value

    def set(self, key: str, value: RenderedPrompt) -> None:
        with self._lock:
            self._entries[key] = value

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self.hits = 0
            self.misses = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {"size": len(self._entries), "hits": self.hits, "misses": self.misses}


def render_text(text: str, values: Dict[str, Any]) -> str:
    """Expand loops, then conditionals, then placeholders."""

    def _each(match: re.Match) -> str:
        items = values.get(match.group(1))
        if not isinstance(items, (list, tuple)):
            return ""
        body = match.group(2)
        return "\n".join(
            body.replace("{{this}}", str(item)).replace("{{@index}}", str(index))
            for index, item in enumerate(items)
        )

    def _if(match: re.Match) -> str:
        return match.group(2) if values.get(match.group(1)) else ""

    def _var(match: re.Match) -> str:
        value = values.get(match.group(1))
        return "" if value is None else str(value)

    result = _EACH_RE.sub(_each, text)
    result = _IF_RE.sub(_if, result)
    # Single pass: substituted values are never re-scanned for placeholders.
    return _VAR_RE.sub(_var, result)


class TemplateRenderer:
    """Renders registry templates, consulting the injected cache first."""

    def __init__(
        self,
        registry: TemplateRegistry,
        cache: Optional[RenderCache] = None,
        loader: ContentLoader = load_content,
    ):
        self.registry = registry
        self.cache = cache if cache is not None else RenderCache()
        self._loader = loader

    def render(
        self,
        template_id: str,
        context: Dict[str, Any],
        variables: Optional[Dict[str, Any]] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> RenderedPrompt:
        template = self.registry.get(template_id)
        if template is None:
            raise TemplateNotFoundError(
                f"Template not found: {template_id}", {"template_id": template_id}
            )

        variables = variables or {}
        options = options or {}
        key = self.cache.make_key(template_id, context, variables, options)
        cached = self.cache.get(key)
        if cached is not None:
            _logger.debug("template.render.cache_hit", template_id=template_id)
            return cached

        language = context.get("language") or "en"
        content = self._loader(template_id, language)

        values: Dict[str, Any] = {}
        values.update(context)
        values.update(variables)
        values.update(options.get("custom_variables") or {})

        rendered = RenderedPrompt(
            template_id=template_id,
            template_version=template.version,
            language=content.language,
            system=render_text(content.system, values),
            user=render_text(content.user, values),
        )
        self.cache.set(key, rendered)
        _logger.debug(
            "template.render.cache_miss",
            template_id=template_id,
            language=language,
            token_estimate=rendered.token_estimate,
        )
        return rendered
