"""Boundaries to the outside world: analyzers and scrapers.

The real analyzer is an LLM call and the real scrapers talk to app stores;
both live outside this package. Anything with the right method works, and
the CLI loads them by import path (``package.module:Name``).
"""

import importlib
import json
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

from .errors import AnalysisError


class Analyzer(Protocol):
    def analyze(self, app_name: str, items: List[Dict[str, Any]]) -> Dict[str, Any]:
        """Return ``{"themes": [...]}``. Raise with a descriptive message on failure."""


class Scraper(Protocol):
    def scrape(self, query: str, limits: Dict[str, Any]) -> List[Dict[str, Any]]:
        ...


def load_object(path: str) -> Any:
    """Resolve ``module:attr``; classes are instantiated with no arguments."""
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ValueError(f"expected 'module:attr', got {path!r}")
    obj = getattr(importlib.import_module(module_name), attr)
    return obj() if isinstance(obj, type) else obj


def validate_result(result: Any) -> Dict[str, Any]:
    if not isinstance(result, dict) or not isinstance(result.get("themes"), list):
        raise AnalysisError(f"invalid data: analyzer returned {type(result).__name__} without a themes list")
    return result


# theme -> trigger words
LEXICON = {
    "performance": ("slow", "lag", "freeze", "loading", "battery"),
    "reliability": ("crash", "bug", "error", "broken", "glitch"),
    "pricing": ("price", "subscription", "expensive", "cost", "refund"),
    "usability": ("easy", "confusing", "interface", "intuitive", "navigate"),
    "support": ("support", "customer service", "response", "help"),
    "features": ("feature", "wish", "missing", "add", "update"),
}


class KeywordAnalyzer:
    """Offline stand-in for the LLM: buckets reviews by trigger words."""

    def __init__(self, lexicon: Optional[Dict[str, tuple]] = None, max_quotes: int = 3):
        self.lexicon = lexicon or LEXICON
        self.max_quotes = max_quotes

    def analyze(self, app_name: str, items: List[Dict[str, Any]]) -> Dict[str, Any]:
        if not items:
            raise AnalysisError("invalid data: empty batch")
        themes = []
        for title, words in self.lexicon.items():
            hits = [i for i in items if any(w in (i.get("text") or "").lower() for w in words)]
            if not hits:
                continue
            themes.append({
                "title": title,
                "description": f"{len(hits)} of {len(items)} reviews of {app_name} mention {title}",
                "mentions": len(hits),
                "quotes": [h["text"][:280] for h in hits[: self.max_quotes]],
            })
        themes.sort(key=lambda t: t["mentions"], reverse=True)
        return {"themes": themes}


class JsonFileScraper:
    """Reads a JSON array of review dicts; `limits["max_items"]` caps the count."""

    def __init__(self, path: str, source: Optional[str] = None):
        self.path = Path(path)
        self.source = source

    def scrape(self, query: str, limits: Dict[str, Any]) -> List[Dict[str, Any]]:
        data = json.loads(self.path.read_text(encoding="utf-8"))
        if not isinstance(data, list):
            raise ValueError(f"{self.path} must contain a JSON array")
        if self.source:
            data = [dict(d, source=d.get("source") or d.get("platform") or self.source) for d in data]
        cap = limits.get("max_items")
        return data[:cap] if cap else data
