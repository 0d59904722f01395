"""
retention.analytics.lexicon - Language-keyed lookup tables.

Keyword lexicons and retention-suggestion templates are data, loaded from
``retention/data/*.json``.  Lookups for a language the table does not
carry fall back to English.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from functools import lru_cache
from importlib import resources
from typing import Dict, List, Mapping, Tuple

FALLBACK_LANGUAGE = "en"


@dataclass(frozen=True)
class Lexicon:
    positive: Tuple[str, ...]
    negative: Tuple[str, ...]


class LanguageTable:
    """Immutable mapping of language code -> entry, with English fallback."""

    def __init__(self, entries: Mapping[str, object]) -> None:
        if FALLBACK_LANGUAGE not in entries:
            raise ValueError(f"language table must define {FALLBACK_LANGUAGE!r}")
        self._entries = dict(entries)

    def get(self, language: str):
        key = (language or FALLBACK_LANGUAGE).strip().lower()
        return self._entries.get(key, self._entries[FALLBACK_LANGUAGE])

    def languages(self) -> List[str]:
        return sorted(self._entries)


def _read_json(name: str) -> dict:
    raw = resources.files("retention.data").joinpath(name).read_text(encoding="utf-8")
    return json.loads(raw)


def build_lexicon_table(data: Mapping[str, Mapping[str, List[str]]]) -> LanguageTable:
    entries: Dict[str, Lexicon] = {}
    for lang, words in data.items():
        entries[lang.lower()] = Lexicon(
            positive=tuple(w.lower() for w in words.get("positive", [])),
            negative=tuple(w.lower() for w in words.get("negative", [])),
        )
    return LanguageTable(entries)


def build_suggestion_table(data: Mapping[str, Mapping[str, List[str]]]) -> LanguageTable:
    return LanguageTable({
        lang.lower(): {cat: tuple(items) for cat, items in cats.items()}
        for lang, cats in data.items()
    })


@lru_cache(maxsize=1)
def default_lexicons() -> LanguageTable:
    return build_lexicon_table(_read_json("lexicons.json"))


@lru_cache(maxsize=1)
def default_suggestions() -> LanguageTable:
    return build_suggestion_table(_read_json("suggestions.json"))
