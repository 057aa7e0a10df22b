"""Category taxonomy and keyword classification (core domain)."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Iterable, List, Mapping, Optional

from core.errors import ConfigurationError
from core.models import UNCATEGORIZED

LOGGER = logging.getLogger(__name__)

CATEGORIES: tuple[str, ...] = (
    "air-quality",
    "art",
    "bicycles",
    "construction-and-repairs",
    "culture",
    "electricity",
    "health",
    "heating",
    "parking",
    "public-transport",
    "road-block",
    "sports",
    "traffic",
    "vehicles",
    "waste",
    "water",
    "weather",
)

# Keywords are matched as lower-cased substrings, so Bulgarian stems cover
# their inflected forms ("водоснабдяване", "водоподаване", ...).
DEFAULT_KEYWORDS: dict[str, list[str]] = {
    "air-quality": ["air quality", "замърсяване на въздуха", "качество на въздуха", "фини прахови", "смог"],
    "art": ["exhibition", "изложба", "галерия", "изкуство"],
    "bicycles": ["bicycle", "bike lane", "велосипед", "велоалея"],
    "construction-and-repairs": [
        "construction",
        "repair",
        "ремонт",
        "строителн",
        "реконструкция",
        "асфалтиране",
        "изкопни",
    ],
    "culture": ["concert", "festival", "концерт", "фестивал", "култур", "театър"],
    "electricity": ["power outage", "electricity", "електрозахранване", "електроенерг", "ток", "без ток"],
    "health": ["hospital", "vaccination", "болница", "здравн", "ваксин"],
    "heating": ["heating", "hot water", "топлоподаване", "отопление", "топлофикация", "топла вода"],
    "parking": ["parking", "паркиране", "паркинг", "синя зона", "зелена зона"],
    "public-transport": ["bus", "tram", "metro", "автобус", "трамвай", "тролейбус", "метро", "градски транспорт"],
    "road-block": ["road closed", "closure", "затваряне", "затворен", "блокиран", "спира движението"],
    "sports": ["marathon", "tournament", "маратон", "спорт", "турнир"],
    "traffic": ["traffic", "detour", "движението", "трафик", "обходен маршрут", "организация на движението"],
    "vehicles": ["towing", "abandoned vehicle", "репатриране", "излезли от употреба", "автомобил"],
    "waste": ["garbage", "waste", "отпадъци", "сметосъбиране", "боклук"],
    "water": ["water supply", "water outage", "водоснабдяване", "водоподаване", "спиране на водата", "аварии вик", "вик"],
    "weather": ["storm", "snow", "weather warning", "буря", "снеговалеж", "метеорологично", "предупреждение за времето"],
}

DEFAULT_REGEX: dict[str, list[str]] = {
    "water": [r"\bв\s*и\s*к\b"],
    "weather": [r"\b(жълт|оранжев|червен)\w*\s+код\b"],
}


@dataclass(frozen=True)
class CategoryRule:
    """Compiled keyword/regex rule for one category."""

    category: str
    keywords: List[str]
    regex_patterns: List[re.Pattern]


@dataclass(frozen=True)
class Classification:
    """Result of classifying one message."""

    categories: List[str]
    is_uncategorized: bool


def build_category_rules(overrides: Optional[Mapping[str, dict]] = None) -> List[CategoryRule]:
    """Compile the default rules, extended by configured keywords/regex.

    ``overrides`` maps a category to ``{"keywords": [...], "regex": [...]}``.
    Unknown category names are a configuration error rather than a silent
    no-op.
    """

    overrides = overrides or {}
    unknown = sorted(set(overrides) - set(CATEGORIES))
    if unknown:
        raise ConfigurationError(f"Unknown categories in config: {', '.join(unknown)}")

    compiled: List[CategoryRule] = []
    for category in CATEGORIES:
        extra = overrides.get(category, {})
        keywords = [k.lower() for k in DEFAULT_KEYWORDS.get(category, []) + list(extra.get("keywords", []))]
        raw_regex = DEFAULT_REGEX.get(category, []) + list(extra.get("regex", []) or [])
        compiled.append(
            CategoryRule(
                category=category,
                keywords=keywords,
                regex_patterns=[re.compile(pattern, re.IGNORECASE) for pattern in raw_regex],
            )
        )
    return compiled


DEFAULT_RULES: List[CategoryRule] = build_category_rules()


def normalize_category_hints(hints: Iterable[str]) -> List[str]:
    """Lower-case source hints and keep only known categories."""

    normalized: List[str] = []
    for hint in hints:
        if not isinstance(hint, str):
            continue
        value = hint.strip().lower()
        if value == UNCATEGORIZED or not value:
            continue
        if value not in CATEGORIES:
            LOGGER.warning("Ignoring unknown category hint %r", hint)
            continue
        if value not in normalized:
            normalized.append(value)
    return normalized


def _keyword_hit(keyword: str, lowered: str) -> bool:
    # Very short keywords ("ток", "bus") only count as whole words.
    if len(keyword) <= 4:
        return re.search(rf"(?<!\w){re.escape(keyword)}(?!\w)", lowered) is not None
    return keyword in lowered


def classify(
    text: str,
    hints: Iterable[str] = (),
    rules: Iterable[CategoryRule] = DEFAULT_RULES,
) -> Classification:
    """Classify message text into the fixed taxonomy.

    Matching logic:
    - Source hints that name a known category are always kept.
    - A rule matches if any keyword OR any regex matches the text.
    - The result is ordered like the taxonomy.
    - No match at all yields the ``uncategorized`` sentinel, never an empty list.
    """

    lowered = (text or "").lower()
    found = set(normalize_category_hints(hints))

    for rule in rules:
        if rule.category in found:
            continue
        if any(_keyword_hit(k, lowered) for k in rule.keywords):
            found.add(rule.category)
            continue
        if any(pattern.search(text or "") for pattern in rule.regex_patterns):
            found.add(rule.category)

    categories = [category for category in CATEGORIES if category in found]
    if not categories:
        return Classification(categories=[UNCATEGORIZED], is_uncategorized=True)
    return Classification(categories=categories, is_uncategorized=False)
