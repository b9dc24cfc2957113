"""
Market category filter.

Decides whether a market may be mirrored from its category metadata against
allow / deny lists. Categories are collected from many metadata fields and
normalized to slug tokens; when a market carries no category at all, its title
is matched against sports patterns.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple


CATEGORY_FIELDS: Tuple[str, ...] = (
    "category",
    "categories",
    "category_slug",
    "categorySlug",
    "categoryName",
    "marketCategory",
    "market_category",
    "group",
    "groupName",
    "tags",
    "tag",
    "market_tags",
    "marketTags",
)

TITLE_FIELDS: Tuple[str, ...] = ("question", "title", "name", "slug")

NESTED_KEYS: Tuple[str, ...] = ("name", "label", "slug", "category", "tag", "value")

SPORTS_KEYWORDS = frozenset({
    "soccer", "football", "basketball", "baseball", "hockey", "tennis", "golf",
    "cricket", "rugby", "boxing", "mma", "ufc", "nascar", "formula-1", "f1",
    "olympics", "world-cup", "premier-league", "champions-league", "la-liga",
    "serie-a", "bundesliga", "ligue-1", "nba", "nfl", "mlb", "nhl", "mls",
    "wimbledon",
})

SPORTS_TITLE_PATTERNS: List[Tuple[str, "re.Pattern[str]"]] = [
    ("versus", re.compile(r"\bvs\.?(?!\w)|\bv\.(?!\w)")),
    ("over-under", re.compile(r"\bover/under\b|\bo/u\b")),
    ("both-teams-score", re.compile(r"\bboth teams to score\b")),
    ("moneyline", re.compile(r"\bmoneyline\b")),
    ("spread", re.compile(r"\bpoint spread\b|\bspread\b")),
    ("win-on", re.compile(r"\bwin on\b")),
    ("club-fc", re.compile(r"\bfc\b|\bclub\b")),
    (
        "league-keywords",
        re.compile(
            r"\b(nfl|nba|mlb|nhl|mls|ufc|f1|formula 1|premier league|champions league|la liga|"
            r"serie a|bundesliga|ligue 1|world cup|olympics|wimbledon|cricket|rugby|soccer|"
            r"football|basketball|baseball|hockey|tennis|golf|mma|boxing|nascar)\b"
        ),
    ),
]

_SPLIT_RE = re.compile(r"[/,|]")


@dataclass
class CategoryDecision:
    """Whether a market passes the category filter, and why not."""
    allowed: bool
    reason_code: Optional[str] = None
    reason: Optional[str] = None
    match_source: Optional[str] = None
    matched: Optional[str] = None
    categories: List[str] = field(default_factory=list)
    title: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in self.__dict__.items() if v not in (None, [])}


def normalize_category_token(value: str) -> str:
    """Slug a category name: "Sports & Games" -> "sports-and-games"."""
    token = str(value).lower().strip().replace("&", " and ")
    token = re.sub(r"[^a-z0-9]+", "-", token)
    return token.strip("-")


def extract_market_title(market: Optional[Dict[str, Any]]) -> Optional[str]:
    if not market:
        return None
    for name in TITLE_FIELDS:
        value = market.get(name)
        if value:
            return str(value)
    return None


def _collect_strings(value: Any, out: List[str]):
    if value is None or isinstance(value, bool):
        return
    if isinstance(value, (str, int, float)):
        raw = str(value)
        parts = [p.strip() for p in _SPLIT_RE.split(raw) if p.strip()]
        out.extend(parts if len(parts) > 1 else [raw])
    elif isinstance(value, (list, tuple)):
        for entry in value:
            _collect_strings(entry, out)
    elif isinstance(value, dict):
        for key in NESTED_KEYS:
            if value.get(key):
                _collect_strings(value[key], out)


def extract_market_categories(market: Optional[Dict[str, Any]]) -> List[str]:
    """Distinct normalized category tokens, in discovery order."""
    if not market:
        return []
    raw: List[str] = []
    for name in CATEGORY_FIELDS:
        _collect_strings(market.get(name), raw)
    tokens = []
    for item in raw:
        token = normalize_category_token(item)
        if token and token not in tokens:
            tokens.append(token)
    return tokens


def match_sports_title(title: str) -> Optional[str]:
    """Label of the first sports pattern the title matches."""
    lowered = title.lower()
    for label, pattern in SPORTS_TITLE_PATTERNS:
        if pattern.search(lowered):
            return label
    return None


def _token_set(values: Iterable[str]) -> Set[str]:
    return {t for t in (normalize_category_token(v) for v in values) if t}


def _find_disallowed(categories: List[str], disallowed: Set[str]) -> Optional[str]:
    for category in categories:
        if category in disallowed:
            return category
        if "sports" in disallowed and ("sport" in category or category in SPORTS_KEYWORDS):
            return category
    return None


def evaluate_market_category(
    market: Optional[Dict[str, Any]],
    allowed_categories: Iterable[str] = (),
    disallowed_categories: Iterable[str] = ("sports",),
) -> CategoryDecision:
    """
    Apply the category allow / deny lists to a market.

    A deny match wins over the allowlist. Without any category metadata the
    title fallback only runs when sports are denied.
    """
    if not market:
        return CategoryDecision(allowed=True)

    categories = extract_market_categories(market)
    title = extract_market_title(market)
    allowed = _token_set(allowed_categories)
    disallowed = _token_set(disallowed_categories)

    if categories:
        matched = _find_disallowed(categories, disallowed)
        if matched:
            return CategoryDecision(
                allowed=False,
                reason_code="category-disallowed",
                reason=f"market category '{matched}' is disallowed",
                match_source="category",
                matched=matched,
                categories=categories,
                title=title,
            )
        if allowed and not any(c in allowed for c in categories):
            return CategoryDecision(
                allowed=False,
                reason_code="category-not-allowed",
                reason="market category not in allowlist",
                match_source="category",
                categories=categories,
                title=title,
            )
        return CategoryDecision(allowed=True, categories=categories, title=title)

    if title and "sports" in disallowed:
        label = match_sports_title(title)
        if label:
            return CategoryDecision(
                allowed=False,
                reason_code="category-disallowed",
                reason="sports title match",
                match_source="title",
                matched=label,
                title=title,
            )

    return CategoryDecision(allowed=True, title=title)
