"""
CardSync — Upstream Normalizer

Maps heterogeneous upstream shapes onto one internal record per entity:

- resolve_envelope(): locate the array of interest in a JSON payload
  (bare list, `data` / `results` / `items` / entity aliases, `data.<key>`),
  returning a tagged Found | NotFound instead of guessing.
- HeaderResolver: exact vs. fuzzy (substring) column resolution for catalog rows.
- Row normalizers for catalog categories/groups/products and pricing-API
  games, sets and cards.
- Coercion helpers that never throw: to_bool, to_int, to_decimal.
- parse_card_number(): ordered pattern rules over free-text product names.
"""

from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, Mapping, NamedTuple, Protocol, Sequence

import structlog
from pydantic import BaseModel, Field, field_validator

from cardsync.errors import ShapeError

logger = structlog.get_logger(__name__)

WRAPPER_KEYS: tuple[str, ...] = ("data", "results", "items")
META_KEYS: tuple[str, ...] = ("meta", "_metadata", "pagination")

_META_FIELDS: dict[str, tuple[str, ...]] = {
    "has_more": ("hasMore", "has_more"),
    "total": ("total", "totalCount", "total_count"),
    "limit": ("limit",),
    "offset": ("offset",),
}


# ---------------------------------------------------------------------------
# Coercion
# ---------------------------------------------------------------------------

_TRUE_VALUES = frozenset({"true", "1", "yes", "y"})
_FALSE_VALUES = frozenset({"false", "0", "no", "n"})


def to_bool(value: Any) -> bool | None:
    """Explicit allow-lists only. Anything unrecognised is None."""
    if isinstance(value, bool):
        return value
    if value is None:
        return None
    text = str(value).strip().lower()
    if text in _TRUE_VALUES:
        return True
    if text in _FALSE_VALUES:
        return False
    return None


def to_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def to_decimal(value: Any) -> Decimal | None:
    """Safely convert price values to Decimal. Never use float for money."""
    if value is None or value == "" or value == "N/A" or isinstance(value, bool):
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def _first(*values: Any) -> Any:
    for value in values:
        if value is not None and value != "":
            return value
    return None


# ---------------------------------------------------------------------------
# Envelope Resolution
# ---------------------------------------------------------------------------


class PageMeta(BaseModel):
    """Pagination metadata; every field optional because upstreams omit freely."""

    has_more: bool | None = None
    total: int | None = None
    limit: int | None = None
    offset: int | None = None


class Found(NamedTuple):
    items: list[Any]
    meta: PageMeta
    key: str | None   # Where the array was found: 'data', 'data.groups', None for bare


class NotFound(NamedTuple):
    reason: str


def extract_meta(payload: Any) -> PageMeta:
    """
    Merge pagination metadata from every known location.

    Order: top-level meta, _metadata, pagination, top-level fields,
    then the same containers nested under `data`. First non-None wins per field.
    """
    if not isinstance(payload, Mapping):
        return PageMeta()

    sources: list[Mapping[str, Any]] = [
        payload[key] for key in META_KEYS if isinstance(payload.get(key), Mapping)
    ]
    sources.append(payload)
    nested = payload.get("data")
    if isinstance(nested, Mapping):
        sources.extend(nested[key] for key in META_KEYS if isinstance(nested.get(key), Mapping))

    values: dict[str, Any] = {}
    for field, aliases in _META_FIELDS.items():
        for source in sources:
            raw = _first(*(source.get(alias) for alias in aliases))
            if raw is None:
                continue
            coerced = to_bool(raw) if field == "has_more" else to_int(raw)
            if coerced is not None:
                values[field] = coerced
                break
    return PageMeta(**values)


def resolve_envelope(payload: Any, aliases: Sequence[str] = ()) -> Found | NotFound:
    """
    Find the array of interest inside an upstream payload.

    Resolution order (first hit wins):
      1. payload is a list
      2. top-level key in (data, results, items, *aliases) holding a list
         (a key present with null means an empty result)
      3. data.<key> for the same keys
      4. a wrapper key holding a single object -> one-element result
      5. a bare object without wrapper keys -> one-element result
    """
    if isinstance(payload, list):
        return Found(payload, PageMeta(), None)
    if not isinstance(payload, Mapping):
        return NotFound(f"unsupported payload type: {type(payload).__name__}")

    keys = (*WRAPPER_KEYS, *aliases)
    meta = extract_meta(payload)

    for key in keys:
        if key not in payload:
            continue
        value = payload[key]
        if isinstance(value, list):
            return Found(value, meta, key)
        if value is None:
            return Found([], meta, key)

    nested = payload.get("data")
    if isinstance(nested, Mapping):
        for key in keys:
            value = nested.get(key)
            if isinstance(value, list):
                return Found(value, meta, f"data.{key}")

    for key in keys:
        if isinstance(payload.get(key), Mapping):
            return Found([payload[key]], meta, key)

    present = [key for key in keys if key in payload]
    if present:
        return NotFound(f"wrapper key {present[0]!r} holds no array or object")
    if payload and set(payload) <= set(META_KEYS):
        return Found([], meta, None)
    return Found([payload], meta, None)


def require_items(payload: Any, aliases: Sequence[str] = (), context: str = "") -> Found:
    """resolve_envelope() for callers where page structure is mandatory."""
    result = resolve_envelope(payload, aliases)
    if isinstance(result, NotFound):
        logger.error("normalizer_shape_unrecognized", context=context, reason=result.reason)
        where = f" for {context}" if context else ""
        raise ShapeError(f"Unrecognized payload shape{where}: {result.reason}")
    return result


# ---------------------------------------------------------------------------
# Header Resolution
# ---------------------------------------------------------------------------


def compact(name: str) -> str:
    """Lower-case and strip everything that is not a letter or digit."""
    return re.sub(r"[^a-z0-9]", "", name.lower())


class HeaderResolver(Protocol):
    def resolve(self, headers: Sequence[str], candidates: Sequence[str]) -> str | None: ...


class ExactHeaderResolver:
    """Matches a header whose compacted form equals a compacted candidate."""

    def resolve(self, headers: Sequence[str], candidates: Sequence[str]) -> str | None:
        index: dict[str, str] = {}
        for header in headers:
            index.setdefault(compact(header), header)
        for candidate in candidates:
            hit = index.get(compact(candidate))
            if hit is not None:
                return hit
        return None


class FuzzyHeaderResolver:
    """
    Matches the first header containing a candidate as a substring.

    Candidates are tried in order; for each candidate headers are scanned in
    their original order.
    """

    def resolve(self, headers: Sequence[str], candidates: Sequence[str]) -> str | None:
        compacted = [(compact(h), h) for h in headers]
        for candidate in candidates:
            needle = compact(candidate)
            if not needle:
                continue
            for hay, header in compacted:
                if needle in hay:
                    return header
        return None


class ColumnSpec(NamedTuple):
    candidates: tuple[str, ...]
    fuzzy: bool = True


def resolve_columns(
    headers: Sequence[str],
    specs: Mapping[str, ColumnSpec],
    resolver: HeaderResolver,
) -> dict[str, str | None]:
    """Resolve each logical field to an actual header; exact-only specs ignore `resolver`."""
    exact = ExactHeaderResolver()
    return {
        field: (resolver if spec.fuzzy else exact).resolve(headers, spec.candidates)
        for field, spec in specs.items()
    }


GROUP_COLUMNS: dict[str, ColumnSpec] = {
    "group_id": ColumnSpec(("groupid", "group_id", "id")),
    "name": ColumnSpec(("groupname", "name")),
    "abbreviation": ColumnSpec(("abbreviation", "abbr")),
    "release_date": ColumnSpec(("releasedate", "release_date", "publishedon")),
    "sealed_product": ColumnSpec(("sealedproduct", "sealed")),
    "is_supplemental": ColumnSpec(("issupplemental", "supplemental")),
    "slug": ColumnSpec(("slug",)),
}

# id/name/url/image columns collide under substring matching ("url" in "imageurl"),
# so they resolve exactly.
PRODUCT_COLUMNS: dict[str, ColumnSpec] = {
    "product_id": ColumnSpec(("productid", "id"), fuzzy=False),
    "name": ColumnSpec(("name", "productname", "cleanname"), fuzzy=False),
    "clean_name": ColumnSpec(("cleanname",), fuzzy=False),
    "group_id": ColumnSpec(("groupid",), fuzzy=False),
    "url": ColumnSpec(("url", "producturl"), fuzzy=False),
    "image_url": ColumnSpec(("imageurl", "image"), fuzzy=False),
    "number": ColumnSpec(("number", "cardnumber")),
    "rarity": ColumnSpec(("rarity",)),
    "product_type": ColumnSpec(("producttype", "extcardtype", "type")),
}


# ---------------------------------------------------------------------------
# Text Helpers
# ---------------------------------------------------------------------------

_CARD_NUMBER_RULES: tuple[re.Pattern[str], ...] = (
    re.compile(r"\b(\d{1,4}/\d{1,4})\b"),           # collector fraction 25/102
    re.compile(r"\b([A-Z]{2,4}[-_]?\d{1,4})\b"),     # letter-prefixed SWSH001, SV-045
    re.compile(r"#(\d{1,4})\b"),                     # hash-prefixed #12
    re.compile(r"\b(\d{1,4}[A-Z]?)\s*$"),            # bare trailing 123a
)


def parse_card_number(text: str | None) -> str | None:
    """First matching rule wins; None when nothing looks like a card number."""
    if not text:
        return None
    for pattern in _CARD_NUMBER_RULES:
        match = pattern.search(text)
        if match:
            return match.group(1).replace("_", "-")
    return None


def select_best_image_url(url: str | None) -> str | None:
    """Prefer the 400w rendition over the 200w thumbnail."""
    if not url:
        return None
    return url.replace("200w", "400w")


def slugify(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")


GAME_SLUG_ALIASES: dict[str, str] = {
    "pokemon-tcg": "pokemon",
    "pokemon-english": "pokemon",
    "pokemon-us": "pokemon",
    "pokemon-jp": "pokemon-japan",
    "pokemon-japanese": "pokemon-japan",
    "magic": "mtg",
    "magic-the-gathering": "mtg",
    "mtg-english": "mtg",
    "one-piece": "one-piece-card-game",
    "one-piece-tcg": "one-piece-card-game",
    "lorcana": "disney-lorcana",
    "disney-lorcana-tcg": "disney-lorcana",
    "star-wars": "star-wars-unlimited",
    "swu": "star-wars-unlimited",
}


def normalize_game_slug(value: str) -> str:
    """Map the pricing API's historical game names to its current slugs."""
    slug = value.strip().lower()
    return GAME_SLUG_ALIASES.get(slug, slug)


# ---------------------------------------------------------------------------
# Catalog Rows
# ---------------------------------------------------------------------------


class CatalogGroupRecord(BaseModel):
    group_id: int
    category_id: int
    game_id: str
    name: str
    abbreviation: str | None = None
    slug: str | None = None
    release_date: str | None = None
    is_supplemental: bool | None = None
    sealed_product: bool | None = None
    data: dict[str, Any] = Field(default_factory=dict)


class CatalogProductRecord(BaseModel):
    product_id: int
    group_id: int
    category_id: int
    game_id: str
    name: str
    clean_name: str | None = None
    number: str | None = None
    rarity: str | None = None
    product_type: str | None = None
    url: str | None = None
    image_url: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)


class NormalizedBatch(NamedTuple):
    records: list[Any]
    skipped: int


def _text(row: Mapping[str, Any], header: str | None) -> str | None:
    if header is None:
        return None
    value = row.get(header)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _flatten_extended(row: Mapping[str, Any]) -> dict[str, Any]:
    """Lift JSON `extendedData: [{name, value}]` into top-level ext* columns like the CSV export."""
    flat = {k: v for k, v in row.items() if k != "extendedData"}
    for entry in row.get("extendedData") or []:
        if isinstance(entry, Mapping) and entry.get("name"):
            flat.setdefault(f"ext{entry['name']}", entry.get("value"))
    return flat


def normalize_group_row(
    row: Mapping[str, Any],
    *,
    category_id: int,
    game_id: str,
    resolver: HeaderResolver | None = None,
) -> CatalogGroupRecord | None:
    """Returns None (skipped) when no group id or name column resolves to a value."""
    cols = resolve_columns(list(row), GROUP_COLUMNS, resolver or FuzzyHeaderResolver())
    group_id = to_int(_text(row, cols["group_id"]))
    name = _text(row, cols["name"])
    if group_id is None or not name:
        return None

    return CatalogGroupRecord(
        group_id=group_id,
        category_id=category_id,
        game_id=game_id,
        name=name,
        abbreviation=_text(row, cols["abbreviation"]),
        slug=_text(row, cols["slug"]) or slugify(name),
        release_date=_text(row, cols["release_date"]),
        is_supplemental=to_bool(_text(row, cols["is_supplemental"])),
        sealed_product=to_bool(_text(row, cols["sealed_product"])),
        data=dict(row),
    )


def normalize_product_row(
    row: Mapping[str, Any],
    *,
    category_id: int,
    game_id: str,
    group_id: int | None = None,
    resolver: HeaderResolver | None = None,
) -> CatalogProductRecord | None:
    """Returns None (skipped) when product id, name or group cannot be determined."""
    flat = _flatten_extended(row)
    cols = resolve_columns(list(flat), PRODUCT_COLUMNS, resolver or FuzzyHeaderResolver())

    product_id = to_int(_text(flat, cols["product_id"]))
    name = _text(flat, cols["name"])
    resolved_group = to_int(_text(flat, cols["group_id"]))
    if resolved_group is None:
        resolved_group = group_id
    if product_id is None or not name or resolved_group is None:
        return None

    used = {header for header in cols.values() if header is not None}
    extended = {k: v for k, v in flat.items() if k not in used}

    return CatalogProductRecord(
        product_id=product_id,
        group_id=resolved_group,
        category_id=category_id,
        game_id=game_id,
        name=name,
        clean_name=_text(flat, cols["clean_name"]),
        number=_text(flat, cols["number"]) or parse_card_number(name),
        rarity=_text(flat, cols["rarity"]),
        product_type=_text(flat, cols["product_type"]),
        url=_text(flat, cols["url"]),
        image_url=select_best_image_url(_text(flat, cols["image_url"])),
        data=extended,
    )


def normalize_rows(rows: Iterable[Mapping[str, Any]], normalize: Any, **kwargs: Any) -> NormalizedBatch:
    """Apply a row normalizer, counting rows it rejects as skipped."""
    records = []
    skipped = 0
    for row in rows:
        record = normalize(row, **kwargs)
        if record is None:
            skipped += 1
        else:
            records.append(record)
    if skipped:
        logger.info("normalizer_rows_skipped", skipped=skipped, kept=len(records))
    return NormalizedBatch(records, skipped)


class CatalogCategoryRecord(BaseModel):
    category_id: int
    name: str
    display_name: str | None = None
    slug: str | None = None
    category_group_id: int | None = None
    modified_on: str | None = None


def normalize_category_row(row: Mapping[str, Any]) -> CatalogCategoryRecord | None:
    """Returns None (skipped) without a category id or any usable name."""
    category_id = to_int(_first(row.get("categoryId"), row.get("category_id"), row.get("id")))
    name = _first(row.get("name"), row.get("displayName"), row.get("seoCategoryName"))
    if category_id is None or name is None or not str(name).strip():
        return None
    name = str(name).strip()
    display_name = _first(row.get("displayName"), row.get("display_name"))
    modified_on = _first(row.get("modifiedOn"), row.get("modified_on"))
    return CatalogCategoryRecord(
        category_id=category_id,
        name=name,
        display_name=str(display_name).strip() if display_name is not None else None,
        slug=slugify(name),
        category_group_id=to_int(_first(row.get("categoryGroupId"), row.get("category_group_id"))),
        modified_on=str(modified_on) if modified_on is not None else None,
    )


# ---------------------------------------------------------------------------
# Pricing API Games and Sets
# ---------------------------------------------------------------------------


class GameRecord(BaseModel):
    id: str
    name: str
    sets_count: int | None = None
    cards_count: int | None = None


class SetRecord(BaseModel):
    external_id: str
    name: str
    code: str | None = None
    release_date: str | None = None
    total_cards: int | None = None


def normalize_game_record(raw: Mapping[str, Any]) -> GameRecord | None:
    """/games item -> GameRecord; None without an id/slug."""
    ident = _first(raw.get("id"), raw.get("game_id"), raw.get("slug"))
    if ident is None or not str(ident).strip():
        return None
    slug = normalize_game_slug(str(ident))
    name = _first(raw.get("name"), raw.get("display_name"))
    return GameRecord(
        id=slug,
        name=str(name).strip() if name is not None else slug,
        sets_count=to_int(_first(raw.get("sets_count"), raw.get("setsCount"))),
        cards_count=to_int(_first(raw.get("cards_count"), raw.get("cardsCount"))),
    )


def normalize_set_record(raw: Mapping[str, Any]) -> SetRecord | None:
    """/sets item -> SetRecord; None without an id."""
    ident = _first(raw.get("id"), raw.get("set_id"))
    if ident is None or not str(ident).strip():
        return None
    external_id = str(ident).strip()
    name = _first(raw.get("name"), raw.get("set_name"))
    code = _first(raw.get("code"), raw.get("abbreviation"))
    release_date = _first(raw.get("release_date"), raw.get("releaseDate"))
    return SetRecord(
        external_id=external_id,
        name=str(name).strip() if name is not None else external_id,
        code=str(code).strip() if code is not None else None,
        release_date=str(release_date) if release_date is not None else None,
        total_cards=to_int(
            _first(raw.get("total_cards"), raw.get("cards_count"), raw.get("totalCards"))
        ),
    )


# ---------------------------------------------------------------------------
# Pricing API Cards
# ---------------------------------------------------------------------------


class PriceVariant(BaseModel):
    """One printing x condition price observation."""

    printing: str = Field(default="Normal", description="Printing label")
    condition: str = Field(default="Near Mint", description="Condition label")
    currency: str = Field(default="USD")
    market_price: Decimal | None = None
    low_price: Decimal | None = None
    high_price: Decimal | None = None
    variant_id: str | None = None
    last_updated: Any = None

    @field_validator("market_price", "low_price", "high_price", mode="before")
    @classmethod
    def parse_decimal(cls, v: Any) -> Decimal | None:
        return to_decimal(v)

    @field_validator("printing", "condition", "currency", "variant_id", mode="before")
    @classmethod
    def coerce_text(cls, v: Any) -> Any:
        return str(v) if v is not None and not isinstance(v, str) else v


class HarvestCard(BaseModel):
    """Pricing-API card in internal shape."""

    id: str | None = Field(default=None, description="Pricing API card ID")
    name: str = ""
    game: str | None = None
    set: str | None = None
    set_name: str | None = None
    number: str | None = None
    rarity: str | None = None
    image_url: str | None = None
    tcgplayer_id: str | None = None
    variants: list[PriceVariant] = Field(default_factory=list)
    attributes: dict[str, Any] = Field(default_factory=dict)

    @field_validator("name", mode="before")
    @classmethod
    def coerce_name(cls, v: Any) -> str:
        return "" if v is None else str(v)

    @field_validator("game", "set", "set_name", "number", "rarity", mode="before")
    @classmethod
    def coerce_optional_text(cls, v: Any) -> str | None:
        return None if v is None or v == "" else str(v)


_CARD_KEYS = frozenset({
    "id", "card_id", "cardId", "name", "game", "set", "set_name", "setName", "number",
    "rarity", "image_url", "imageUrl", "tcgplayerId", "tcgplayer_id", "variants",
})


def _price_variant(source: Mapping[str, Any], printing: str, variant_id: Any = None) -> PriceVariant:
    return PriceVariant(
        printing=printing,
        condition=source.get("condition") or "Near Mint",
        currency=source.get("currency") or "USD",
        market_price=_first(source.get("market_price"), source.get("marketPrice"), source.get("price")),
        low_price=_first(source.get("low_price"), source.get("lowPrice")),
        high_price=_first(source.get("high_price"), source.get("highPrice")),
        variant_id=_first(source.get("id"), source.get("variantId"), variant_id),
        last_updated=source.get("lastUpdated"),
    )


def flatten_variants(raw_variants: Any) -> list[PriceVariant]:
    """
    Accepts flat `variants[]` (one entry per printing x condition) and nested
    `variants[].conditions[]`; both produce one PriceVariant per observation.
    """
    flattened: list[PriceVariant] = []
    for variant in raw_variants or []:
        if not isinstance(variant, Mapping):
            continue
        printing = variant.get("printing") or variant.get("variant") or "Normal"
        conditions = variant.get("conditions")
        if isinstance(conditions, list):
            for condition in conditions:
                if isinstance(condition, Mapping):
                    flattened.append(
                        _price_variant(condition, printing, variant_id=variant.get("id"))
                    )
        else:
            flattened.append(_price_variant(variant, printing))
    return flattened


def normalize_pricing_card(raw: Mapping[str, Any]) -> HarvestCard:
    card_id = _first(raw.get("id"), raw.get("card_id"), raw.get("cardId"))
    tcgplayer_id = _first(raw.get("tcgplayerId"), raw.get("tcgplayer_id"))
    return HarvestCard(
        id=str(card_id) if card_id is not None else None,
        name=raw.get("name") or "",
        game=raw.get("game"),
        set=raw.get("set"),
        set_name=_first(raw.get("set_name"), raw.get("setName")),
        number=raw.get("number"),
        rarity=raw.get("rarity"),
        image_url=_first(raw.get("image_url"), raw.get("imageUrl")),
        tcgplayer_id=str(tcgplayer_id) if tcgplayer_id is not None else None,
        variants=flatten_variants(raw.get("variants")),
        attributes={k: v for k, v in raw.items() if k not in _CARD_KEYS},
    )
