"""Turn raw candidates from any fetcher into CanonicalItems.

Everything here is a pure function of its inputs (plus the ``now`` stamp),
so normalizing the same candidate twice yields the same item.
"""

import math
import re
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import structlog

from dealintake.ingestion.base import CanonicalItem, RawCandidate, SourceType

logger = structlog.get_logger(__name__)


MIN_TITLE_LENGTH = 12
MAX_TITLE_LENGTH = 140

TRACKING_PARAMS = frozenset({"gclid", "fbclid", "igshid", "mc_eid"})
TRACKING_PREFIXES = ("utm_",)

_URL_RE = re.compile(r"https?://\S+", re.IGNORECASE)
_URL_TRAILING = ")]}>.,;:!?'\""

_NUMBER = r"\d+(?:[.,]\d{3})*(?:[.,]\d{1,2})?"
_PRICE_RE = re.compile(
    r"(?:[$€£]|\busd\b:?)\s*(?P<pre>" + _NUMBER + r")"
    r"|(?<![\w.,])(?P<post>" + _NUMBER + r")\s?(?:[$€£]|usd\b)",
    re.IGNORECASE,
)

_TAG_RE = re.compile(r"(?<!\w)[#@][\w-]+")
_SYMBOL_RE = re.compile(
    "["
    "\U0001F000-\U0001FAFF"  # emoji, pictographs
    "\u2190-\u21FF"  # arrows
    "\u2300-\u23FF"  # technical
    "\u25A0-\u27BF"  # shapes, dingbats
    "\u2B00-\u2BFF"
    "\uFE0F\u200D"  # variation selector, zero-width joiner
    "]+"
)
_WHITESPACE_RE = re.compile(r"\s+")
_TITLE_TRAILING = "-–—•,:;.|/ \t"
_TITLE_LEADING = "-–—•,:;|/ \t"


# ---------------------------------------------------------------------------
# URL helpers
# ---------------------------------------------------------------------------

def extract_url(text: Optional[str]) -> Optional[str]:
    """First absolute http(s) URL in ``text``, trailing punctuation removed."""
    if not text:
        return None
    match = _URL_RE.search(text)
    if not match:
        return None
    url = match.group(0).rstrip(_URL_TRAILING)
    return url if urlsplit(url).netloc else None


def _is_tracking_param(name: str) -> bool:
    lowered = name.lower()
    return lowered in TRACKING_PARAMS or lowered.startswith(TRACKING_PREFIXES)


def canonicalize_url(url: Optional[str]) -> Optional[str]:
    """Canonical form used for storage and duplicate comparison.

    Drops block-listed tracking parameters and the fragment, then lower-cases
    the whole URL. Returns None for anything that is not an absolute http(s)
    URL.
    """
    if not url or not isinstance(url, str):
        return None
    try:
        parts = urlsplit(url.strip())
    except ValueError:
        return None
    if parts.scheme.lower() not in ("http", "https") or not parts.netloc:
        return None

    query = [
        (k, v)
        for k, v in parse_qsl(parts.query, keep_blank_values=True)
        if not _is_tracking_param(k)
    ]
    canonical = urlunsplit(
        (parts.scheme, parts.netloc, parts.path, urlencode(query), "")
    )
    return canonical.lower()


def merchant_from_url(url: Optional[str]) -> Optional[str]:
    """Registrable domain approximated as the last two host labels."""
    if not url:
        return None
    try:
        host = (urlsplit(url).hostname or "").lower().rstrip(".")
    except ValueError:
        return None
    labels = [label for label in host.split(".") if label]
    if not labels:
        return None
    return ".".join(labels[-2:])


# ---------------------------------------------------------------------------
# Price helpers
# ---------------------------------------------------------------------------

def _parse_number(raw: str) -> Optional[Decimal]:
    """Parse ``1,234.56`` / ``12,34`` / ``19.99`` style numbers.

    A single point followed by three digits (``19.999``) is neither a price
    nor unambiguous grouping, so it is rejected.
    """
    last_sep = max(raw.rfind(","), raw.rfind("."))
    if raw.count(".") == 1 and raw[last_sep] == "." and len(raw) - last_sep - 1 >= 3:
        return None
    if last_sep != -1 and len(raw) - last_sep - 1 in (1, 2):
        whole, frac = raw[:last_sep], raw[last_sep + 1:]
    else:
        whole, frac = raw, ""
    whole = whole.replace(",", "").replace(".", "")
    try:
        return Decimal(f"{whole}.{frac}" if frac else whole)
    except InvalidOperation:
        return None


def extract_price(text: Optional[str]) -> Tuple[Optional[Decimal], Optional[str]]:
    """First currency-anchored price in ``text``.

    Accepts ``$12.34`` and ``12.34$`` orderings (also EUR/GBP symbols and the
    ``USD`` token) and comma decimal separators.

    Returns:
        (price, matched substring), or (None, None) when nothing matches
    """
    if not text:
        return None, None
    match = _PRICE_RE.search(text)
    if not match:
        return None, None
    price = coerce_price(_parse_number(match.group("pre") or match.group("post")))
    if price is None:
        return None, None
    return price, match.group(0)


def coerce_price(value: Any) -> Optional[Decimal]:
    """Structured price value as a non-negative finite Decimal, else None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip()
        if not value:
            return None
        extracted, _ = extract_price(value)
        if extracted is not None:
            return extracted
        value = value.replace(",", ".") if value.count(",") == 1 and "." not in value else value
    if isinstance(value, float) and not math.isfinite(value):
        return None
    try:
        price = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not price.is_finite() or price < 0:
        return None
    return price.quantize(Decimal("0.01"))


# ---------------------------------------------------------------------------
# Title helpers
# ---------------------------------------------------------------------------

def clean_title(
    text: Optional[str],
    *,
    price_text: Optional[str] = None,
    max_length: int = MAX_TITLE_LENGTH,
) -> str:
    """Strip URLs, the matched price, tags and decorative symbols from text.

    The result has collapsed whitespace, is at most ``max_length`` characters
    and has no trailing punctuation or dashes.
    """
    if not text:
        return ""
    cleaned = _URL_RE.sub(" ", text)
    if price_text:
        cleaned = cleaned.replace(price_text, " ", 1)
    cleaned = _TAG_RE.sub(" ", cleaned)
    cleaned = _SYMBOL_RE.sub(" ", cleaned)
    cleaned = _WHITESPACE_RE.sub(" ", cleaned).strip()
    cleaned = cleaned.lstrip(_TITLE_LEADING)
    cleaned = cleaned[:max_length]
    return cleaned.rstrip(_TITLE_TRAILING)


def _choose_title(title: str, merchant: Optional[str], min_length: int) -> str:
    if len(title) < min_length and merchant:
        return merchant
    return title


# ---------------------------------------------------------------------------
# Dispatch
# ---------------------------------------------------------------------------

def _text_fields(payload: Mapping[str, Any]) -> Tuple[Optional[str], Optional[str]]:
    """URL and title for free-text candidates (inbound messages, scraped text)."""
    text = payload.get("text") or ""
    url = payload.get("url") or extract_url(text)
    return url, text


def normalize(
    candidate: RawCandidate,
    source_key: Optional[str] = None,
    *,
    content_kind: str = "deal",
    now: Optional[datetime] = None,
    min_title_length: int = MIN_TITLE_LENGTH,
    max_title_length: int = MAX_TITLE_LENGTH,
) -> Optional[CanonicalItem]:
    """Normalize one raw candidate.

    Args:
        candidate: Record produced by a fetcher
        source_key: Registry key to stamp (defaults to the candidate's)
        content_kind: 'deal' or 'coupon'
        now: Creation timestamp (defaults to current UTC time)
        min_title_length: Titles shorter than this fall back to the merchant
        max_title_length: Titles are truncated to this length

    Returns:
        CanonicalItem, or None when no URL or title can be derived
    """
    payload = candidate.payload
    source_key = source_key or candidate.source_key
    submitter_note = None

    if candidate.kind in (SourceType.FEED, SourceType.API):
        raw_url = payload.get("link") or payload.get("url")
        raw_title = str(payload.get("title") or "")
        price = coerce_price(payload.get("price"))
        price_text = None
        if price is None:
            price, price_text = extract_price(_URL_RE.sub(" ", raw_title))
    elif candidate.kind in (SourceType.SCRAPER, SourceType.INBOUND):
        raw_url, raw_title = _text_fields(payload)
        text_without_urls = _URL_RE.sub(" ", raw_title)
        price = coerce_price(payload.get("price_text"))
        price_text = None
        if price is None:
            price, price_text = extract_price(text_without_urls)
        if candidate.kind == SourceType.INBOUND:
            channel = payload.get("channel")
            submitter_note = f"telegram:{channel}" if channel else None
    else:
        logger.warning("unknown_candidate_kind", kind=str(candidate.kind), source_key=source_key)
        return None

    url = canonicalize_url(raw_url)
    if url is None:
        logger.debug("candidate_dropped", reason="no_url", source_key=source_key)
        return None

    merchant = str(payload.get("merchant") or "").strip() or merchant_from_url(url)
    title = clean_title(raw_title, price_text=price_text, max_length=max_title_length)
    title = _choose_title(title, merchant, min_title_length)
    if not title:
        logger.debug("candidate_dropped", reason="no_title", source_key=source_key, url=url)
        return None

    image_url = str(payload.get("image_url") or "") or None
    if image_url and not image_url.lower().startswith(("http://", "https://")):
        image_url = None

    return CanonicalItem(
        title=title,
        url=url,
        source_key=source_key,
        created_at=now or datetime.now(timezone.utc),
        price=price,
        merchant=merchant,
        image_url=image_url,
        submitter_note=submitter_note,
        kind=content_kind,
    )
