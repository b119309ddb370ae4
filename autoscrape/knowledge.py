"""Static knowledge base of selector patterns proven on real sites.

Used as few-shot guidance when asking the oracle to repair a failed
selector, by the rule-based oracle, and by value validation (each
extraction pattern carries a validator and a cleaner)."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple


@dataclass(frozen=True)
class SelectorTier:
    selectors: Tuple[str, ...]
    priority: int
    description: str


@dataclass(frozen=True)
class ExtractionPattern:
    name: str
    selectors: Tuple[str, ...]
    validator: Callable[[str], bool]
    cleaner: Optional[Callable[[str], str]] = None


@dataclass(frozen=True)
class SitePattern:
    domain: str
    content_type: str
    selectors: Dict[str, Tuple[str, ...]]


PRODUCT_TIERS: Tuple[SelectorTier, ...] = (
    SelectorTier((".product-tile", ".grid-tile", '[data-test="product-tile"]'), 1, "Primary product tiles"),
    SelectorTier((".product-item", ".product-card", ".fr-product-tile"), 2, "Secondary product containers"),
    SelectorTier(('[class*="ProductTile"]', '[class*="product"]', '[class*="Product"]'), 3, "Class-pattern product containers"),
    SelectorTier(("article", 'li[class*="product"]', 'div[class*="tile"]'), 4, "Semantic fallbacks"),
    SelectorTier(('a[href*="/products/"]',), 5, "Product link fallback"),
)

_PRICE_RE = re.compile(r"[$€£¥]\s?\d[\d,]*(?:\.\d{2})?|\d[\d,]*(?:\.\d{2})?\s?(?:USD|EUR|GBP)")
_DATE_RE = re.compile(
    r"\b\d{4}-\d{2}-\d{2}\b|\b\d{1,2}/\d{1,2}/\d{2,4}\b|"
    r"\b(?:jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec)[a-z]*\.? \d{1,2},? \d{4}\b|"
    r"\b\d{1,2} (?:jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec)[a-z]* \d{4}\b",
    re.IGNORECASE,
)
_WS_RE = re.compile(r"\s+")


def _collapse(text: str) -> str:
    return _WS_RE.sub(" ", text).strip()


def _clean_product_name(text: str) -> str:
    text = re.sub(r"^(WOMEN|MEN|KIDS),?\s*[^A-Z]*", "", text)
    text = re.sub(r"\d+\.\d+\(\d+\).*$", "", text)
    text = re.sub(r"\$[\d,]+(\.\d{2})?.*$", "", text)
    return _collapse(text)


def _clean_price(text: str) -> str:
    match = _PRICE_RE.search(text)
    return match.group(0).strip() if match else _collapse(text)


def _clean_date(text: str) -> str:
    match = _DATE_RE.search(text)
    return match.group(0) if match else _collapse(text)


EXTRACTION_PATTERNS: Dict[str, ExtractionPattern] = {
    "product_name": ExtractionPattern(
        "Product Name",
        (".product-title", ".product-name", ".tile-title", "h1", "h2", "h3", '[data-test="product-name"]', 'a[href*="/products/"]'),
        lambda t: 2 < len(t) < 200,
        _clean_product_name,
    ),
    "price": ExtractionPattern(
        "Price",
        (".price", ".product-price", ".tile-price", '[data-test="price"]', '[itemprop="price"]', '[class*="price"]', '[class*="Price"]'),
        lambda t: bool(_PRICE_RE.search(t)) or bool(re.search(r"\d+(\.\d{2})", t)),
        _clean_price,
    ),
    "title": ExtractionPattern(
        "Article Title",
        ("h1", ".headline", ".title", ".article-title", ".entry-title", '[class*="headline"]', '[class*="title"]', "title"),
        lambda t: 3 < len(t) < 300,
        _collapse,
    ),
    "content": ExtractionPattern(
        "Article Content",
        (".article-content", ".entry-content", ".post-content", "article p", ".content p", '[class*="content"] p', "main p"),
        lambda t: 20 < len(t) < 5000,
        _collapse,
    ),
    "date": ExtractionPattern(
        "Date",
        ("time", "[datetime]", ".date", ".published", '[itemprop="datePublished"]', '[class*="date"]'),
        lambda t: bool(_DATE_RE.search(t)),
        _clean_date,
    ),
    "link": ExtractionPattern(
        "Link",
        ("a[href]",),
        lambda t: len(t) > 0,
        _collapse,
    ),
}

SITE_PATTERNS: Tuple[SitePattern, ...] = (
    SitePattern("uniqlo.com", "ecommerce", {"product": (".fr-product-tile", ".product-tile")}),
    SitePattern("terrabellaflowers.com", "ecommerce", {"product": ("select option", ".product-variant")}),
    SitePattern("news.ycombinator.com", "news", {"title": (".titleline > a", ".storylink")}),
    SitePattern("wikipedia.org", "reference", {"title": ("#firstHeading", "h1"), "summary": ("#mw-content-text p",)}),
)

# Target name aliases -> extraction pattern key.
_TARGET_PATTERN = {
    "title": "title",
    "headline": "title",
    "heading": "title",
    "name": "product_name",
    "product": "product_name",
    "product_name": "product_name",
    "price": "price",
    "cost": "price",
    "summary": "content",
    "description": "content",
    "content": "content",
    "article": "content",
    "date": "date",
    "published": "date",
    "link": "link",
    "url": "link",
}

FEW_SHOT_EXAMPLES: Dict[str, str] = {
    "ecommerce": """Example successful product extraction:
- HTML: <div class="product-tile"><a href="/products/shirt">Blue Cotton Shirt</a><span class="price">$29.99</span></div>
- Target: "product name"
- Selector: ".product-tile a"
- Extracted: "Blue Cotton Shirt"
- Confidence: 0.9

Example failed extraction:
- HTML: <div class="nav-item"><a href="/about">About Us</a></div>
- Target: "product name"
- Selector: ".nav-item a"
- Extracted: "About Us"
- Confidence: 0.1 (navigation link, not a product)""",
    "news": """Example successful news extraction:
- HTML: <h1 class="headline">Breaking: New Technology Breakthrough</h1>
- Target: "article title"
- Selector: "h1.headline"
- Extracted: "Breaking: New Technology Breakthrough"
- Confidence: 0.95

Example failed extraction:
- HTML: <h1 class="site-title">Website Name</h1>
- Target: "article title"
- Selector: "h1.site-title"
- Extracted: "Website Name"
- Confidence: 0.2 (site name, not the article title)""",
    "reference": """Example successful reference extraction:
- HTML: <h1 id="firstHeading">Alan Turing</h1><div id="mw-content-text"><p>Alan Mathison Turing was ...</p></div>
- Target: "summary"
- Selector: "#mw-content-text p"
- Extracted: "Alan Mathison Turing was ..."
- Confidence: 0.9""",
}


def pattern_for_target(target: str) -> Optional[ExtractionPattern]:
    key = _TARGET_PATTERN.get(target.lower())
    if key is None:
        for alias, pattern_key in _TARGET_PATTERN.items():
            if alias in target.lower():
                key = pattern_key
                break
    return EXTRACTION_PATTERNS.get(key) if key else None


def site_pattern(domain: str) -> Optional[SitePattern]:
    for pattern in SITE_PATTERNS:
        if domain == pattern.domain or domain.endswith("." + pattern.domain):
            return pattern
    return None


def proven_selectors(target: str, domain: str = "", content_type: str = "generic") -> List[str]:
    """Selectors worth trying for a target, most specific first, de-duplicated."""
    selectors: List[str] = []
    site = site_pattern(domain) if domain else None
    if site:
        for key, values in site.selectors.items():
            if key in target.lower() or target.lower() in key:
                selectors.extend(values)
    pattern = pattern_for_target(target)
    if pattern:
        selectors.extend(pattern.selectors)
    if content_type == "ecommerce" and ("product" in target.lower() or "price" in target.lower()):
        for tier in PRODUCT_TIERS:
            selectors.extend(tier.selectors)
    return list(dict.fromkeys(selectors))


def few_shot_examples(content_type: str) -> str:
    return FEW_SHOT_EXAMPLES.get(content_type, FEW_SHOT_EXAMPLES["ecommerce"])
