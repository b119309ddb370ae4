from __future__ import annotations

import re
from typing import Dict, Iterable, List, Tuple

from bs4 import BeautifulSoup, Tag

from .knowledge import proven_selectors
from .models import PageElement, PageStructure, normalize_site

SEMANTIC_TAGS = ("main", "article", "section", "header", "nav", "aside", "footer")
INTERACTIVE_SELECTOR = "button, a, input, select, textarea, [onclick], [role=button]"

_CONTENT_SIGNALS: Tuple[Tuple[str, Tuple[str, ...], Tuple[str, ...]], ...] = (
    ("news", ("news", "bbc", "cnn", "reuters"), ("headline", "byline", "breaking")),
    ("ecommerce", ("amazon", "shop", "store", "ebay"), ("add to cart", "price", "checkout", "buy now")),
    ("social", ("twitter", "facebook", "instagram", "reddit"), ("tweet", "followers", "retweet")),
    ("search", ("search", "google", "duckduckgo", "bing"), ("search results", "results for")),
    ("reference", ("wikipedia", "wiki"), ("encyclopedia", "references", "citation needed")),
)


def _soup(html: str) -> BeautifulSoup:
    return BeautifulSoup(html or "", "html.parser")


def _text(node: Tag, limit: int = 100) -> str:
    return " ".join(node.get_text(" ", strip=True).split())[:limit]


def infer_content_type(html: str, url: str = "") -> str:
    url_lower = url.lower()
    html_lower = (html or "").lower()
    for content_type, url_terms, html_terms in _CONTENT_SIGNALS:
        if any(term in url_lower for term in url_terms):
            return content_type
    for content_type, _, html_terms in _CONTENT_SIGNALS:
        if any(term in html_lower for term in html_terms):
            return content_type
    if "<article" in html_lower:
        return "news"
    return "generic"


def infer_page_structure(html: str, url: str = "") -> PageStructure:
    soup = _soup(html)
    title_tag = soup.find("title")
    headings = tuple(_text(h, 200) for h in soup.find_all(re.compile(r"^h[1-6]$")) if _text(h))
    return PageStructure(
        title=_text(title_tag, 200) if title_tag else "Unknown",
        headings=headings,
        links=len(soup.select("a[href]")),
        forms=len(soup.find_all("form")),
        images=len(soup.find_all("img")),
        content_type=infer_content_type(html, url),
    )


def semantic_structure(html: str) -> Tuple[str, List[str]]:
    """Describe landmark elements; returns (summary text, content areas)."""
    soup = _soup(html)
    lines = ["HTML Structure:"]
    areas: List[str] = []
    for tag in SEMANTIC_TAGS:
        count = len(soup.find_all(tag))
        if count:
            lines.append(f"- {count} {tag} element(s)")
            areas.append(tag)
    headings = [_text(h, 80) for h in soup.find_all(re.compile(r"^h[1-6]$"))]
    headings = [h for h in headings if h]
    if headings:
        lines.append(f"- {len(headings)} heading(s): {', '.join(headings[:3])}")
    return "\n".join(lines), areas


def html_hints(html: str) -> str:
    soup = _soup(html)
    hints: List[str] = []
    data_attrs: List[str] = []
    for node in soup.find_all(True):
        data_attrs.extend(f'{k}="{v}"' for k, v in node.attrs.items() if k.startswith("data-"))
        if len(data_attrs) >= 3:
            break
    if data_attrs:
        hints.append(f"Data attributes found: {', '.join(data_attrs[:3])}")

    relevant = []
    for node in soup.find_all(class_=True):
        classes = " ".join(node.get("class", []))
        if any(word in classes.lower() for word in ("title", "content", "text", "article", "price")):
            relevant.append(f'class="{classes}"')
    if relevant:
        hints.append(f"Relevant classes: {', '.join(list(dict.fromkeys(relevant))[:3])}")

    if soup.find(attrs={"itemtype": True}) or "schema.org" in (html or ""):
        hints.append("Schema.org markup detected - use itemtype/itemprop attributes")
    return "\n".join(hints)


def css_selector(node: Tag) -> str:
    """Short selector for an element: id, then name, then class, then position."""
    if node.get("id"):
        return f"#{node['id']}"
    if node.get("name"):
        return f'{node.name}[name="{node["name"]}"]'
    classes = [c for c in node.get("class", []) if re.match(r"^[A-Za-z_][\w-]*$", c)]
    if classes:
        return f"{node.name}.{'.'.join(classes[:2])}"
    parent = node.parent
    if parent is None or parent.name == "[document]":
        return node.name
    index = [sib for sib in parent.find_all(node.name, recursive=False)].index(node) + 1
    return f"{node.name}:nth-of-type({index})"


def interactive_elements(html: str, limit: int = 20) -> List[PageElement]:
    soup = _soup(html)
    elements: List[PageElement] = []
    for node in soup.select(INTERACTIVE_SELECTOR)[:limit]:
        attrs = {k: (" ".join(v) if isinstance(v, list) else str(v)) for k, v in node.attrs.items()
                 if k in ("id", "class", "type", "href", "role", "name", "placeholder")}
        elements.append(PageElement(tag=node.name, text=_text(node), selector=css_selector(node), attributes=attrs))
    return elements


def suggest_selectors(html: str, targets: Iterable[str], url: str = "", content_type: str = "generic") -> Dict[str, List[str]]:
    """Knowledge-base selectors that match a non-empty element in this markup."""
    soup = _soup(html)
    domain = normalize_site(url)
    suggestions: Dict[str, List[str]] = {}
    for target in targets:
        matched = []
        for selector in proven_selectors(target, domain, content_type):
            try:
                node = soup.select_one(selector)
            except Exception:  # noqa: BLE001
                continue
            if node is not None and _text(node):
                matched.append(selector)
        if matched:
            suggestions[target] = matched
    return suggestions
