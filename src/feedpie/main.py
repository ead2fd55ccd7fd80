from __future__ import annotations

import datetime
import html as _html_mod
import logging
import math
import re
from types import MappingProxyType
from typing import Any, Iterator, Literal, Mapping, Optional
from urllib.parse import urljoin

from .dates import process_date
from .tree import TEXT_KEY, normalize_source, parse_xml_to_tree

logger = logging.getLogger(__name__)

_Dialect = Literal["atom", "rss", "rdf", "backslash"]

NS: Mapping[str, str] = MappingProxyType(
    {
        "WFW": "http://wellformedweb.org/CommentAPI/",
        "DC": "http://purl.org/dc/elements/1.1/",
        "CONTENT": "http://purl.org/rss/1.0/modules/content/",
        "ATOM10": "http://www.w3.org/2005/Atom",
        "GD": "http://schemas.google.com/g/2005",
    }
)

DEFAULT_REL = "alternate"
DEFAULT_TYPE = "text/html"

_NAMESPACE_WALK_DEPTH = 7
_RE_EMAIL_AUTHOR = re.compile(r"^[\w.\-]+@[\w.\-]+ \(([^)]+)\)$")

_NON_FEED_MESSAGES: dict[str, str] = {
    "html": "Received HTML page instead of feed",
    "div": "Received HTML fragment instead of feed",
    "body": "Received HTML fragment instead of feed",
    "status": "Feed server returned status message",
    "error": "Feed server returned error",
    "opml": "Received OPML document instead of feed (OPML is an outline format, not a feed)",
    "urlset": "Received XML sitemap instead of feed (sitemap is for search engines, not a feed)",
    "sitemapindex": "Received XML sitemap instead of feed (sitemap is for search engines, not a feed)",
}


class InvalidFeedError(ValueError):
    """The document has no RSS, Atom, RDF or backslash root element."""


def _walk_for_namespaces(node: Any, namespaces: dict[str, str], depth: int = 0) -> None:
    """Collect ``xmlns:prefix`` declarations as ``uri -> prefix``."""
    if depth > _NAMESPACE_WALK_DEPTH:
        return

    if isinstance(node, list):
        for child in node:
            if isinstance(child, (dict, list)):
                _walk_for_namespaces(child, namespaces, depth + 1)
        return

    for key, value in node.items():
        if isinstance(value, str):
            name = key.strip()
            if name[:6].lower() == "xmlns:":
                namespaces[value] = name[6:]
        elif isinstance(value, (dict, list)):
            _walk_for_namespaces(value, namespaces, depth + 1)


def _detect_dialect(
    document: dict[str, Any],
) -> tuple[_Dialect, dict[str, Any], dict[str, Any], Any]:
    """Return ``(dialect, root, channel, items)`` for a parsed document."""
    for key, element in document.items():
        if not isinstance(element, dict):
            continue

        name = key.strip().lower()
        if name == "feed":
            return "atom", element, element, element.get("entry") or []
        if name == "rss":
            channel = element.get("channel")
            if not isinstance(channel, dict):
                channel = {}
            return "rss", element, channel, channel.get("item") or []
        if name == "rdf" or name.endswith(":rdf"):
            channel = element.get("channel")
            if not isinstance(channel, dict):
                channel = {}
            return "rdf", element, channel, element.get("item") or []
        if name == "backslash":
            return "backslash", element, element, element.get("story") or []

    for key in document:
        local = key.rsplit(":", 1)[-1].strip().lower()
        base_msg = _NON_FEED_MESSAGES.get(local)
        if base_msg:
            raise InvalidFeedError(base_msg)
    raise InvalidFeedError(f"Unknown feed type: {', '.join(document) or 'empty document'}")


def _text_of(value: Any) -> Optional[str]:
    """Text of a tree value: strings as-is, mappings via ``$t``, numbers stringified."""
    if isinstance(value, dict):
        value = value.get(TEXT_KEY)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    if isinstance(value, str):
        return value
    return None


def _first_present(element: dict[str, Any], keys: tuple[Optional[str], ...]) -> Any:
    """First present value among ``keys``; ``None`` keys stand for undeclared namespaces.

    Empty records and strings that are blank once trimmed count as absent.
    """
    for key in keys:
        if key is None:
            continue
        value = element.get(key)
        if isinstance(value, str) and not value.strip():
            continue
        if value:
            return value
    return None


def _link_matches(record: Any, rel: str, type_: str) -> bool:
    if isinstance(record, str):
        return rel == DEFAULT_REL and type_ == DEFAULT_TYPE and bool(record.strip())
    if isinstance(record, dict):
        return rel == record.get("rel") and (
            not record.get("type") or type_ == record.get("type")
        )
    return False


def _link_href(record: Any) -> Optional[str]:
    if isinstance(record, str):
        href = record
    elif isinstance(record, dict):
        href = record.get("href")
    else:
        return None
    if isinstance(href, str) and href.strip():
        return href.strip()
    return None


def _is_untyped_link(record: Any) -> bool:
    return (
        isinstance(record, dict)
        and bool(record.get("href"))
        and not record.get("rel")
        and not record.get("type")
    )


def _select_link(candidates: Any, rel: str, type_: str) -> Optional[str]:
    """Pick the href of the link matching ``rel``/``type_``.

    ``candidates`` is a bare URL string, a single ``{rel, type, href}`` record
    or a list of either. The first match in document order wins. For the
    default alternate/html pair a record carrying only ``href`` counts as an
    implicit alternate link when nothing matches explicitly.
    """
    if not candidates:
        return None

    records = candidates if isinstance(candidates, list) else [candidates]
    for record in records:
        if _link_matches(record, rel, type_):
            href = _link_href(record)
            if href:
                return href

    if rel == DEFAULT_REL and type_ == DEFAULT_TYPE:
        for record in records:
            if _is_untyped_link(record):
                href = _link_href(record)
                if href:
                    return href
    return None


def _as_list(value: Any) -> list[Any]:
    if value is None:
        return []
    return value if isinstance(value, list) else [value]


def _coerce_index(index: Any) -> int:
    try:
        number = float(index)
    except (TypeError, ValueError):
        return 0
    if math.isnan(number) or math.isinf(number):
        return 0
    return int(abs(number))


class Feed:
    """Uniform view over an RSS, Atom, RDF or backslash document.

    Usage::

        feed = Feed(xml_bytes).initialize()
        print(feed.title)
        for item in feed.items():
            print(item.title, item.permalink)
    """

    def __init__(
        self,
        source: str | bytes,
        *,
        encoding: Optional[str] = None,
        keep_html_entities: bool = False,
    ) -> None:
        self.source = source
        self.options_encoding = encoding
        self.keep_html_entities = keep_html_entities

        self._encoding = "UTF-8"
        self._document: Optional[dict[str, Any]] = None
        self._dialect: Optional[_Dialect] = None
        self._root: dict[str, Any] = {}
        self._channel: dict[str, Any] = {}
        self._items_source: Any = []
        self._namespaces: dict[str, str] = {}

        self._items: dict[int, Item] = {}
        self._item_count: Optional[int] = None

    def __repr__(self) -> str:
        return f"<Feed dialect={self._dialect!r} items={self._item_count!r}>"

    # -- setup --------------------------------------------------------------

    def initialize(self) -> Feed:
        """Decode, parse, detect the dialect and resolve namespaces.

        Raises:
            InvalidFeedError: If the document is not a known feed dialect
            ValueError: If the content is empty or not XML
            LookupError: If the source encoding label is unknown
        """
        if self._dialect is not None:
            return self

        text, self._encoding = normalize_source(self.source, self.options_encoding)
        self._document = parse_xml_to_tree(text)
        (
            self._dialect,
            self._root,
            self._channel,
            self._items_source,
        ) = _detect_dialect(self._document)
        _walk_for_namespaces(self._root, self._namespaces)

        logger.debug(
            "Detected %s feed (encoding %s, %d namespaces)",
            self._dialect,
            self._encoding,
            len(self._namespaces),
        )
        return self

    def _require_initialized(self) -> None:
        if self._dialect is None:
            raise RuntimeError("Feed is not initialized; call initialize() first")

    # -- helpers shared with Item -------------------------------------------

    def prefixed(self, namespace: str, local: str) -> Optional[str]:
        """``prefix:local`` for a namespace URI, or None if the document doesn't use it."""
        prefix = self._namespaces.get(namespace)
        return f"{prefix}:{local}" if prefix else None

    def format_str(self, value: str) -> str:
        if self.keep_html_entities:
            return value
        return _html_mod.unescape(value)

    def parse_contents(self, value: Any) -> Optional[str]:
        """Trimmed, entity-decoded text of a tree value, or None when blank."""
        text = _text_of(value)
        if text is None:
            return None
        text = text.strip()
        if not text:
            return None
        return self.format_str(text)

    def parse_author(self, author: str) -> str:
        """``jane@example.com (Jane Doe)`` -> ``Jane Doe``; other strings unchanged."""
        author = author.strip()
        match = _RE_EMAIL_AUTHOR.match(author)
        if match:
            author = match.group(1).strip()
        return self.format_str(author)

    def author_names(self, source: Any) -> Optional[list[str]]:
        """Names from an author string, ``{name}`` record or a list of either.

        A list yields the names it carries, possibly none; a single record
        without a name is absent.
        """
        if source is None:
            return None

        if isinstance(source, str):
            return [self.parse_author(source)]

        if isinstance(source, list):
            names = []
            for entry in source:
                name = entry.get("name") if isinstance(entry, dict) else entry
                if isinstance(name, str) and name.strip():
                    names.append(self.parse_author(name))
            return names

        if isinstance(source, dict):
            for key in ("name", TEXT_KEY):
                name = source.get(key)
                if isinstance(name, str) and name.strip():
                    return [self.parse_author(name)]
        return None

    def link_candidates(self, element: dict[str, Any], *fields: str) -> Any:
        """Atom-qualified links followed by the plain ``fields`` (first present)."""
        plain = _first_present(element, fields)
        atom_link = self.prefixed(NS["ATOM10"], "link")
        if atom_link is None:
            return plain
        return [
            link
            for link in _as_list(element.get(atom_link)) + _as_list(plain)
            if link
        ]

    # -- feed level fields --------------------------------------------------

    @property
    def dialect(self) -> Optional[_Dialect]:
        return self._dialect

    @property
    def namespaces(self) -> Mapping[str, str]:
        return MappingProxyType(self._namespaces)

    @property
    def encoding(self) -> str:
        return self._encoding

    @property
    def title(self) -> Optional[str]:
        self._require_initialized()
        return self.parse_contents(self._channel.get("title"))

    @property
    def description(self) -> Optional[str]:
        self._require_initialized()
        return self.parse_contents(
            _first_present(self._channel, ("description", "subtitle", "tagline"))
        )

    @property
    def permalink(self) -> Optional[str]:
        self._require_initialized()
        link = self._channel.get("link")
        if isinstance(link, str):
            return link.strip() or None
        return self.link()

    def link(self, rel: str = DEFAULT_REL, type: str = DEFAULT_TYPE) -> Optional[str]:
        self._require_initialized()
        return _select_link(
            self.link_candidates(self._channel, "link"),
            rel or DEFAULT_REL,
            type or DEFAULT_TYPE,
        )

    @property
    def hub(self) -> Optional[str]:
        return self.link("hub")

    @property
    def self_link(self) -> Optional[str]:
        return self.link(NS["GD"] + "#feed", "application/atom+xml") or self.link(
            "self", "application/rss+xml"
        )

    @property
    def image(self) -> Optional[str]:
        self._require_initialized()
        channel = self._channel

        image = channel.get("image")
        if isinstance(image, dict) and image.get("url"):
            return self.parse_contents(image["url"])

        gd_image = self.prefixed(NS["GD"], "image")
        author = channel.get("author")
        if gd_image and isinstance(author, dict):
            avatar = author.get(gd_image)
            if isinstance(avatar, dict) and avatar.get("src"):
                return self.parse_contents(avatar["src"])

        return self.parse_contents(_first_present(channel, ("logo", "icon")))

    @property
    def date(self) -> Optional[datetime.datetime]:
        """Channel build/update date, else the earliest item date."""
        self._require_initialized()
        source = _first_present(
            self._channel,
            ("lastBuildDate", "updated", self.prefixed(NS["DC"], "date")),
        )
        date = process_date(source) if source else None
        if date is not None:
            return date

        item_dates = [item.date for item in self.items()]
        known = [d for d in item_dates if d is not None]
        return min(known) if known else None

    @property
    def language(self) -> Optional[str]:
        self._require_initialized()
        return self.parse_contents(self._channel.get("language")) or self.parse_contents(
            self._root.get("xml:lang")
        )

    @property
    def generator(self) -> Optional[str]:
        self._require_initialized()
        return self.parse_contents(self._channel.get("generator"))

    @property
    def author(self) -> Optional[str]:
        self._require_initialized()
        names = self.author_names(
            _first_present(
                self._channel,
                ("managingEditor", "author", self.prefixed(NS["DC"], "creator")),
            )
        )
        return names[0] if names else None

    # -- items --------------------------------------------------------------

    def item_quantity(self, limit: int = 0) -> int:
        self._require_initialized()
        if self._item_count is None:
            if isinstance(self._items_source, list):
                self._item_count = len(self._items_source)
            elif isinstance(self._items_source, dict):
                self._item_count = 1
            else:
                self._item_count = 0

        if limit and 0 < limit < self._item_count:
            return limit
        return self._item_count

    def items(self, start: int = 0, length: Optional[int] = None) -> list[Item]:
        """Items in ``[start, start + length)``, clamped to the feed."""
        quantity = self.item_quantity()
        start = _coerce_index(start)
        length = _coerce_index(length) or quantity

        if start >= quantity:
            start = max(quantity - 1, 0)
        if length > quantity - start:
            length = quantity - start

        result = []
        for i in range(start, start + length):
            item = self.item(i)
            if item is not None:
                result.append(item)
        return result

    def item(self, index: Any) -> Optional[Item]:
        self._require_initialized()
        index = _coerce_index(index)

        cached = self._items.get(index)
        if cached is not None:
            return cached

        element: Any = None
        if isinstance(self._items_source, list):
            if index < len(self._items_source):
                element = self._items_source[index]
        elif isinstance(self._items_source, dict) and index == 0:
            element = self._items_source

        if not isinstance(element, dict):
            if element is None:
                return None
            # a text-only <item> still counts as an item
            element = {TEXT_KEY: element}

        item = Item(element, self, index)
        self._items[index] = item
        return item

    def __len__(self) -> int:
        return self.item_quantity()

    def __iter__(self) -> Iterator[Item]:
        return iter(self.items())


class Item:
    """One RSS item, Atom entry or backslash story of a :class:`Feed`."""

    def __init__(self, element: dict[str, Any], feed: Feed, index: int = 0) -> None:
        self.element = element
        self.feed = feed
        self.index = index

    def __repr__(self) -> str:
        return f"<Item index={self.index} title={self.title!r}>"

    @property
    def id(self) -> Optional[str]:
        element = self.element
        value = _text_of(_first_present(element, ("guid", "id", "rdf:about")))
        if value is None or not value.strip():
            return None
        return value.strip()

    @property
    def title(self) -> Optional[str]:
        return self.feed.parse_contents(self.element.get("title"))

    def link(self, rel: str = DEFAULT_REL, type: str = DEFAULT_TYPE) -> Optional[str]:
        return _select_link(
            self.feed.link_candidates(self.element, "link", "url"),
            rel or DEFAULT_REL,
            type or DEFAULT_TYPE,
        )

    @property
    def permalink(self) -> Optional[str]:
        link = self.link()
        if not link:
            return None
        feed_link = self.feed.permalink
        if feed_link:
            return urljoin(feed_link, link)
        return link

    @property
    def authors(self) -> Optional[list[str]]:
        """Author names; an empty list when the authors carry no names."""
        return self.feed.author_names(
            _first_present(
                self.element,
                ("author", "creator", self.feed.prefixed(NS["DC"], "creator")),
            )
        )

    @property
    def author(self) -> Optional[str]:
        authors = self.authors
        return authors[0] if authors else None

    @property
    def date(self) -> Optional[datetime.datetime]:
        source = _first_present(
            self.element,
            (
                "pubDate",
                "published",
                "created",
                "issued",
                "updated",
                "modified",
                self.feed.prefixed(NS["DC"], "date"),
                "time",
            ),
        )
        return process_date(source) if source else None

    @property
    def update_date(self) -> Optional[datetime.datetime]:
        source = _first_present(self.element, ("updated", "modified"))
        updated = process_date(source) if source else None
        return updated or self.date

    @property
    def description(self) -> Optional[str]:
        """Summary text, falling back to the full content."""
        feed = self.feed
        return feed.parse_contents(
            _first_present(
                self.element,
                (
                    "description",
                    feed.prefixed(NS["ATOM10"], "summary"),
                    "summary",
                    "content",
                    feed.prefixed(NS["CONTENT"], "encoded"),
                ),
            )
        )

    @property
    def contents(self) -> Optional[str]:
        """Full text, falling back to the summary."""
        feed = self.feed
        return feed.parse_contents(
            _first_present(
                self.element,
                (
                    "content",
                    feed.prefixed(NS["CONTENT"], "encoded"),
                    "description",
                    feed.prefixed(NS["ATOM10"], "summary"),
                    "summary",
                ),
            )
        )

    @property
    def categories(self) -> Optional[list[str]]:
        category = _first_present(
            self.element,
            ("category", self.feed.prefixed(NS["DC"], "subject"), "department"),
        )
        categories = []
        for entry in _as_list(category):
            if isinstance(entry, dict):
                entry = entry.get("term") or entry.get(TEXT_KEY)
            value = self.feed.parse_contents(entry)
            if value:
                categories.append(value)
        return categories or None

    @property
    def category(self) -> Optional[str]:
        categories = self.categories
        return categories[0] if categories else None

    @property
    def comments(self) -> Optional[dict[str, Optional[str]]]:
        """``{"html": ..., "feed": ...}`` links to the comment page and comment feed."""
        comments = _text_of(self.element.get("comments"))
        html = comments.strip() if comments and comments.strip() else None
        if html is None:
            html = self.link("replies", "text/html")

        feed = None
        comment_rss = self.feed.prefixed(NS["WFW"], "commentRss")
        if comment_rss:
            text = _text_of(self.element.get(comment_rss))
            feed = text.strip() if text and text.strip() else None
        if feed is None:
            feed = self.link("replies", "application/atom+xml")

        if html or feed:
            return {"html": html, "feed": feed}
        return None

    @property
    def enclosures(self) -> Optional[list[dict[str, Any]]]:
        enclosures: list[dict[str, Any]] = []
        for enclosure in _as_list(self.element.get("enclosure")):
            if not isinstance(enclosure, dict) or not enclosure.get("url"):
                continue
            enc_item: dict[str, Any] = {
                "url": enclosure["url"].strip(),
                "type": enclosure.get("type"),
                "length": enclosure.get("length"),
            }
            try:
                enc_item["length"] = int(enc_item["length"])
            except (ValueError, TypeError):
                enc_item.pop("length", None)
            enclosures.append(
                {key: value for key, value in enc_item.items() if value is not None}
            )
        return enclosures or None


def parse(
    source: str | bytes,
    *,
    encoding: Optional[str] = None,
    keep_html_entities: bool = False,
) -> Feed:
    """Parse feed content into an initialized :class:`Feed`.

    Args:
        source: Feed XML as bytes or text
        encoding: Source encoding label overriding the XML declaration
        keep_html_entities: Return text fields without decoding HTML entities

    Returns:
        Feed with dialect and namespaces resolved

    Raises:
        InvalidFeedError: If the document is not RSS, Atom, RDF or backslash
        ValueError: If content is empty or not XML
    """
    return Feed(
        source, encoding=encoding, keep_html_entities=keep_html_entities
    ).initialize()
