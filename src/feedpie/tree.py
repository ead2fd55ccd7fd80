"""Source normalization and the dict/list/str document tree.

The tree mirrors the shape most JSON-from-XML converters produce, so the field
extractors can treat a feed as plain Python data:

* an element holding only text becomes a ``str``
* an element with attributes or children becomes a ``dict``; its own
  non-blank text is stored under ``"$t"``
* an empty element becomes ``{}``
* repeated siblings collapse into a ``list`` in document order
* namespaced names keep the prefix the document declared (``dc:creator``),
  and namespace declarations show up as ``xmlns:prefix`` attributes
"""

from __future__ import annotations

import logging
import re
from typing import Any, Optional, TYPE_CHECKING

from lxml import etree

if TYPE_CHECKING:
    from lxml.etree import _Element

logger = logging.getLogger(__name__)

TEXT_KEY = "$t"
DEFAULT_ENCODING = "UTF-8"

_UTF8_LABELS = ("UTF-8", "UTF8")
_ENCODING_SCAN_BYTES = 255

_RE_XML_DECL = re.compile(r"<\?xml[^>]*>", re.IGNORECASE)
_RE_DECL_ENCODING = re.compile(r"""encoding\s*=\s*["']([^"']+)["']""", re.IGNORECASE)
_RE_XML_DECL_ENCODING = re.compile(
    r'(<\?xml[^>]*encoding=["\'])([^"\']+)(["\'][^>]*\?>)', re.IGNORECASE
)

_XML_NAMESPACE = "http://www.w3.org/XML/1998/namespace"

_STRICT_XML_PARSER = etree.XMLParser(
    recover=False,
    collect_ids=False,
    resolve_entities=False,
    remove_comments=True,
    remove_pis=True,
)
_RECOVER_XML_PARSER = etree.XMLParser(
    recover=True,
    collect_ids=False,
    resolve_entities=False,
    remove_comments=True,
    remove_pis=True,
)


def detect_encoding(content: bytes, override: Optional[str] = None) -> str:
    """Pick the source encoding label for ``content``.

    An explicit override wins, then the ``encoding`` attribute of the XML
    declaration near the start of the document, then UTF-8.
    """
    if override:
        return override.strip().upper()

    head = content[:_ENCODING_SCAN_BYTES].decode("utf-8", errors="replace")
    declaration = _RE_XML_DECL.search(head)
    if declaration:
        match = _RE_DECL_ENCODING.search(declaration.group(0))
        if match and match.group(1).strip():
            return match.group(1).strip().upper()
    return DEFAULT_ENCODING


def transcode_to_text(content: bytes, encoding: str) -> str:
    """Decode ``content`` from ``encoding``; unknown labels raise LookupError."""
    if encoding in _UTF8_LABELS:
        # utf-8-sig also drops a leading byte order mark
        return content.decode("utf-8-sig", errors="replace")
    return content.decode(encoding)


def normalize_source(
    source: str | bytes, encoding: Optional[str] = None
) -> tuple[str, str]:
    """Return ``(text, encoding_label)`` for raw feed bytes or text."""
    if isinstance(source, bytes):
        label = detect_encoding(source, encoding)
        text = transcode_to_text(source, label)
        logger.debug("Source decoded as %s", label)
        return text.strip(), label
    return (source or "").strip(), DEFAULT_ENCODING


def _ensure_utf8_xml_declaration(content: str) -> str:
    """Ensure the XML declaration's encoding matches the UTF-8 bytes we emit."""
    if not content.lstrip().startswith("<?xml"):
        return content
    return _RE_XML_DECL_ENCODING.sub(r"\1utf-8\3", content, count=1)


def _parse_xml_root(xml_content: bytes) -> _Element:
    try:
        root = etree.fromstring(xml_content, parser=_STRICT_XML_PARSER)
    except etree.XMLSyntaxError as e:
        logger.debug("Strict XML parse failed (%s), retrying in recover mode", e)
        try:
            root = etree.fromstring(xml_content, parser=_RECOVER_XML_PARSER)
        except etree.XMLSyntaxError as e:
            raise ValueError(f"Failed to parse XML content: {str(e)}")

    if root is None:
        preview = xml_content[:200].decode("utf-8", errors="replace").strip()
        raise ValueError(
            "Failed to parse XML: received content that couldn't be parsed as XML "
            f"(first 200 chars: {preview})"
        )
    return root


def _qualified_name(name: str, prefixes: dict[str, Optional[str]]) -> str:
    """Turn lxml's ``{uri}local`` into ``prefix:local`` using the in-scope prefixes."""
    if name[0] != "{":
        return name
    uri, local = name[1:].split("}", 1)
    if uri == _XML_NAMESPACE:
        return "xml:" + local
    prefix = prefixes.get(uri)
    return f"{prefix}:{local}" if prefix else local


def _element_name(el: _Element) -> str:
    local = etree.QName(el).localname
    return f"{el.prefix}:{local}" if el.prefix else local


def _add_value(node: dict[str, Any], key: str, value: Any) -> None:
    if key not in node:
        node[key] = value
    elif isinstance(node[key], list):
        node[key].append(value)
    else:
        node[key] = [node[key], value]


def _element_to_tree(
    el: _Element, parent_nsmap: dict[Optional[str], str]
) -> str | dict[str, Any]:
    nsmap = el.nsmap
    node: dict[str, Any] = {}

    for prefix, uri in nsmap.items():
        if parent_nsmap.get(prefix) != uri:
            node["xmlns:" + prefix if prefix else "xmlns"] = uri

    # uri -> prefix; prefixed declarations win over the default namespace
    prefixes: dict[str, Optional[str]] = {}
    for prefix, uri in nsmap.items():
        if prefix or uri not in prefixes:
            prefixes[uri] = prefix

    for name, value in el.attrib.items():
        node[_qualified_name(name, prefixes)] = value

    text_parts = [el.text] if el.text else []
    has_children = False
    for child in el:
        if isinstance(child.tag, str):
            has_children = True
            _add_value(node, _element_name(child), _element_to_tree(child, nsmap))
        elif child.tag is etree.Entity and child.text:
            # unresolved entity reference, kept for the entity decoder
            text_parts.append(child.text)
        if child.tail:
            text_parts.append(child.tail)

    text = "".join(text_parts)
    if not node and not has_children:
        return text if text else {}
    if text.strip():
        node[TEXT_KEY] = text
    return node


def parse_xml_to_tree(text: str) -> dict[str, Any]:
    """Parse feed text into a ``{root_name: root_value}`` document tree."""
    if not text.strip():
        raise ValueError("Empty content")

    root = _parse_xml_root(_ensure_utf8_xml_declaration(text).encode("utf-8"))
    return {_element_name(root): _element_to_tree(root, {})}
