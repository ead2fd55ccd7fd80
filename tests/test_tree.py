import pytest

from feedpie.tree import parse_xml_to_tree


def test_rss_tree_shape():
    xml = """<?xml version="1.0" encoding="utf-8"?>
<rss version="2.0" xmlns:dc="http://purl.org/dc/elements/1.1/">
  <channel>
    <title>Example</title>
    <link/>
    <item>
      <title>First</title>
      <dc:creator>Jane</dc:creator>
    </item>
    <item>
      <title>Second</title>
    </item>
  </channel>
</rss>
"""
    tree = parse_xml_to_tree(xml)
    rss = tree["rss"]
    assert rss["version"] == "2.0"
    assert rss["xmlns:dc"] == "http://purl.org/dc/elements/1.1/"

    channel = rss["channel"]
    assert "$t" not in channel
    assert channel["title"] == "Example"
    assert channel["link"] == {}
    assert isinstance(channel["item"], list)
    assert [item["title"] for item in channel["item"]] == ["First", "Second"]
    assert channel["item"][0]["dc:creator"] == "Jane"


def test_single_child_stays_a_mapping():
    tree = parse_xml_to_tree(
        "<rss><channel><item><title>Only</title></item></channel></rss>"
    )
    assert tree["rss"]["channel"]["item"] == {"title": "Only"}


def test_attributes_and_text_share_a_mapping():
    xml = (
        '<feed xmlns="http://www.w3.org/2005/Atom">'
        '<title type="html">A &amp;amp; B</title>'
        '<link rel="alternate" href="http://example.com/"/>'
        "</feed>"
    )
    feed = parse_xml_to_tree(xml)["feed"]
    assert feed["xmlns"] == "http://www.w3.org/2005/Atom"
    assert feed["title"] == {"type": "html", "$t": "A &amp; B"}
    assert feed["link"] == {"rel": "alternate", "href": "http://example.com/"}


def test_document_prefixes_are_kept():
    xml = (
        '<rdf:RDF xmlns:rdf="http://www.w3.org/1999/02/22-rdf-syntax-ns#" '
        'xmlns="http://purl.org/rss/1.0/" xmlns:purl="http://purl.org/dc/elements/1.1/">'
        '<item rdf:about="http://example.com/1"><purl:date>2024-01-01</purl:date></item>'
        "</rdf:RDF>"
    )
    tree = parse_xml_to_tree(xml)
    root = tree["rdf:RDF"]
    assert root["xmlns:purl"] == "http://purl.org/dc/elements/1.1/"
    assert root["item"]["rdf:about"] == "http://example.com/1"
    assert root["item"]["purl:date"] == "2024-01-01"


def test_cdata_and_xml_lang():
    xml = (
        '<feed xmlns="http://www.w3.org/2005/Atom" xml:lang="de">'
        "<entry><content><![CDATA[<p>Body</p>]]></content></entry>"
        "</feed>"
    )
    feed = parse_xml_to_tree(xml)["feed"]
    assert feed["xml:lang"] == "de"
    assert feed["entry"]["content"] == "<p>Body</p>"


def test_comments_are_skipped():
    tree = parse_xml_to_tree("<rss><!-- note --><channel><title>T</title></channel></rss>")
    assert tree == {"rss": {"channel": {"title": "T"}}}


def test_empty_content_raises():
    with pytest.raises(ValueError):
        parse_xml_to_tree("   ")


def test_non_xml_content_raises():
    with pytest.raises(ValueError):
        parse_xml_to_tree("this is not xml at all")
