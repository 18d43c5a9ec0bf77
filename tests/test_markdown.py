"""Tests for the markdown normalizer."""

from marginalia.anchoring import flatten_pages, strip_markdown


class TestInline:
    def test_bold_and_italic(self):
        assert strip_markdown("**bold** and *italic*") == "bold and italic"

    def test_underscore_bold(self):
        assert strip_markdown("__strong__ words") == "strong words"

    def test_bold_never_leaves_stray_asterisks(self):
        assert strip_markdown("**bold**") == "bold"

    def test_link_unwrapped(self):
        assert strip_markdown("see [the docs](https://example.com/a) now") == "see the docs now"

    def test_bold_inside_link(self):
        assert strip_markdown("[**loud** link](https://x.io)") == "loud link"

    def test_image_removed(self):
        assert strip_markdown("![diagram](fig.png) caption") == "caption"

    def test_strike_and_code(self):
        assert strip_markdown("~~old~~ and `code`") == "old and code"

    def test_nbsp_removed(self):
        assert strip_markdown("a&nbsp;b") == "ab"


class TestBlocks:
    def test_headings_quotes_lists(self):
        md = "# Heading\n\n> quote\n\n- item\n1. num\n\n---\n\ntext"
        assert strip_markdown(md) == "Heading\nquote\nitem\nnum\ntext"

    def test_nested_quote_markers(self):
        assert strip_markdown("> > deep") == "deep"

    def test_indented_continuation(self):
        assert strip_markdown("1. first\n\n   second") == "first\nsecond"

    def test_blank_line_runs_collapse(self):
        assert strip_markdown("a\n\n\n\nb") == "a\nb"

    def test_crlf_normalized(self):
        assert strip_markdown("one\r\n\r\ntwo") == "one\ntwo"

    def test_outer_newlines_trimmed(self):
        assert strip_markdown("\n\nbody\n\n") == "body"

    def test_rule_variants(self):
        assert strip_markdown("a\n\n***\n\nb\n\n___\n\nc") == "a\nb\nc"

    def test_empty(self):
        assert strip_markdown("") == ""


def test_flatten_pages():
    pages = {"coral": "# Draft\n\n**Bold** claim.", "amber": ""}
    assert flatten_pages(pages) == {"coral": "Draft\nBold claim.", "amber": ""}
