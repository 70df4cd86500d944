#!/usr/bin/env python3
"""
Tests for readability/trafilatura article extraction
"""

from content_extraction.generic_extractor import extract, html_to_text, strip_title_heading
from conftest import load_fixture

URL = "https://www.example.com/2024/05/rivers-return.html"


class TestExtract:

    def test_article_fixture(self):
        article = extract(load_fixture("article.html"), URL)

        assert article is not None
        assert "Hydrologists attribute the change" in article.text
        assert "Copyright Example Times" not in article.text
        assert article.char_count > 200

    def test_empty_input(self):
        assert extract("", URL) is None
        assert extract("   \n", URL) is None


class TestTitleHeading:

    def test_matching_heading_is_removed(self):
        fragment = "<div><h2>Rivers  Return to the VALLEY</h2><p>Body text</p></div>"

        stripped = strip_title_heading(fragment, "Rivers Return to the Valley")
        assert "<h2>" not in stripped
        assert "<p>Body text</p>" in stripped

    def test_only_first_match_is_removed(self):
        fragment = "<h1>Title</h1><p>a</p><h1>Title</h1>"

        assert strip_title_heading(fragment, "Title").count("<h1>") == 1

    def test_other_headings_are_kept(self):
        fragment = "<div><h1>Another headline</h1><p>Body</p></div>"

        assert strip_title_heading(fragment, "Rivers Return") is fragment
        assert strip_title_heading(fragment, None) is fragment


def test_html_to_text_drops_scripts():
    text = html_to_text("<div><script>var x = 1;</script><p>One</p><p>Two</p></div>")

    assert "var x" not in text
    assert "One" in text and "Two" in text
