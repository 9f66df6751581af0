"""Tests for imported field markup normalization."""

import pytest

from ingestion.normalizer import decode_entities, normalize_html, strip_html


class TestUnsafeContent:
    def test_script_blocks_removed(self) -> None:
        assert normalize_html("<script>alert(1)</script>Hello") == "Hello"

    def test_style_blocks_removed(self) -> None:
        assert normalize_html("<style>.x { color: red }</style>Hi") == "Hi"

    def test_unclosed_script_tag_removed(self) -> None:
        assert "script" not in normalize_html("<script src='x.js'>Hello").lower()

    def test_event_handlers_removed(self) -> None:
        assert normalize_html('<b onclick="steal()">Bold</b>') == "<b>Bold</b>"
        assert normalize_html("<img src=\"a.png\" onerror='x()'>") == '<img src="a.png">'

    def test_javascript_urls_removed(self) -> None:
        result = normalize_html('<a href="javascript:alert(1)">link</a>')
        assert "javascript" not in result.lower()
        assert "link" in result

    def test_handler_after_slash_removed(self) -> None:
        assert normalize_html('<img/onerror="alert(1)" src="a.png">') == '<img src="a.png">'
        assert normalize_html('<b/onmouseover=x()>Bold</b>') == "<b>Bold</b>"

    def test_obfuscated_javascript_urls_removed(self) -> None:
        assert normalize_html('<a href="java&#9;script:alert(1)">x</a>') == "x"
        assert normalize_html('<img src="java\nscript:alert(1)">') == "<img>"
        assert normalize_html('<img src=" &#106;avascript:alert(1)">') == "<img>"
        assert normalize_html('<img src="VBScript:msgbox(1)">') == "<img>"

    def test_document_data_urls_removed(self) -> None:
        assert normalize_html('<img src="data:text/html;base64,PHNjcmlwdD4=">') == "<img>"
        image = '<img src="data:image/png;base64,iVBORw0KGgo=">'
        assert normalize_html(image) == image

    def test_tags_outside_allow_list_dropped(self) -> None:
        markup = '<iframe src="x"></iframe>ok <object data="y">fallback</object> <a href="/z">link</a>'
        assert normalize_html(markup) == "ok fallback link"

    def test_comments_removed(self) -> None:
        assert normalize_html("a<!-- <img src=x onerror=y> -->b") == "ab"

    def test_attribute_quotes_normalized(self) -> None:
        markup = "<img src='a.png' title='say \"hi\"'>"
        assert normalize_html(markup) == '<img src="a.png" title="say &quot;hi&quot;">'


class TestEscapedText:
    def test_escaped_markup_stays_text(self) -> None:
        assert normalize_html("What does &lt;div&gt; do?") == "What does &lt;div&gt; do?"
        assert normalize_html("x &lt;i&gt;y") == "x &lt;i&gt;y"

    def test_escaped_script_is_inert(self) -> None:
        result = normalize_html("&lt;script&gt;alert(1)&lt;/script&gt;ok")
        assert result == "&lt;script&gt;alert(1)&lt;/script&gt;ok"
        assert normalize_html("&amp;lt;script&amp;gt;alert(1)&amp;lt;/script&amp;gt;ok") == result

    def test_bare_angle_brackets_escaped(self) -> None:
        assert normalize_html("a < b > c") == "a &lt; b &gt; c"

    def test_other_block_tags_become_breaks(self) -> None:
        assert normalize_html("<h1>Title</h1>text") == "Title<br>text"


class TestPresentationalMarkup:
    def test_font_and_span_unwrapped(self) -> None:
        markup = '<font color="red">Red</font> and <span style="color: blue">blue</span>'
        assert normalize_html(markup) == "Red and blue"

    def test_divs_become_breaks(self) -> None:
        assert normalize_html("<div>line one</div><div>line two</div>") == "line one<br>line two"

    def test_paragraphs_become_double_breaks(self) -> None:
        assert normalize_html("<p>one</p><p>two</p>") == "one<br><br>two"

    def test_nested_wrappers_unwrap_fully(self) -> None:
        assert normalize_html("<div><div><div>a</div></div></div>") == "a"
        assert normalize_html("<span><font><span>deep</span></font></span>") == "deep"

    def test_orphan_block_close_becomes_break(self) -> None:
        assert normalize_html("text</div>more") == "text<br>more"

    def test_preserved_tags_lose_style_and_class(self) -> None:
        markup = '<img src="x.png" class="big" style="width: 10px">'
        assert normalize_html(markup) == '<img src="x.png">'

    def test_media_and_lists_preserved(self) -> None:
        markup = '<audio controls src="a.mp3"></audio><ul><li>one</li></ul>'
        assert normalize_html(markup) == markup


class TestWhitespace:
    def test_break_runs_capped_at_two(self) -> None:
        assert normalize_html("a<br><br><br><br>b") == "a<br><br>b"

    def test_break_variants_normalized(self) -> None:
        assert normalize_html("a<br/>  <BR >b") == "a<br><br>b"

    def test_edge_breaks_stripped(self) -> None:
        assert normalize_html("<br>a<br>") == "a"

    def test_whitespace_collapsed(self) -> None:
        assert normalize_html("  a \n\t b  ") == "a b"

    def test_zero_width_characters_removed(self) -> None:
        assert normalize_html("a\u200bb\ufeff") == "ab"

    def test_empty(self) -> None:
        assert normalize_html("") == ""


class TestEntities:
    def test_entities_decoded(self) -> None:
        assert normalize_html("Tom &amp; Jerry") == "Tom & Jerry"

    def test_double_escaped_decoded(self) -> None:
        assert decode_entities("&amp;amp;") == "&"

    def test_plain_text_unchanged(self) -> None:
        assert decode_entities("nothing here") == "nothing here"


class TestIdempotence:
    @pytest.mark.parametrize(
        "markup",
        [
            "<script>alert(1)</script>Hello",
            '<div style="x">one</div><p>two</p>',
            "Tom &amp; Jerry",
            '<b onclick="x()">Bold</b> <img src="a.png" class="c">',
            "a<br><br><br>b",
            "<div><div>a</div></div>",
            "&amp;amp;amp;amp;amp;amp;lt;b&gt;",
            "What does &lt;div&gt; do?",
            '<img/onerror="x" src="a.png" title="a&gt;b">',
            "a < b > c &amp;lt;",
        ],
    )
    def test_normalize_twice_is_normalize_once(self, markup: str) -> None:
        once = normalize_html(markup)
        assert normalize_html(once) == once


class TestStripHtml:
    def test_strip_html(self) -> None:
        assert strip_html("<b>Hi</b><br>there &amp; you") == "Hi there & you"
