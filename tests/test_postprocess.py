"""
Tests for the markup rewrite chain.
"""

import re

import pytest

from conftest import SIMPLE_SVG
from svgtrace.errors import PostProcessError
from svgtrace.models import TraceParameters, VectorDocument
from svgtrace.postprocess import (
    DEFAULT_SVG,
    background_rect,
    coerce,
    inject_background,
    is_canvas_rect,
    is_white,
    normalize_viewbox,
    parse_attributes,
    parse_length,
    parse_viewbox,
    postprocess,
    recolor,
    strip_white_background,
)

NS = 'xmlns="http://www.w3.org/2000/svg"'


def root_tag(markup: str) -> str:
    return re.search(r"<svg\b[^>]*>", markup).group(0)


class TestCoerce:
    """Guaranteeing an <svg> root."""

    @pytest.mark.parametrize("markup", [None, "", "   \n"])
    def test_empty_becomes_default(self, markup):
        doc = coerce(markup)
        assert doc.markup == DEFAULT_SVG
        assert (doc.width, doc.height) == (1024, 1024)

    def test_existing_root_untouched(self):
        assert coerce(SIMPLE_SVG).markup == SIMPLE_SVG

    def test_prolog_dropped(self):
        markup = '<?xml version="1.0" encoding="utf-8"?>\n<!-- traced -->\n' + SIMPLE_SVG
        assert coerce(markup).markup == SIMPLE_SVG

    def test_fragment_wrapped(self):
        doc = coerce('<path d="M0 0L1 1"/>')
        assert doc.markup.startswith("<svg")
        assert '<path d="M0 0L1 1"/></svg>' in doc.markup

    def test_self_closing_root_expanded(self):
        doc = coerce(f'<svg {NS} width="10" height="10"/>')
        assert doc.markup == f'<svg {NS} width="10" height="10"></svg>'


class TestViewBox:
    """Responsive sizing and dimension resolution."""

    def test_synthesized_from_width_height(self):
        doc = normalize_viewbox(VectorDocument(
            f'<svg {NS} width="200" height="100"><path d="M0 0"/></svg>', 0, 0))
        tag = root_tag(doc.markup)
        assert 'viewBox="0 0 200 100"' in tag
        assert "width=" not in tag
        assert "height=" not in tag
        assert (doc.width, doc.height) == (200, 100)

    def test_px_and_decimal_lengths(self):
        doc = normalize_viewbox(VectorDocument(f'<svg {NS} width="200px" height="50.4"></svg>', 0, 0))
        assert (doc.width, doc.height) == (200, 50)
        assert 'viewBox="0 0 200 50"' in doc.markup

    def test_existing_viewbox_wins(self):
        doc = normalize_viewbox(VectorDocument(
            f'<svg {NS} width="128" height="64" viewBox="0 0 64 32"></svg>', 0, 0))
        assert (doc.width, doc.height) == (64, 32)
        assert root_tag(doc.markup) == f'<svg {NS} viewBox="0 0 64 32">'

    def test_missing_dimensions_default(self):
        doc = normalize_viewbox(VectorDocument(f"<svg {NS}></svg>", 0, 0))
        assert (doc.width, doc.height) == (1024, 1024)
        assert 'viewBox="0 0 1024 1024"' in doc.markup

    def test_percentage_dimensions_default(self):
        doc = normalize_viewbox(VectorDocument(f'<svg {NS} width="100%" height="100%"></svg>', 0, 0))
        assert (doc.width, doc.height) == (1024, 1024)
        assert "100%" not in doc.markup

    def test_unusable_viewbox_replaced(self):
        doc = normalize_viewbox(VectorDocument(
            f'<svg {NS} viewBox="nonsense" width="10" height="20"></svg>', 0, 0))
        assert "nonsense" not in doc.markup
        assert doc.markup.count("viewBox") == 1
        assert (doc.width, doc.height) == (10, 20)

    def test_inner_elements_keep_their_size(self):
        doc = normalize_viewbox(VectorDocument(
            f'<svg {NS} width="20" height="20"><rect width="5" height="5"/></svg>', 0, 0))
        assert '<rect width="5" height="5"/>' in doc.markup

    def test_no_root_raises(self):
        with pytest.raises(PostProcessError):
            normalize_viewbox(VectorDocument("<g></g>", 1, 1))


class TestRecolor:
    """Path fills follow the line color and nothing else changes."""

    def test_every_path_recolored(self):
        markup = (
            f'<svg {NS} viewBox="0 0 10 10">'
            '<path d="M1 1" fill="red"/>'
            "<path d='M2 2' fill='#123'/>"
            '<path d="M3 3" fill-rule="evenodd"/>'
            '<path d="M4 4"></path>'
            '<path d="M5 5" />'
            '<rect width="3" height="3" fill="red"/>'
            "</svg>"
        )
        out = recolor(VectorDocument(markup, 10, 10), "#abc").markup
        assert out == (
            f'<svg {NS} viewBox="0 0 10 10">'
            '<path d="M1 1" fill="#abc"/>'
            "<path d='M2 2' fill=\"#abc\"/>"
            '<path d="M3 3" fill-rule="evenodd" fill="#abc"/>'
            '<path d="M4 4" fill="#abc"></path>'
            '<path d="M5 5" fill="#abc" />'
            '<rect width="3" height="3" fill="red"/>'
            "</svg>"
        )

    def test_path_count_preserved(self):
        paths = "".join(f'<path d="M{i} {i}" fill="#000"/>' for i in range(25))
        out = recolor(VectorDocument(f"<svg {NS}>{paths}</svg>", 1, 1), "#ff0000").markup
        assert out.count("<path") == 25
        assert out.count('fill="#ff0000"') == 25
        assert "#000" not in out

    def test_recolor_is_stable(self):
        doc = VectorDocument(SIMPLE_SVG, 40, 40)
        once = recolor(doc, "#123456")
        assert recolor(once, "#123456").markup == once.markup


class TestBackground:
    """Stripping white canvases and injecting the requested background."""

    @pytest.mark.parametrize("rect", [
        '<rect width="100" height="50" fill="#fff"/>',
        '<rect x="0" y="0" width="100%" height="100%" fill="white"></rect>',
        '<rect fill="#FFFFFF" height="50" width="100" x="0" y="0"/>',
        "<rect x='0' y='0' width='100px' height='50px' fill='rgb(255, 255, 255)'/>",
    ])
    def test_white_canvas_removed(self, rect):
        doc = VectorDocument(f'<svg {NS} viewBox="0 0 100 50">{rect}<path d="M0 0"/></svg>', 100, 50)
        out = strip_white_background(doc).markup
        assert "<rect" not in out
        assert '<path d="M0 0"/>' in out

    @pytest.mark.parametrize("rect", [
        '<rect x="0" y="0" width="100" height="50" fill="#eee"/>',
        '<rect x="5" y="0" width="100" height="50" fill="#fff"/>',
        '<rect x="0" y="0" width="40" height="50" fill="#fff"/>',
        '<rect x="0" y="0" width="100" height="50"/>',
    ])
    def test_other_rects_kept(self, rect):
        doc = VectorDocument(f'<svg {NS} viewBox="0 0 100 50">{rect}</svg>', 100, 50)
        assert rect in strip_white_background(doc).markup

    def test_inject_after_root(self):
        doc = VectorDocument(f'<svg {NS} viewBox="0 0 40 40"><path d="M0 0"/></svg>', 40, 40)
        out = inject_background(doc, "#ff0000").markup
        assert out == (f'<svg {NS} viewBox="0 0 40 40">'
                       '<rect x="0" y="0" width="40" height="40" fill="#ff0000"/>'
                       '<path d="M0 0"/></svg>')

    def test_inject_once(self):
        doc = VectorDocument(f'<svg {NS} viewBox="0 0 40 40"></svg>', 40, 40)
        once = inject_background(doc, "#123")
        assert inject_background(once, "#123").markup == once.markup

    def test_helpers(self):
        assert is_white("#FFF") and is_white(" white ") and is_white("rgba(255,255,255,1)")
        assert not is_white("#fffffe") and not is_white(None)
        assert is_canvas_rect(parse_attributes(background_rect(10, 20, "#000")), 10, 20)
        assert not is_canvas_rect({"x": "1", "width": "10", "height": "20"}, 10, 20)


class TestParsing:
    def test_parse_length(self):
        assert parse_length("200") == 200
        assert parse_length("199.6px") == 200
        assert parse_length("50%") is None
        assert parse_length("0") is None
        assert parse_length(None) is None

    def test_parse_viewbox(self):
        assert parse_viewbox("0 0 64 32") == (64, 32)
        assert parse_viewbox("0,0,64,32") == (64, 32)
        assert parse_viewbox("0 0 64") is None
        assert parse_viewbox("0 0 -5 10") is None
        assert parse_viewbox("a b c d") is None

    def test_attributes_case_insensitive(self):
        attrs = parse_attributes("<svg viewBox='0 0 1 1' Width=\"3\">")
        assert attrs == {"viewbox": "0 0 1 1", "width": "3"}


class TestChain:
    """The composed chain."""

    def test_transparent_output(self):
        doc = postprocess(SIMPLE_SVG, TraceParameters())
        assert (doc.width, doc.height) == (40, 40)
        assert "<rect" not in doc.markup
        assert doc.markup.count("<path") == 1
        assert 'fill="#000000"' in doc.markup

    def test_opaque_output(self):
        params = TraceParameters(transparent=False, bg_color="#ff0000", line_color="#00ff00")
        doc = postprocess(SIMPLE_SVG, params)
        assert doc.markup.count("<rect") == 1
        assert f'<svg {NS} viewBox="0 0 40 40"><rect x="0" y="0" width="40" height="40" fill="#ff0000"/>' \
            in doc.markup
        assert '<path d="M10 10L30 10L30 30L10 30Z" fill="#00ff00"/>' in doc.markup

    def test_white_background_replaced_not_stacked(self):
        traced = SIMPLE_SVG.replace("<path", '<rect width="40" height="40" fill="#ffffff"/><path')
        params = TraceParameters(transparent=False, bg_color="#ffffff")
        doc = postprocess(traced, params)
        assert doc.markup.count("<rect") == 1

    @pytest.mark.parametrize("params", [
        TraceParameters(),
        TraceParameters(transparent=False),
        TraceParameters(transparent=False, bg_color="#0b1020", line_color="#ffffff"),
        TraceParameters(line_color="rgb(10, 20, 30)"),
    ])
    @pytest.mark.parametrize("markup", [
        SIMPLE_SVG,
        "",
        '<?xml version="1.0"?><svg width="64px" height="48"><path d="M0 0"></path></svg>',
        '<svg viewBox="bad" width="3" height="4"><path d="M0 0"/></svg>',
        '<path d="M1 1"/>',
    ])
    def test_idempotent(self, markup, params):
        first = postprocess(markup, params)
        second = postprocess(first.markup, params)
        assert second.markup == first.markup
        assert (second.width, second.height) == (first.width, first.height)
