"""
SVGTrace Post-Processing Module.

Text-level rewrites applied to traced markup, in this order:

1. coerce                   - guarantee an <svg> root
2. normalize_viewbox        - resolve dimensions, add viewBox, drop width/height
3. recolor                  - set every path's fill to the line color
4. strip_white_background   - remove full-canvas white rectangles
5. inject_background        - add a full-canvas rectangle (opaque output only)

Each stage is a pure function of a ``VectorDocument``. Recoloring touches
paths only, so it runs before background handling; stripping runs before
injection so backgrounds never stack. The whole chain is idempotent:
``postprocess(postprocess(x).markup)`` returns identical markup.
"""

import math
import re
from typing import Dict, Optional, Tuple

from .config import DEFAULT_DIMENSION
from .errors import PostProcessError
from .models import TraceParameters, VectorDocument

SVG_NS = "http://www.w3.org/2000/svg"

DEFAULT_SVG = (
    f'<svg xmlns="{SVG_NS}" width="{DEFAULT_DIMENSION}" height="{DEFAULT_DIMENSION}" '
    f'viewBox="0 0 {DEFAULT_DIMENSION} {DEFAULT_DIMENSION}"></svg>'
)

_OPEN_TAG = re.compile(r"<svg\b[^>]*>", re.IGNORECASE)
_PROLOG = re.compile(
    r"^(?:\s*(?:<\?.*?\?>|<!--.*?-->|<!DOCTYPE[^>]*>))*\s*(?=<svg\b)",
    re.IGNORECASE | re.DOTALL,
)
_SELF_CLOSING_ROOT = re.compile(r"^(<svg\b[^>]*?)\s*/>\s*$", re.IGNORECASE)
_ATTR = re.compile(r"""([\w:.-]+)\s*=\s*(?:"([^"]*)"|'([^']*)')""")
_PATH_TAG = re.compile(r"<path\b[^>]*>", re.IGNORECASE)
_FILL_ATTR = re.compile(r"""(\s)fill\s*=\s*(?:"[^"]*"|'[^']*')""", re.IGNORECASE)
_RECT = re.compile(r"<rect\b[^>]*?/>|<rect\b[^>]*>\s*</rect\s*>", re.IGNORECASE)
_LENGTH = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(?:px)?\s*$", re.IGNORECASE)
_ZERO = re.compile(r"^\s*(?:0+(?:\.0*)?|\.0+)\s*(?:px|%)?\s*$", re.IGNORECASE)
_WHITE = re.compile(
    r"^\s*(?:#fff|#ffffff|white"
    r"|rgb\(\s*255\s*,\s*255\s*,\s*255\s*\)"
    r"|rgba\(\s*255\s*,\s*255\s*,\s*255\s*,\s*1(?:\.0*)?\s*\))\s*$",
    re.IGNORECASE,
)


# ============================================================================
# HELPERS
# ============================================================================

def parse_attributes(tag: str) -> Dict[str, str]:
    """Attributes of a single start tag, keyed by lower-cased name."""
    attrs = {}
    for name, dq, sq in _ATTR.findall(tag):
        attrs.setdefault(name.lower(), dq if dq or not sq else sq)
    return attrs


def _remove_attribute(tag: str, name: str) -> str:
    pattern = re.compile(r"""\s%s\s*=\s*(?:"[^"]*"|'[^']*')""" % re.escape(name), re.IGNORECASE)
    return pattern.sub("", tag)


def _round(value: float) -> int:
    return int(math.floor(value + 0.5))


def parse_length(value: Optional[str]) -> Optional[int]:
    """Positive pixel length from ``"200"``, ``"200.4"`` or ``"200px"``; else None."""
    if value is None:
        return None
    m = _LENGTH.match(value)
    if not m:
        return None
    n = _round(float(m.group(1)))
    return n if n > 0 else None


def parse_viewbox(value: Optional[str]) -> Optional[Tuple[int, int]]:
    """(width, height) from a viewBox value, or None when unusable."""
    if value is None:
        return None
    parts = [p for p in re.split(r"[\s,]+", value.strip()) if p]
    if len(parts) != 4:
        return None
    try:
        w, h = float(parts[2]), float(parts[3])
    except ValueError:
        return None
    w, h = _round(w), _round(h)
    if w <= 0 or h <= 0:
        return None
    return w, h


def _root(markup: str):
    m = _OPEN_TAG.search(markup)
    if m is None:
        raise PostProcessError("Traced output has no <svg> root element.")
    return m


def _covers(value: Optional[str], size: int) -> bool:
    if value is None:
        return False
    m = _LENGTH.match(value)
    return bool(m) and float(m.group(1)) == size


def is_canvas_rect(attrs: Dict[str, str], width: int, height: int) -> bool:
    """True when a rect spans the canvas in pixels or as 0,0,100%,100%."""
    x, y = attrs.get("x", "0"), attrs.get("y", "0")
    if not (_ZERO.match(x) and _ZERO.match(y)):
        return False
    rw, rh = attrs.get("width"), attrs.get("height")
    if rw is not None and rh is not None and rw.strip() == "100%" and rh.strip() == "100%":
        return True
    return _covers(rw, width) and _covers(rh, height)


def is_white(color: Optional[str]) -> bool:
    return color is not None and bool(_WHITE.match(color))


# ============================================================================
# STAGES
# ============================================================================

def coerce(markup: Optional[str]) -> VectorDocument:
    """
    Guarantee a document with an <svg> root.

    Empty output becomes the default 1024x1024 document. Anything before
    the root (XML declaration, comments, doctype) is dropped; text without
    a root is wrapped in a default one.
    """
    text = (markup or "").strip()
    if not text:
        return VectorDocument(DEFAULT_SVG, DEFAULT_DIMENSION, DEFAULT_DIMENSION)

    text = _PROLOG.sub("", text, count=1)
    if not re.match(r"<svg\b", text, re.IGNORECASE):
        text = DEFAULT_SVG.replace("</svg>", f"{text}</svg>")
    else:
        text = _SELF_CLOSING_ROOT.sub(r"\1></svg>", text)
    return VectorDocument(text, DEFAULT_DIMENSION, DEFAULT_DIMENSION)


def normalize_viewbox(doc: VectorDocument) -> VectorDocument:
    """
    Make the document responsive and resolve its dimensions.

    Dimensions come from an existing viewBox, otherwise from numeric
    width/height attributes, otherwise 1024. A missing viewBox is
    synthesized from them; width and height are removed from the root.

    Raises:
        PostProcessError: No <svg> root in the markup.
    """
    m = _root(doc.markup)
    tag = m.group(0)
    attrs = parse_attributes(tag)

    viewbox = parse_viewbox(attrs.get("viewbox"))
    if viewbox is not None:
        width, height = viewbox
    else:
        width = parse_length(attrs.get("width")) or DEFAULT_DIMENSION
        height = parse_length(attrs.get("height")) or DEFAULT_DIMENSION

    new_tag = tag
    if viewbox is None:
        new_tag = _remove_attribute(new_tag, "viewBox")
        new_tag = re.sub(r"^<svg\b", f'<svg viewBox="0 0 {width} {height}"', new_tag,
                         count=1, flags=re.IGNORECASE)
    new_tag = _remove_attribute(_remove_attribute(new_tag, "width"), "height")

    markup = doc.markup[:m.start()] + new_tag + doc.markup[m.end():]
    return VectorDocument(markup, width, height)


def recolor(doc: VectorDocument, color: str) -> VectorDocument:
    """Set ``fill`` on every <path>, replacing existing fills and adding missing ones."""
    replacement = f'fill="{color}"'

    def rewrite(match):
        tag = match.group(0)
        if _FILL_ATTR.search(tag):
            return _FILL_ATTR.sub(lambda f: f.group(1) + replacement, tag)
        closing = "/>" if tag.endswith("/>") else ">"
        body = tag[:-len(closing)]
        head = body.rstrip()
        return f"{head} {replacement}{body[len(head):]}{closing}"

    return VectorDocument(_PATH_TAG.sub(rewrite, doc.markup), doc.width, doc.height)


def strip_white_background(doc: VectorDocument) -> VectorDocument:
    """Remove white rectangles covering the whole canvas."""
    def keep_or_drop(match):
        attrs = parse_attributes(match.group(0))
        if is_white(attrs.get("fill")) and is_canvas_rect(attrs, doc.width, doc.height):
            return ""
        return match.group(0)

    return VectorDocument(_RECT.sub(keep_or_drop, doc.markup), doc.width, doc.height)


def background_rect(width: int, height: int, color: str) -> str:
    return f'<rect x="0" y="0" width="{width}" height="{height}" fill="{color}"/>'


def inject_background(doc: VectorDocument, color: str) -> VectorDocument:
    """Insert a full-canvas rectangle right after the root start tag, once."""
    m = _root(doc.markup)
    rect = background_rect(doc.width, doc.height, color)
    rest = doc.markup[m.end():]
    if rest.startswith(rect):
        return doc
    return VectorDocument(doc.markup[:m.end()] + rect + rest, doc.width, doc.height)


def postprocess(markup: Optional[str], params: TraceParameters) -> VectorDocument:
    """
    Run the full chain with a conversion's colors and background choice.

    Args:
        markup: Raw tracer output.
        params: Parameters with polarity already resolved.

    Returns:
        The final VectorDocument.
    """
    doc = normalize_viewbox(coerce(markup))
    doc = recolor(doc, params.line_color)
    doc = strip_white_background(doc)
    if not params.transparent:
        doc = inject_background(doc, params.bg_color)
    return doc
