#!/usr/bin/env python3
"""
bill_renderer.py
Bill export for the POS: fills an HTML bill template with bill, item and store values,
lays the markup out on an A4-wide surface, rasterizes it, slices the raster into A4 pages
and writes <billNumber>.pdf. Also renders the same template as a plain-text receipt preview.

Requirements:
    pip install reportlab PyPDF2 pillow
"""

import argparse
import html
import io
import json
import logging
import math
import os
import re
import sys
import textwrap
from collections import namedtuple
from dataclasses import dataclass, replace
from datetime import datetime
from html.parser import HTMLParser

from PIL import Image, ImageDraw, ImageFont
from reportlab.lib.pagesizes import A4
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas
from PyPDF2 import PdfReader, PdfWriter

# ------------------- Configuration -------------------
PDF_FOLDER = "bills_pdf"
LOG_FILE = "bill_renderer.log"
SETTINGS_FILE = "settings.json"

PAGE_WIDTH_MM = 210
PAGE_HEIGHT_MM = 297
PAGE_PADDING_MM = 20
CSS_PX_PER_MM = 96 / 25.4

DEFAULT_RENDER_SCALE = 1.6
DEFAULT_JPEG_QUALITY = 88
CURRENCY_SYMBOL = "₹"
DATE_FORMAT = "%d-%m-%Y"
TIME_FORMAT = "%I:%M:%S %p"

PAPER_COLUMNS = {"58mm": 32, "80mm": 48}

REGULAR_FONTS = ("DejaVuSans.ttf", "NotoSans-Regular.ttf", "LiberationSans-Regular.ttf", "arial.ttf", "Arial.ttf")
BOLD_FONTS = ("DejaVuSans-Bold.ttf", "NotoSans-Bold.ttf", "LiberationSans-Bold.ttf", "arialbd.ttf", "Arial Bold.ttf")


# ------------------- Logging -------------------
def setup_logging(log_file=LOG_FILE, level=logging.INFO):
    logging.basicConfig(filename=log_file, level=level,
                        format="%(asctime)s %(levelname)s: %(message)s")


# ------------------- Errors -------------------
class BillRenderError(Exception):
    """Base class for everything the renderer reports to its caller."""


class PDFGenerationError(BillRenderError):
    def __init__(self, message="Failed to generate PDF from HTML template"):
        super().__init__(message)


class TemplateLoadError(BillRenderError):
    def __init__(self, message="Failed to load HTML template file"):
        super().__init__(message)


# ------------------- Records -------------------
@dataclass
class BillData:
    bill_number: str
    created_at: str
    subtotal: float
    discount_percent: float
    discount_amount: float
    total: float
    payment_mode: str
    cash_amount: float = None
    upi_amount: float = None

    @classmethod
    def from_dict(cls, d):
        return cls(
            bill_number=str(d["billNumber"]),
            created_at=d["createdAt"],
            subtotal=d.get("subtotal", 0),
            discount_percent=d.get("discountPercent", 0),
            discount_amount=d.get("discountAmount", 0),
            total=d.get("total", 0),
            payment_mode=d.get("paymentMode", "cash"),
            cash_amount=d.get("cashAmount"),
            upi_amount=d.get("upiAmount"),
        )


@dataclass
class BillItem:
    product_name: str
    quantity: int
    unit_price: float
    total_price: float
    size: str = None

    @classmethod
    def from_dict(cls, d):
        return cls(
            product_name=d["productName"],
            quantity=int(d.get("quantity", 1)),
            unit_price=d.get("unitPrice", 0),
            total_price=d.get("totalPrice", 0),
            size=d.get("size") or None,
        )


@dataclass(frozen=True)
class StoreSettings:
    store_name: str
    address_line1: str = ""
    address_line2: str = ""
    phone: str = ""
    gst_number: str = ""

    @classmethod
    def from_dict(cls, d):
        return cls(
            store_name=d.get("storeName") or "",
            address_line1=d.get("addressLine1") or "",
            address_line2=d.get("addressLine2") or "",
            phone=d.get("phone") or "",
            gst_number=d.get("gstNumber") or "",
        )


@dataclass(frozen=True)
class RenderOptions:
    currency_symbol: str = CURRENCY_SYMBOL
    date_format: str = DATE_FORMAT
    time_format: str = TIME_FORMAT
    scale: float = DEFAULT_RENDER_SCALE
    jpeg_quality: int = DEFAULT_JPEG_QUALITY
    font_path: str = None
    bold_font_path: str = None

    @classmethod
    def from_dict(cls, d):
        return cls(
            currency_symbol=d.get("currencySymbol", CURRENCY_SYMBOL),
            date_format=d.get("dateFormat") or DATE_FORMAT,
            time_format=d.get("timeFormat") or TIME_FORMAT,
            scale=float(d.get("renderScale") or DEFAULT_RENDER_SCALE),
            jpeg_quality=int(d.get("jpegQuality") or DEFAULT_JPEG_QUALITY),
            font_path=d.get("fontPath"),
            bold_font_path=d.get("boldFontPath"),
        )


# ------------------- Settings -------------------
DEFAULT_SETTINGS = {
    "storeName": "Vogue Prism",
    "addressLine1": "",
    "addressLine2": "",
    "phone": "",
    "gstNumber": "",
    "paperWidth": "80mm",
    "currencySymbol": CURRENCY_SYMBOL,
    "dateFormat": DATE_FORMAT,
    "timeFormat": TIME_FORMAT,
    "renderScale": DEFAULT_RENDER_SCALE,
    "jpegQuality": DEFAULT_JPEG_QUALITY,
    "fontPath": None,
    "boldFontPath": None,
    "pdfFolder": PDF_FOLDER,
}


def load_settings(path=SETTINGS_FILE):
    """Defaults overlaid with whatever the settings file provides."""
    settings = DEFAULT_SETTINGS.copy()
    if not os.path.exists(path):
        return settings
    try:
        with open(path, "r", encoding="utf-8") as f:
            stored = json.load(f)
    except (OSError, ValueError):
        logging.exception(f"Failed to read settings from {path}, using defaults")
        return settings
    if isinstance(stored, dict):
        settings.update(stored)
    else:
        logging.warning(f"Ignoring settings file {path}: expected a JSON object")
    return settings


def save_settings(settings, path=SETTINGS_FILE):
    with open(path, "w", encoding="utf-8") as f:
        json.dump(settings, f, indent=2, ensure_ascii=False)
    return path


# ------------------- Bill files -------------------
def load_bill_file(path):
    """Read a bill as returned by the bill lookup: {"bill": {...}, "items": [...]}."""
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    bill = data.get("bill", data)
    items = data.get("items")
    if items is None:
        items = bill.get("items", [])
    return BillData.from_dict(bill), [BillItem.from_dict(i) for i in items]


# ------------------- Formatting -------------------
def format_number(value):
    text = f"{value:,.3f}".rstrip("0").rstrip(".")
    return "0" if text in ("-0", "") else text


def format_currency(value, symbol=CURRENCY_SYMBOL):
    return f"{symbol}{format_number(value)}"


def plain_number(value):
    value = float(value)
    return str(int(value)) if value.is_integer() else repr(value)


def parse_timestamp(value):
    if isinstance(value, datetime):
        moment = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        moment = datetime.fromisoformat(text)
    if moment.tzinfo is not None:
        moment = moment.astimezone()
    return moment


# ------------------- Template substitution -------------------
TOKEN_PATTERN = re.compile(r"\{\{(\w+)\}\}")

Segment = namedtuple("Segment", "kind text")  # kind: "literal" or "token"


def tokenize_template(template):
    """Split a template into literal and {{token}} segments in one pass."""
    segments = []
    pos = 0
    for m in TOKEN_PATTERN.finditer(template):
        if m.start() > pos:
            segments.append(Segment("literal", template[pos:m.start()]))
        segments.append(Segment("token", m.group(1)))
        pos = m.end()
    if pos < len(template):
        segments.append(Segment("literal", template[pos:]))
    return segments


def render_item_rows(items, currency_symbol=CURRENCY_SYMBOL):
    rows = []
    for index, item in enumerate(items, start=1):
        name = html.escape(str(item.product_name), quote=False)
        if item.size:
            name += f'<br><span class="text-xs text-gray-500">({html.escape(str(item.size), quote=False)})</span>'
        unit = html.escape(format_currency(item.unit_price, currency_symbol), quote=False)
        line = html.escape(format_currency(item.total_price, currency_symbol), quote=False)
        rows.append(f"""
      <tr class="border-b border-gray-200">
        <td class="py-2 px-3 text-left">{index}</td>
        <td class="py-2 px-3 text-left">{name}</td>
        <td class="py-2 px-3 text-center">{item.quantity}</td>
        <td class="py-2 px-3 text-right">{unit}</td>
        <td class="py-2 px-3 text-right font-medium">{line}</td>
      </tr>""")
    return "".join(rows)


def token_values(bill, items, settings, options=None):
    options = options or RenderOptions()
    symbol = options.currency_symbol
    created = parse_timestamp(bill.created_at)
    values = {
        "storeName": settings.store_name,
        "addressLine1": settings.address_line1,
        "addressLine2": settings.address_line2,
        "phone": settings.phone,
        "gstNumber": settings.gst_number,
        "billNumber": bill.bill_number,
        "date": created.strftime(options.date_format),
        "time": created.strftime(options.time_format),
        "paymentMode": str(bill.payment_mode).upper(),
        "subtotal": format_currency(bill.subtotal, symbol),
        "discountPercent": plain_number(bill.discount_percent),
        "discountAmount": format_currency(bill.discount_amount, symbol),
        "total": format_currency(bill.total, symbol),
        "cashAmount": format_currency(bill.cash_amount or 0, symbol),
        "upiAmount": format_currency(bill.upi_amount or 0, symbol),
    }
    values = {k: html.escape(str(v), quote=False) for k, v in values.items()}
    values["items"] = render_item_rows(items, symbol)
    return values


def fill_template(template, bill, items, settings, options=None):
    values = token_values(bill, items, settings, options)
    out = []
    for seg in tokenize_template(template):
        if seg.kind == "token":
            out.append(values[seg.text] if seg.text in values else "{{%s}}" % seg.text)
        else:
            out.append(seg.text)
    return "".join(out)


# ------------------- Markup tree -------------------
VOID_TAGS = {"br", "hr", "img", "meta", "link", "input", "col", "wbr"}
INLINE_TAGS = {"span", "b", "strong", "i", "em", "small", "u", "a", "br", "label", "code", "sup", "sub"}
SKIPPED_TAGS = {"style", "script", "head", "title", "img"}


class Node:
    def __init__(self, tag, attrs=None, parent=None):
        self.tag = tag
        self.attrs = attrs or {}
        self.parent = parent
        self.children = []

    @property
    def classes(self):
        return (self.attrs.get("class") or "").split()

    def elements(self):
        return [c for c in self.children if isinstance(c, Node)]

    def __repr__(self):
        return f"<Node {self.tag} children={len(self.children)}>"


class _TreeBuilder(HTMLParser):
    def __init__(self):
        super().__init__(convert_charrefs=True)
        self.root = Node("root")
        self.current = self.root

    def handle_starttag(self, tag, attrs):
        node = Node(tag, {k: (v if v is not None else "") for k, v in attrs}, self.current)
        self.current.children.append(node)
        if tag not in VOID_TAGS:
            self.current = node

    def handle_startendtag(self, tag, attrs):
        node = Node(tag, {k: (v if v is not None else "") for k, v in attrs}, self.current)
        self.current.children.append(node)

    def handle_endtag(self, tag):
        node = self.current
        while node is not self.root and node.tag != tag:
            node = node.parent
        if node is not self.root:
            self.current = node.parent

    def handle_data(self, data):
        self.current.children.append(data)


def parse_markup(markup):
    builder = _TreeBuilder()
    builder.feed(markup)
    builder.close()
    return builder.root


# ------------------- Baseline style sheet -------------------
@dataclass(frozen=True)
class Style:
    # inherited
    font_size: float = 16.0
    bold: bool = False
    color: str = "#111827"
    text_align: str = "left"
    # box
    display: str = "block"
    justify: str = None
    margin_top: float = 0
    margin_bottom: float = 0
    padding_top: float = 0
    padding_bottom: float = 0
    padding_left: float = 0
    padding_right: float = 0
    border_top: float = 0
    border_bottom: float = 0
    border_color: str = "#e5e7eb"
    background: str = None


BOX_RESET = dict(display="block", justify=None, margin_top=0, margin_bottom=0,
                 padding_top=0, padding_bottom=0, padding_left=0, padding_right=0,
                 border_top=0, border_bottom=0, border_color="#e5e7eb", background=None)

TAG_STYLES = {
    "h1": {"font_size": 24, "bold": True},
    "h2": {"font_size": 20, "bold": True},
    "h3": {"font_size": 18, "bold": True},
    "h4": {"bold": True},
    "b": {"bold": True},
    "strong": {"bold": True},
    "th": {"bold": True, "text_align": "center"},
    "small": {"font_size": 13},
    "hr": {"margin_top": 8, "margin_bottom": 8, "border_top": 1},
}

BASELINE_STYLES = {
    "text-left": {"text_align": "left"},
    "text-center": {"text_align": "center"},
    "text-right": {"text_align": "right"},
    "font-normal": {"bold": False},
    "font-medium": {"bold": True},
    "font-semibold": {"bold": True},
    "font-bold": {"bold": True},
    "font-extrabold": {"bold": True},
    "text-xs": {"font_size": 12},
    "text-sm": {"font_size": 14},
    "text-base": {"font_size": 16},
    "text-lg": {"font_size": 18},
    "text-xl": {"font_size": 20},
    "text-2xl": {"font_size": 24},
    "mb-1": {"margin_bottom": 4},
    "mb-2": {"margin_bottom": 8},
    "mb-4": {"margin_bottom": 16},
    "mb-6": {"margin_bottom": 24},
    "mt-2": {"margin_top": 8},
    "mt-4": {"margin_top": 16},
    "mt-8": {"margin_top": 32},
    "pt-2": {"padding_top": 8},
    "pt-4": {"padding_top": 16},
    "py-2": {"padding_top": 8, "padding_bottom": 8},
    "py-4": {"padding_top": 16, "padding_bottom": 16},
    "px-3": {"padding_left": 12, "padding_right": 12},
    "p-3": {"padding_top": 12, "padding_bottom": 12, "padding_left": 12, "padding_right": 12},
    "border-t": {"border_top": 1},
    "border-b": {"border_bottom": 1},
    "border-gray-200": {"border_color": "#e5e7eb"},
    "border-gray-300": {"border_color": "#d1d5db"},
    "text-gray-500": {"color": "#6b7280"},
    "text-gray-600": {"color": "#4b5563"},
    "text-gray-700": {"color": "#374151"},
    "text-gray-800": {"color": "#1f2937"},
    "text-gray-900": {"color": "#111827"},
    "text-red-600": {"color": "#dc2626"},
    "bg-gray-50": {"background": "#f9fafb"},
    "flex": {"display": "flex"},
    "justify-between": {"justify": "between"},
}


def _inline_style(declarations):
    props = {}
    for decl in declarations.split(";"):
        if ":" not in decl:
            continue
        name, value = (p.strip().lower() for p in decl.split(":", 1))
        if name == "text-align" and value in ("left", "center", "right"):
            props["text_align"] = value
        elif name == "font-weight":
            props["bold"] = value in ("bold", "bolder") or (value.isdigit() and int(value) >= 500)
        elif name == "font-size" and value.endswith("px"):
            try:
                props["font_size"] = float(value[:-2])
            except ValueError:
                pass
        elif name == "color":
            props["color"] = value
    return props


def compute_style(node, parent_style):
    """Inherit text properties from the parent, then apply tag defaults, classes and inline style."""
    props = dict(BOX_RESET)
    props.update(TAG_STYLES.get(node.tag, {}))
    for cls in node.classes:
        props.update(BASELINE_STYLES.get(cls, {}))
    if "style" in node.attrs:
        props.update(_inline_style(node.attrs["style"]))
    return replace(parent_style, **props)


# ------------------- Fonts -------------------
class FontBook:
    """TrueType faces per (size, bold); bold is faked when only a regular face loads."""

    def __init__(self, font_path=None, bold_font_path=None):
        self.regular = ([font_path] if font_path else []) + list(REGULAR_FONTS)
        self.bold = ([bold_font_path] if bold_font_path else []) + list(BOLD_FONTS)
        self._cache = {}

    def _load(self, candidates, size):
        for path in candidates:
            try:
                return ImageFont.truetype(path, size)
            except OSError:
                continue
        return None

    def get(self, size, bold=False):
        """Return (font, fake_bold)."""
        size = max(1, int(round(size)))
        key = (size, bold)
        if key not in self._cache:
            font = self._load(self.bold, size) if bold else None
            fake_bold = bold and font is None
            if font is None:
                font = self._load(self.regular, size) or ImageFont.load_default(size=size)
            self._cache[key] = (font, fake_bold)
        return self._cache[key]

    def measure(self, text, size, bold=False):
        font, fake_bold = self.get(size, bold)
        return font.getlength(text) + (1 if fake_bold and text else 0)


# ------------------- Layout -------------------
TextOp = namedtuple("TextOp", "x y text size bold color")
RectOp = namedtuple("RectOp", "x0 y0 x1 y1 fill")
LineOp = namedtuple("LineOp", "x0 y0 x1 y1 color width")

Layout = namedtuple("Layout", "ops height")

LINE_HEIGHT = 1.4
_BREAK = object()


def _inline_tokens(nodes, style):
    """Flatten inline content into (word, style, space_before) tokens and _BREAK markers."""
    runs = []

    def collect(children, st):
        for child in children:
            if isinstance(child, str):
                runs.append((child, st))
            elif child.tag == "br":
                runs.append((None, st))
            elif child.tag not in SKIPPED_TAGS:
                collect(child.children, compute_style(child, st))

    collect(nodes, style)
    tokens = []
    pending_space = False
    for text, st in runs:
        if text is None:
            tokens.append(_BREAK)
            pending_space = False
            continue
        pos = 0
        for m in re.finditer(r"\S+", text):
            if m.start() > pos:
                pending_space = True
            tokens.append((m.group(), st, pending_space))
            pending_space = False
            pos = m.end()
        if pos < len(text):
            pending_space = True
    return tokens


class LayoutEngine:
    """Block/inline flow layout of a markup tree into draw operations, in device pixels."""

    def __init__(self, fonts, scale=DEFAULT_RENDER_SCALE):
        self.fonts = fonts
        self.scale = scale
        self.ops = []

    def px(self, css):
        return css * self.scale

    def layout(self, root, x, y, width, style=None):
        style = style or Style()
        y = self._flow(root.children, style, x, y, width)
        return Layout(self.ops, y)

    # -- blocks --
    def _block(self, node, style, x, y, width):
        y += self.px(style.margin_top)
        top = y
        background_at = len(self.ops)
        y += self.px(style.border_top + style.padding_top)
        inner_x = x + self.px(style.padding_left)
        inner_w = max(width - self.px(style.padding_left + style.padding_right), 1)
        if node.tag == "table":
            y = self._table(node, style, inner_x, y, inner_w)
        elif node.tag == "hr":
            pass
        elif style.display == "flex":
            y = self._flex(node, style, inner_x, y, inner_w)
        else:
            y = self._flow(node.children, style, inner_x, y, inner_w)
        y += self.px(style.padding_bottom)
        if style.border_bottom:
            self.ops.append(LineOp(x, y, x + width, y, style.border_color, self.px(style.border_bottom)))
            y += self.px(style.border_bottom)
        if style.border_top:
            self.ops.insert(background_at, LineOp(x, top, x + width, top, style.border_color, self.px(style.border_top)))
        if style.background:
            self.ops.insert(background_at, RectOp(x, top, x + width, y, style.background))
        return y + self.px(style.margin_bottom)

    def _flow(self, children, style, x, y, width):
        pending = []
        for child in children:
            if isinstance(child, str) or child.tag in INLINE_TAGS:
                pending.append(child)
            elif child.tag in SKIPPED_TAGS:
                continue
            else:
                y = self._inline(pending, style, x, y, width)
                pending = []
                y = self._block(child, compute_style(child, style), x, y, width)
        return self._inline(pending, style, x, y, width)

    def _flex(self, node, style, x, y, width):
        items = []
        for child in node.children:
            if isinstance(child, Node):
                if child.tag not in SKIPPED_TAGS:
                    items.append(child)
            elif child.strip():
                anon = Node("span", parent=node)
                anon.children.append(child)
                items.append(anon)
        if not items:
            return y
        col_w = width / len(items)
        bottom = y
        for i, item in enumerate(items):
            align = style.text_align
            if style.justify == "between" and len(items) > 1:
                align = "left" if i == 0 else "right" if i == len(items) - 1 else "center"
            item_style = compute_style(item, replace(style, text_align=align))
            bottom = max(bottom, self._block(item, item_style, x + i * col_w, y, col_w))
        return bottom

    # -- inline --
    def _line_height(self, style):
        return self.px(style.font_size) * LINE_HEIGHT

    def _inline(self, nodes, style, x, y, width):
        tokens = _inline_tokens(nodes, style)
        if not tokens:
            return y
        lines, line, line_w = [], [], 0.0
        for tok in tokens:
            if tok is _BREAK:
                lines.append(line)
                line, line_w = [], 0.0
                continue
            word, st, space = tok
            size = self.px(st.font_size)
            space_w = self.fonts.measure(" ", size, st.bold) if (space and line) else 0.0
            word_w = self.fonts.measure(word, size, st.bold)
            if line and line_w + space_w + word_w > width:
                lines.append(line)
                line, line_w, space_w = [], 0.0, 0.0
            line.append((line_w + space_w, word, st))
            line_w += space_w + word_w
        if line:
            lines.append(line)

        for line in lines:
            if not line:
                y += self._line_height(style)
                continue
            last_x, last_word, last_st = line[-1]
            used = last_x + self.fonts.measure(last_word, self.px(last_st.font_size), last_st.bold)
            offset = 0.0
            if style.text_align == "center":
                offset = (width - used) / 2
            elif style.text_align == "right":
                offset = width - used
            height = max(self._line_height(st) for _, _, st in line)
            for word_x, word, st in line:
                size = self.px(st.font_size)
                self.ops.append(TextOp(x + offset + word_x, y + (height - size) / 2, word, size, st.bold, st.color))
            y += height
        return y

    # -- tables --
    def _table_rows(self, node, style):
        for child in node.elements():
            if child.tag == "tr":
                yield child, compute_style(child, style)
            elif child.tag in ("thead", "tbody", "tfoot"):
                section = compute_style(child, style)
                for row in child.elements():
                    if row.tag == "tr":
                        yield row, compute_style(row, section)

    def _natural_width(self, cell, style):
        widest, current = 0.0, 0.0
        for tok in _inline_tokens(cell.children, style):
            if tok is _BREAK:
                widest, current = max(widest, current), 0.0
                continue
            word, st, space = tok
            size = self.px(st.font_size)
            if space and current:
                current += self.fonts.measure(" ", size, st.bold)
            current += self.fonts.measure(word, size, st.bold)
        return max(widest, current) + self.px(style.padding_left + style.padding_right)

    def _table(self, node, style, x, y, width):
        rows = []
        for row, row_style in self._table_rows(node, style):
            cells = [(c, compute_style(c, row_style)) for c in row.elements() if c.tag in ("td", "th")]
            rows.append((row_style, cells))
        ncols = max((len(cells) for _, cells in rows), default=0)
        if not ncols:
            return y

        natural = [0.0] * ncols
        for _, cells in rows:
            for i, (cell, cell_style) in enumerate(cells):
                natural[i] = max(natural[i], self._natural_width(cell, cell_style))
        total = sum(natural)
        widths = [width * w / total for w in natural] if total else [width / ncols] * ncols

        for row_style, cells in rows:
            top = y
            background_at = len(self.ops)
            bottom = top
            cell_x = x
            for i, (cell, cell_style) in enumerate(cells):
                bottom = max(bottom, self._block(cell, cell_style, cell_x, top, widths[i]))
                cell_x += widths[i]
            if row_style.background:
                self.ops.insert(background_at, RectOp(x, top, x + width, bottom, row_style.background))
            if row_style.border_bottom:
                self.ops.append(LineOp(x, bottom, x + width, bottom, row_style.border_color,
                                       self.px(row_style.border_bottom)))
                bottom += self.px(row_style.border_bottom)
            y = bottom
        return y


def surface_width_px(scale=DEFAULT_RENDER_SCALE):
    return int(round(PAGE_WIDTH_MM * CSS_PX_PER_MM * scale))


def page_height_px(width_px):
    return width_px * PAGE_HEIGHT_MM / PAGE_WIDTH_MM


def layout_markup(markup, fonts, options=None):
    """Lay the markup out on a 210mm-wide surface with 20mm padding."""
    options = options or RenderOptions()
    engine = LayoutEngine(fonts, options.scale)
    width = surface_width_px(options.scale)
    pad = PAGE_PADDING_MM * CSS_PX_PER_MM * options.scale
    layout = engine.layout(parse_markup(markup), pad, pad, width - 2 * pad)
    return Layout(layout.ops, layout.height + pad)


# ------------------- Rasterization -------------------
def rasterize(layout, width_px, min_height_px, fonts):
    height = max(int(math.ceil(layout.height)), int(min_height_px))
    if width_px <= 0 or height <= 0:
        raise ValueError(f"Rendering surface has no drawable area ({width_px}x{height})")
    image = Image.new("RGB", (width_px, height), "#ffffff")
    try:
        draw = ImageDraw.Draw(image)
        for op in layout.ops:
            if isinstance(op, RectOp):
                draw.rectangle((op.x0, op.y0, op.x1, op.y1), fill=op.fill)
            elif isinstance(op, LineOp):
                w = max(1, int(round(op.width)))
                draw.line((op.x0, op.y0, op.x1, op.y1), fill=op.color, width=w)
            else:
                font, fake_bold = fonts.get(op.size, op.bold)
                draw.text((op.x, op.y), op.text, font=font, fill=op.color)
                if fake_bold:
                    draw.text((op.x + 1, op.y), op.text, font=font, fill=op.color)
    except Exception:
        image.close()
        raise
    return image


def encode_jpeg(image, quality=DEFAULT_JPEG_QUALITY):
    buf = io.BytesIO()
    image.save(buf, format="JPEG", quality=quality)
    return buf.getvalue()


# ------------------- Pagination / PDF -------------------
def paginate(image_height, page_height):
    """Top offsets of the page bands covering an image: ceil(H / P) contiguous bands, at least one."""
    count = max(1, math.ceil(round(image_height / page_height, 9)))
    return [i * page_height for i in range(count)]


def assemble_pdf(jpeg_bytes, width_px, height_px):
    page_w, page_h = A4
    img_h = height_px * page_w / width_px
    buf = io.BytesIO()
    c = canvas.Canvas(buf, pagesize=A4, pageCompression=1, invariant=1)
    image = ImageReader(io.BytesIO(jpeg_bytes))
    for offset in paginate(img_h, page_h):
        c.drawImage(image, 0, page_h - img_h + offset, width=page_w, height=img_h)
        c.showPage()
    c.save()
    return buf.getvalue()


def ensure_pdf_folder(folder=PDF_FOLDER):
    if not os.path.exists(folder):
        os.makedirs(folder)
    return folder


def bill_pdf_path(bill_number, folder=PDF_FOLDER):
    safe = str(bill_number).replace("/", "-").replace("\\", "-")
    return os.path.join(folder, f"{safe}.pdf")


def build_bill_pdf(template, bill, items, settings, options=None):
    """Render a bill to PDF bytes. Any failure is logged and raised as PDFGenerationError."""
    options = options or RenderOptions()
    try:
        markup = fill_template(template, bill, items, settings, options)
        fonts = FontBook(options.font_path, options.bold_font_path)
        layout = layout_markup(markup, fonts, options)
        width = surface_width_px(options.scale)
        image = rasterize(layout, width, int(page_height_px(width)), fonts)
        try:
            jpeg = encode_jpeg(image, options.jpeg_quality)
            size = image.size
        finally:
            image.close()
        return assemble_pdf(jpeg, *size)
    except Exception:
        logging.exception(f"Error generating PDF from HTML for bill {bill.bill_number}")
        raise PDFGenerationError() from None


def generate_pdf_from_html(template, bill, items, settings, folder=PDF_FOLDER, options=None):
    data = build_bill_pdf(template, bill, items, settings, options)
    ensure_pdf_folder(folder)
    pdf_file = bill_pdf_path(bill.bill_number, folder)
    with open(pdf_file, "wb") as f:
        f.write(data)
    logging.info(f"Bill {bill.bill_number} saved as {pdf_file}")
    return pdf_file


def load_template(template_path):
    try:
        with open(template_path, "r", encoding="utf-8") as f:
            return f.read()
    except (OSError, UnicodeDecodeError):
        logging.exception(f"Error loading template file {template_path}")
        raise TemplateLoadError() from None


def generate_pdf_from_file(bill, items, settings, template_path=None, folder=PDF_FOLDER, options=None):
    template = load_template(template_path) if template_path else SAMPLE_BILL_TEMPLATE
    return generate_pdf_from_html(template, bill, items, settings, folder=folder, options=options)


def merge_pdfs(pdf_list, output_file):
    writer = PdfWriter()
    for pdf_path in pdf_list:
        if not os.path.exists(pdf_path):
            logging.warning(f"Skipping missing PDF {pdf_path}")
            continue
        reader = PdfReader(pdf_path)
        for page in reader.pages:
            writer.add_page(page)
    with open(output_file, "wb") as f:
        writer.write(f)
    logging.info(f"Merged {len(pdf_list)} PDFs into {output_file}")
    return output_file


def pdf_page_count(pdf_path):
    return len(PdfReader(pdf_path).pages)


# ------------------- Text rendering (receipt preview) -------------------
def _cell_text(node):
    words = []
    broken = False
    for tok in _inline_tokens(node.children, Style()):
        if tok is _BREAK:
            broken = True
            continue
        word, _, space = tok
        if space or broken or not words:
            words.append(word)
        else:
            words[-1] += word
        broken = False
    return " ".join(words)


def _place(text, align, width):
    if not width or len(text) >= width:
        return text
    if align == "center":
        return text.center(width).rstrip()
    if align == "right":
        return text.rjust(width)
    return text


class _TextRenderer:
    def __init__(self, width=None):
        self.width = width
        self.lines = []

    def emit(self, text, align):
        if self.width:
            for piece in textwrap.wrap(text, self.width) or [""]:
                self.lines.append(_place(piece, align, self.width))
        else:
            self.lines.append(text)

    def inline(self, nodes, style):
        words = []
        for tok in _inline_tokens(nodes, style):
            if tok is _BREAK:
                self.emit(" ".join(words), style.text_align)
                words = []
                continue
            word, _, space = tok
            if space or not words:
                words.append(word)
            else:
                words[-1] += word
        if words:
            self.emit(" ".join(words), style.text_align)

    def flow(self, children, style):
        pending = []
        for child in children:
            if isinstance(child, str) or child.tag in INLINE_TAGS:
                pending.append(child)
            elif child.tag in SKIPPED_TAGS:
                continue
            else:
                self.inline(pending, style)
                pending = []
                self.block(child, compute_style(child, style))
        self.inline(pending, style)

    def block(self, node, style):
        if node.tag == "hr":
            self.lines.append("-" * (self.width or 40))
        elif node.tag == "table":
            for child in node.elements():
                rows = child.elements() if child.tag in ("thead", "tbody", "tfoot") else [child]
                for row in rows:
                    if row.tag == "tr":
                        cells = [_cell_text(c) for c in row.elements() if c.tag in ("td", "th")]
                        self.emit(" | ".join(cells), "left")
        elif style.display == "flex":
            parts = [_cell_text(c) if isinstance(c, Node) else " ".join(c.split())
                     for c in node.children if isinstance(c, Node) or c.strip()]
            parts = [p for p in parts if p]
            if self.width and len(parts) == 2 and style.justify == "between":
                gap = self.width - len(parts[0]) - len(parts[1])
                if gap >= 1:
                    self.lines.append(parts[0] + " " * gap + parts[1])
                else:
                    self.emit(parts[0], "left")
                    self.emit(parts[1], "right")
            elif parts:
                self.emit(" ".join(parts), style.text_align)
        else:
            self.flow(node.children, style)


def render_text(markup, width=None):
    """Plain-text rendering of populated bill markup, one line per block, rows joined with ' | '."""
    renderer = _TextRenderer(width)
    renderer.flow(parse_markup(markup).children, Style())
    return "\n".join(line.rstrip() for line in renderer.lines)


def render_bill_text(template, bill, items, settings, options=None, width=None):
    return render_text(fill_template(template, bill, items, settings, options), width)


# ------------------- Sample template -------------------
SAMPLE_BILL_TEMPLATE = """
<div class="max-w-2xl mx-auto bg-white">
  <!-- Header -->
  <div class="text-center mb-6">
    <h1 class="text-2xl font-bold text-gray-800">{{storeName}}</h1>
    <p class="text-sm text-gray-600">{{addressLine1}}</p>
    <p class="text-sm text-gray-600">{{addressLine2}}</p>
    <p class="text-sm text-gray-600">Phone: {{phone}}</p>
    <p class="text-sm text-gray-600">GST: {{gstNumber}}</p>
  </div>

  <!-- Bill Info -->
  <div class="border-t border-b border-gray-200 py-4 mb-4">
    <div class="flex justify-between items-center">
      <div>
        <p class="font-medium">Bill No: {{billNumber}}</p>
        <p class="text-sm text-gray-600">Date: {{date}} {{time}}</p>
      </div>
      <div class="text-right">
        <p class="font-medium">Payment: {{paymentMode}}</p>
      </div>
    </div>
  </div>

  <!-- Items Table -->
  <table class="w-full border-collapse mb-6">
    <thead>
      <tr class="bg-gray-50 border-b border-gray-200">
        <th class="py-2 px-3 text-left text-sm font-medium">#</th>
        <th class="py-2 px-3 text-left text-sm font-medium">Item</th>
        <th class="py-2 px-3 text-center text-sm font-medium">Qty</th>
        <th class="py-2 px-3 text-right text-sm font-medium">Rate</th>
        <th class="py-2 px-3 text-right text-sm font-medium">Amount</th>
      </tr>
    </thead>
    <tbody>
      {{items}}
    </tbody>
  </table>

  <!-- Totals -->
  <div class="border-t border-gray-200 pt-4">
    <div class="flex justify-between mb-2">
      <span>Subtotal:</span>
      <span>{{subtotal}}</span>
    </div>
    <div class="flex justify-between mb-2 text-red-600">
      <span>Discount ({{discountPercent}}%):</span>
      <span>-{{discountAmount}}</span>
    </div>
    <div class="flex justify-between text-lg font-bold border-t pt-2">
      <span>Total:</span>
      <span>{{total}}</span>
    </div>
  </div>

  <!-- Payment Details (for mixed payments) -->
  <div class="mt-4 text-sm text-gray-600">
    <div class="flex justify-between">
      <span>Cash:</span>
      <span>{{cashAmount}}</span>
    </div>
    <div class="flex justify-between">
      <span>UPI:</span>
      <span>{{upiAmount}}</span>
    </div>
  </div>

  <!-- Footer -->
  <div class="text-center mt-8 text-sm text-gray-500">
    <p>Thank you for your business!</p>
    <p>Visit again</p>
  </div>
</div>
"""


# ------------------- Command line -------------------
def _store_and_options(settings_path):
    settings = load_settings(settings_path)
    return settings, StoreSettings.from_dict(settings), RenderOptions.from_dict(settings)


def cmd_render(args):
    settings, store, options = _store_and_options(args.settings)
    template = load_template(args.template) if args.template else SAMPLE_BILL_TEMPLATE
    folder = args.out_dir or settings.get("pdfFolder") or PDF_FOLDER
    written = []
    for bill_file in args.bills:
        bill, items = load_bill_file(bill_file)
        pdf_file = generate_pdf_from_html(template, bill, items, store, folder=folder, options=options)
        print(f"{pdf_file} ({pdf_page_count(pdf_file)} page(s))")
        written.append(pdf_file)
    if args.merge:
        merge_pdfs(written, args.merge)
        print(f"Merged PDFs saved as {args.merge}")
    return 0


def cmd_preview(args):
    settings, store, options = _store_and_options(args.settings)
    template = load_template(args.template) if args.template else SAMPLE_BILL_TEMPLATE
    width = args.width or PAPER_COLUMNS.get(settings.get("paperWidth"), PAPER_COLUMNS["80mm"])
    bill, items = load_bill_file(args.bill)
    print(render_bill_text(template, bill, items, store, options, width=width))
    return 0


def build_parser():
    parser = argparse.ArgumentParser(prog="bill-renderer", description="Render POS bills to PDF")
    parser.add_argument("--log-file", default=LOG_FILE, help="Log file path")
    sub = parser.add_subparsers(dest="command", required=True)

    render = sub.add_parser("render", help="Render bill JSON files to <billNumber>.pdf")
    render.add_argument("bills", nargs="+", help="Bill JSON file(s)")
    render.add_argument("--template", help="HTML template (defaults to the built-in sample)")
    render.add_argument("--settings", default=SETTINGS_FILE, help="Settings JSON file")
    render.add_argument("--out-dir", help="Output folder (defaults to settings pdfFolder)")
    render.add_argument("--merge", help="Also merge all rendered bills into this PDF")
    render.set_defaults(func=cmd_render)

    preview = sub.add_parser("preview", help="Print a plain-text receipt preview")
    preview.add_argument("bill", help="Bill JSON file")
    preview.add_argument("--template", help="HTML template (defaults to the built-in sample)")
    preview.add_argument("--settings", default=SETTINGS_FILE, help="Settings JSON file")
    preview.add_argument("--width", type=int, help="Columns (defaults to the paperWidth setting)")
    preview.set_defaults(func=cmd_preview)
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    setup_logging(args.log_file)
    try:
        return args.func(args)
    except BillRenderError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


# ------------------- Run -------------------
if __name__ == "__main__":
    sys.exit(main())
