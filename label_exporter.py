#!/usr/bin/env python3
# Copyright (C) 2026  Lesco Design & Mfg. Co., Inc.
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program.  If not, see <https://www.gnu.org/licenses/>.
"""
Label Sheet Exporter — Column Packing + SVG / PDF / LightBurn Output
====================================================================
Turns a CSV list of coloured labels into files for the laser cutter and
the print shop, all built from one shared placement plan.

Architecture
------------
  parse_csv()          Read label rows and expand each row by its quantity.
  fit_text_size()      Shrink a font size until one text line fits its label.
  PagePacker           Single-pass column-wrap packer → PlacementPlan.
  SVGRenderer          One SVG page per plan page (laser driver).
  PDFRenderer          One paged PDF per group, with header and signature
                         footer; each page is rasterised by PillowRasterizer.
  LightBurnRenderer    One .lbrn2 project per plan page (cut + scan layers).
  export_labels()      Group by (text colour, background colour), pack and
                         render every group on a thread pool, zip the result.

Usage
-----
    python label_exporter.py INPUT.csv
    python label_exporter.py INPUT.csv --width 600 --height 300 --columns 3
    python label_exporter.py INPUT.csv --format svg lbrn2 -o my_project

Input CSV Format
----------------
    labelWidth (mm),labelHeight (mm),textColor,backgroundColor,quantity,
    FirstTextLine,FirstTextSize,SecondTextLine,SecondTextSize

Dependencies
------------
    svgwrite, fonttools, reportlab, Pillow
"""

import argparse
import asyncio
import configparser
import csv
import io
import math
import os
import threading
import xml.etree.ElementTree as ET
import zipfile
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import svgwrite
from fontTools.pens.basePen import BasePen
from fontTools.pens.boundsPen import BoundsPen
from fontTools.pens.transformPen import TransformPen
from fontTools.ttLib import TTFont, TTLibError
from PIL import Image, ImageColor, ImageDraw, ImageFont
from reportlab.lib.units import mm
from reportlab.lib.utils import ImageReader
from reportlab.pdfbase.pdfmetrics import stringWidth
from reportlab.pdfgen import canvas as pdf_canvas

# ============================================================================
# CONFIGURATION
# ============================================================================

DEFAULT_CONFIG_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)),
                                   'config.ini')

DEFAULT_SETTINGS: Dict[str, Dict[str, str]] = {
    'canvas': {
        'max_width': '600',
        'max_height': '300',
        'columns_per_canvas': '3',
        'column_spacing': '6',
    },
    'text': {
        'padding': '2',
        'line_gap': '10',
        'min_font_size': '1.0',
        'font_family': 'Arial',
        'font_paths': ', '.join([
            'arialbd.ttf',
            'arial.ttf',
            '/usr/share/fonts/truetype/liberation/LiberationSans-Bold.ttf',
            '/usr/share/fonts/truetype/dejavu/DejaVuSans-Bold.ttf',
            '/System/Library/Fonts/Helvetica.ttc',
            'C:\\Windows\\Fonts\\arialbd.ttf',
        ]),
    },
    'color_names': {
        'black': '#000000',
        'white': '#FFFFFF',
        'turquoise': '#aeddd3',
        'yellow': '#fce204',
    },
    'document': {
        'margin': '10',
        'header_height': '40',
        'footer_height': '40',
        'header_image': '',
        'header_image_width': '100',
        'header_image_height': '20',
        'header_title': 'Label Proof',
        'footer_line_1': '_________________________',
        'footer_line_2': 'Client Signature',
        'footer_font': 'Helvetica',
        'footer_font_size': '24',
        'raster_dpi': '4',
    },
    'output': {
        'directory': 'output',
        'formats': 'svg, pdf, lbrn2',
    },
}


def load_config(path: Optional[str] = None) -> configparser.ConfigParser:
    """
    Build the run configuration from built-in defaults plus an INI file.

    Parameters
    ----------
    path : INI file to overlay on the defaults.  When omitted, config.ini
           beside this module is used if it exists.

    Returns
    -------
    ConfigParser with every section of DEFAULT_SETTINGS present.

    Raises
    ------
    FileNotFoundError if an explicit *path* does not exist.
    """
    cfg = configparser.ConfigParser()
    cfg.read_dict(DEFAULT_SETTINGS)
    if path is not None and not os.path.exists(path):
        raise FileNotFoundError(path)
    config_path = path or DEFAULT_CONFIG_PATH
    if os.path.exists(config_path):
        cfg.read(config_path, encoding='utf-8')
        print(f"  → Loaded config: {config_path}")
    return cfg


CFG = load_config()

# ============================================================================
# ERRORS
# ============================================================================

class LabelExportError(Exception):
    """Base class for every failure raised by the export engine."""


class MalformedRowError(LabelExportError):
    """A CSV row (or header) lacks the columns a label needs."""


class MetricsUnavailableError(LabelExportError):
    """The text metrics provider could not measure a string."""


class RenderError(LabelExportError):
    """A renderer could not serialise a page."""


class RasterConversionError(RenderError):
    """A page could not be rasterised for the PDF document."""


class ArchiveWriteError(LabelExportError):
    """The output archive could not be written."""

# ============================================================================
# DATA STRUCTURES
# ============================================================================

@dataclass(frozen=True)
class LabelRecord:
    """
    One physical label; CSV quantities are already expanded.

    Attributes
    ----------
    width            : Label width in millimetres.
    height           : Label height in millimetres.
    text_color       : Colour name or hex value for the text.
    background_color : Colour name or hex value for the label face.
    first_line       : Main text line (never empty).
    second_line      : Optional second text line ('' when absent).
    first_line_size  : Requested size of the first line, None for "auto".
    second_line_size : Requested size of the second line, None for "auto".
    """

    width: float
    height: float
    text_color: str
    background_color: str
    first_line: str
    second_line: str = ''
    first_line_size: Optional[float] = None
    second_line_size: Optional[float] = None

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"Label size must be positive, "
                             f"got {self.width}x{self.height} mm")
        if not self.first_line:
            raise ValueError("Label first line must not be empty")

    @property
    def has_second_line(self) -> bool:
        return bool(self.second_line)

    @property
    def requested_first_size(self) -> float:
        """Starting size for the first line; defaults to the label height."""
        return self.first_line_size if self.first_line_size else self.height

    @property
    def requested_second_size(self) -> float:
        """Starting size for the second line; defaults to the first line's."""
        if self.second_line_size:
            return self.second_line_size
        return self.requested_first_size

    @property
    def area(self) -> float:
        return self.width * self.height

    @property
    def group_key(self) -> Tuple[str, str]:
        return (self.text_color, self.background_color)


@dataclass(frozen=True)
class CanvasSpec:
    """
    Layout bounds for one export run, captured once and never mutated.

    Attributes
    ----------
    max_width          : Canvas width in mm.
    max_height         : Canvas height in mm.
    columns_per_canvas : Number of column bands the width is divided into.
    column_spacing     : Gap (mm) inserted when the packer crosses a band.
    """

    max_width: float = 600.0
    max_height: float = 300.0
    columns_per_canvas: int = 3
    column_spacing: float = 6.0

    def __post_init__(self) -> None:
        if self.max_width <= 0 or self.max_height <= 0:
            raise ValueError(f"Canvas size must be positive, "
                             f"got {self.max_width}x{self.max_height} mm")
        if self.columns_per_canvas < 1:
            raise ValueError("columns_per_canvas must be at least 1")
        if self.column_spacing < 0:
            raise ValueError("column_spacing must not be negative")

    @property
    def column_threshold(self) -> float:
        """Width of one column band in mm."""
        return self.max_width / self.columns_per_canvas

    @property
    def area(self) -> float:
        return self.max_width * self.max_height

    @classmethod
    def from_config(cls, cfg: configparser.ConfigParser) -> 'CanvasSpec':
        section = cfg['canvas']
        return cls(max_width=section.getfloat('max_width'),
                   max_height=section.getfloat('max_height'),
                   columns_per_canvas=section.getint('columns_per_canvas'),
                   column_spacing=section.getfloat('column_spacing'))


@dataclass(frozen=True)
class PlacedLabel:
    """
    A label positioned on a page, with the font sizes chosen for it.

    (x, y) is the top-left corner in mm.  first_line_y / second_line_y are
    the vertical centres of each text line, so renderers never recompute
    geometry.  A fitted size of 0 means the line does not fit at any size.
    """

    record: LabelRecord
    x: float
    y: float
    first_size: float
    second_size: Optional[float]
    first_line_y: float
    second_line_y: Optional[float] = None
    oversized: bool = False

    @property
    def right(self) -> float:
        return self.x + self.record.width

    @property
    def bottom(self) -> float:
        return self.y + self.record.height

    @property
    def center_x(self) -> float:
        return self.x + self.record.width / 2

    @property
    def center_y(self) -> float:
        return self.y + self.record.height / 2

    def overlaps(self, other: 'PlacedLabel') -> bool:
        return not (self.right <= other.x or other.right <= self.x or
                    self.bottom <= other.y or other.bottom <= self.y)

    def text_lines(self) -> List[Tuple[str, float, float]]:
        """Return (text, fitted size, centre y) for each line, top first."""
        lines = [(self.record.first_line, self.first_size, self.first_line_y)]
        if self.second_size is not None:
            lines.append((self.record.second_line, self.second_size,
                          self.second_line_y))
        return lines


@dataclass(frozen=True)
class Page:
    """
    One canvas worth of placed labels.

    Attributes
    ----------
    index  : 1-based page number within its plan.
    width  : Canvas width in mm.
    height : Canvas height in mm.
    labels : Placed labels in packing order.
    """

    index: int
    width: float
    height: float
    labels: Tuple[PlacedLabel, ...]

    @property
    def efficiency(self) -> float:
        """Percentage of the canvas area covered by labels, in [0, 100]."""
        used_area = sum(p.record.area for p in self.labels)
        total_area = self.width * self.height
        return (used_area / total_area * 100) if total_area > 0 else 0


@dataclass(frozen=True)
class PlacementPlan:
    """Packer output: every page of one group, ready for any renderer."""

    canvas: CanvasSpec
    pages: Tuple[Page, ...]

    @property
    def label_count(self) -> int:
        return sum(len(page.labels) for page in self.pages)


@dataclass(frozen=True)
class RenderSettings:
    """Renderer and text options derived from the [text]/[document] config."""

    padding: float = 2.0
    line_gap: float = 10.0
    min_font_size: float = 1.0
    font_family: str = 'Arial'
    font_paths: Tuple[str, ...] = ()
    palette: Mapping[str, str] = field(default_factory=dict)
    margin: float = 10.0
    header_height: float = 40.0
    footer_height: float = 40.0
    header_image: str = ''
    header_image_width: float = 100.0
    header_image_height: float = 20.0
    header_title: str = 'Label Proof'
    footer_lines: Tuple[str, ...] = ('_________________________',
                                     'Client Signature')
    footer_font: str = 'Helvetica'
    footer_font_size: float = 24.0
    raster_dpi: float = 4.0

    def visible_size(self, size: float) -> float:
        """Font size actually drawn: fitted sizes below the floor are raised."""
        return max(size, self.min_font_size)

    @classmethod
    def from_config(cls, cfg: configparser.ConfigParser) -> 'RenderSettings':
        text = cfg['text']
        doc = cfg['document']
        font_paths = tuple(p.strip() for p in text.get('font_paths', '').split(',')
                           if p.strip())
        footer_lines = tuple(line for line in (doc.get('footer_line_1', ''),
                                               doc.get('footer_line_2', ''))
                             if line)
        return cls(padding=text.getfloat('padding'),
                   line_gap=text.getfloat('line_gap'),
                   min_font_size=text.getfloat('min_font_size'),
                   font_family=text.get('font_family'),
                   font_paths=font_paths,
                   palette=dict(cfg['color_names']),
                   margin=doc.getfloat('margin'),
                   header_height=doc.getfloat('header_height'),
                   footer_height=doc.getfloat('footer_height'),
                   header_image=doc.get('header_image', ''),
                   header_image_width=doc.getfloat('header_image_width'),
                   header_image_height=doc.getfloat('header_image_height'),
                   header_title=doc.get('header_title', ''),
                   footer_lines=footer_lines,
                   footer_font=doc.get('footer_font'),
                   footer_font_size=doc.getfloat('footer_font_size'),
                   raster_dpi=doc.getfloat('raster_dpi'))


def resolve_color(name: str, palette: Mapping[str, str]) -> str:
    """
    Map a colour name to its value via *palette* (case-insensitive).

    Unknown names are returned unchanged; they are assumed to already be a
    valid colour value such as '#ff0000'.
    """
    return palette.get(name.strip().lower(), name)

# ============================================================================
# TEXT METRICS
# ============================================================================

@dataclass(frozen=True)
class TextMetrics:
    """Rendered extent of one text line, in the same unit as the font size."""

    width: float
    height: float


Contour = List[Tuple[float, float]]


def _box_outline(measured: TextMetrics) -> List[Contour]:
    half_w = measured.width / 2
    half_h = measured.height / 2
    return [[(-half_w, -half_h), (half_w, -half_h),
             (half_w, half_h), (-half_w, half_h)]]


class MonospaceMetrics:
    """
    Fixed-pitch text measurement, used when no font file is available.

    Every character is CHAR_WIDTH × size wide with CHAR_SPACING × size
    between characters; the line height equals the font size.
    """

    CHAR_WIDTH = 0.6
    CHAR_SPACING = 0.1

    font_path = None

    def measure(self, text: str, font_size: float) -> TextMetrics:
        if not text or font_size <= 0:
            return TextMetrics(0.0, max(font_size, 0.0))
        pitch = font_size * (self.CHAR_WIDTH + self.CHAR_SPACING)
        width = len(text) * pitch - font_size * self.CHAR_SPACING
        return TextMetrics(width, font_size)

    def outline(self, text: str, font_size: float) -> List[Contour]:
        """No glyph shapes are known, so the outline is the measured box."""
        return _box_outline(self.measure(text, font_size))


class _ContourPen(BasePen):
    """
    Collect glyph contours as closed polylines.

    Cubic and quadratic segments are flattened into CURVE_STEPS straight
    segments each.
    """

    CURVE_STEPS = 8

    def __init__(self, glyph_set=None) -> None:
        super().__init__(glyph_set)
        self.contours: List[Contour] = []
        self._points: Contour = []

    def _moveTo(self, pt):
        self._points = [pt]

    def _lineTo(self, pt):
        self._points.append(pt)

    def _curveToOne(self, pt1, pt2, pt3):
        x0, y0 = self._getCurrentPoint()
        for step in range(1, self.CURVE_STEPS + 1):
            t = step / self.CURVE_STEPS
            mt = 1 - t
            self._points.append((
                mt ** 3 * x0 + 3 * mt * mt * t * pt1[0]
                + 3 * mt * t * t * pt2[0] + t ** 3 * pt3[0],
                mt ** 3 * y0 + 3 * mt * mt * t * pt1[1]
                + 3 * mt * t * t * pt2[1] + t ** 3 * pt3[1],
            ))

    def _qCurveToOne(self, pt1, pt2):
        x0, y0 = self._getCurrentPoint()
        for step in range(1, self.CURVE_STEPS + 1):
            t = step / self.CURVE_STEPS
            mt = 1 - t
            self._points.append((
                mt * mt * x0 + 2 * mt * t * pt1[0] + t * t * pt2[0],
                mt * mt * y0 + 2 * mt * t * pt1[1] + t * t * pt2[1],
            ))

    def _closePath(self):
        points = self._points
        if len(points) > 1 and points[-1] == points[0]:
            points = points[:-1]
        if len(points) > 2:
            self.contours.append(points)
        self._points = []

    _endPath = _closePath


class FontMetrics:
    """
    Measure text against the outlines of a TrueType font via fontTools.

    Width is the sum of glyph advances; height is
    ``max(font_size, ascent + descent)`` taken from the actual glyph bounds
    of the measured string.  Glyph data is cached per glyph and guarded by
    a lock so one instance can be shared by concurrent export groups.
    """

    def __init__(self, font_path: str) -> None:
        """
        Load *font_path*.

        Raises
        ------
        MetricsUnavailableError if the file cannot be read as a font.
        """
        try:
            self.font = TTFont(font_path, fontNumber=0)
            self._units_per_em = self.font['head'].unitsPerEm
            self._cmap = self.font.getBestCmap() or {}
            self._glyph_set = self.font.getGlyphSet()
        except (OSError, TTLibError, KeyError) as exc:
            raise MetricsUnavailableError(
                f"Cannot load font {font_path}: {exc}") from exc
        self.font_path = font_path
        self._glyph_cache: Dict[str, Tuple[float, Optional[Tuple[float, ...]]]] = {}
        self._lock = threading.Lock()

    def _glyph_info(self, char: str) -> Tuple[float, Optional[Tuple[float, ...]]]:
        glyph_name = self._cmap.get(ord(char))
        if glyph_name is None or glyph_name not in self._glyph_set:
            # Missing glyphs advance half an em
            return self._units_per_em * 0.5, None
        if glyph_name not in self._glyph_cache:
            glyph = self._glyph_set[glyph_name]
            pen = BoundsPen(self._glyph_set)
            glyph.draw(pen)
            self._glyph_cache[glyph_name] = (glyph.width, pen.bounds)
        return self._glyph_cache[glyph_name]

    def measure(self, text: str, font_size: float) -> TextMetrics:
        if not text or font_size <= 0:
            return TextMetrics(0.0, max(font_size, 0.0))

        advance = 0.0
        y_min: Optional[float] = None
        y_max: Optional[float] = None
        with self._lock:
            try:
                for char in text:
                    glyph_advance, bounds = self._glyph_info(char)
                    advance += glyph_advance
                    if bounds is None:
                        continue
                    y_min = bounds[1] if y_min is None else min(y_min, bounds[1])
                    y_max = bounds[3] if y_max is None else max(y_max, bounds[3])
            except (KeyError, TypeError, ValueError) as exc:
                raise MetricsUnavailableError(
                    f"Cannot measure {text!r} with {self.font_path}: {exc}") from exc

        scale = font_size / self._units_per_em
        ink_height = 0.0
        if y_min is not None and y_max is not None:
            ink_height = (max(y_max, 0.0) - min(y_min, 0.0)) * scale
        return TextMetrics(advance * scale, max(font_size, ink_height))

    def outline(self, text: str, font_size: float) -> List[Contour]:
        """
        Return the glyph contours of *text* as polylines centred on (0, 0).

        Glyphs are laid out on their advances and drawn through a
        TransformPen with matrix ``(scale, 0, 0, -scale, x, 0)``, so y grows
        downwards like the canvas.  The result is centred horizontally on the
        total advance and vertically on the ink bounds.  Falls back to the
        measured box when the string has no visible glyphs.

        Raises
        ------
        MetricsUnavailableError if a glyph cannot be drawn.
        """
        if not text or font_size <= 0:
            return _box_outline(self.measure(text, font_size))

        scale = font_size / self._units_per_em
        with self._lock:
            try:
                glyphs = []
                total_advance = 0.0
                for char in text:
                    glyph_advance, bounds = self._glyph_info(char)
                    glyph_name = self._cmap.get(ord(char)) if bounds else None
                    glyphs.append((glyph_name, glyph_advance))
                    total_advance += glyph_advance

                pen = _ContourPen(self._glyph_set)
                current_x = -total_advance * scale / 2
                for glyph_name, glyph_advance in glyphs:
                    if glyph_name is not None:
                        self._glyph_set[glyph_name].draw(
                            TransformPen(pen, (scale, 0, 0, -scale, current_x, 0)))
                    current_x += glyph_advance * scale
            except (KeyError, TypeError, ValueError) as exc:
                raise MetricsUnavailableError(
                    f"Cannot outline {text!r} with {self.font_path}: {exc}") from exc

        if not pen.contours:
            return _box_outline(self.measure(text, font_size))
        ys = [y for contour in pen.contours for _, y in contour]
        mid_y = (min(ys) + max(ys)) / 2
        return [[(x, y - mid_y) for x, y in contour] for contour in pen.contours]


def find_font(font_paths: Iterable[str]) -> Optional[FontMetrics]:
    """
    Return FontMetrics for the first loadable path in *font_paths*.

    Paths that do not exist or fail to load are skipped; None is returned
    when nothing usable is found.
    """
    for font_path in font_paths:
        if not os.path.exists(font_path):
            continue
        try:
            metrics = FontMetrics(font_path)
        except MetricsUnavailableError as exc:
            print(f"  ⚠️  Warning: {exc}")
            continue
        print(f"  → Loaded font: {font_path}")
        return metrics
    return None


def default_metrics(settings: RenderSettings):
    """Font-backed metrics when a font is found, else the monospace model."""
    metrics = find_font(settings.font_paths)
    if metrics is None:
        print("  ⚠️  Warning: No suitable font found, "
              "text will be measured as monospace")
        return MonospaceMetrics()
    return metrics

# ============================================================================
# TEXT FIT
# ============================================================================

def _measure(metrics, text: str, font_size: float) -> TextMetrics:
    try:
        return metrics.measure(text, font_size)
    except MetricsUnavailableError:
        raise
    except Exception as exc:
        raise MetricsUnavailableError(
            f"Text metrics failed for {text!r} at size {font_size}: {exc}") from exc


def _outline(metrics, text: str, font_size: float) -> List[Contour]:
    """Text contours from *metrics*, or its measured box if it has no outlines."""
    if not hasattr(metrics, 'outline'):
        return _box_outline(_measure(metrics, text, font_size))
    try:
        return metrics.outline(text, font_size)
    except MetricsUnavailableError:
        raise
    except Exception as exc:
        raise MetricsUnavailableError(
            f"Text outline failed for {text!r} at size {font_size}: {exc}") from exc


def fit_text_size(text: str, box_width: float, box_height: float,
                  padding: float, initial_size: float, metrics) -> float:
    """
    Shrink a font size until *text* fits a padded box.

    Starting at *initial_size*, the size drops by 0.5 while the measured
    width exceeds ``box_width - padding``, then by 1 while the measured
    height exceeds ``box_height - padding``.

    Parameters
    ----------
    text         : Single line of text.
    box_width    : Label width in mm.
    box_height   : Label height in mm.
    padding      : Total padding subtracted from each box dimension.
    initial_size : Size to start the search from.
    metrics      : Text metrics provider with ``measure(text, size)``.

    Returns
    -------
    The fitted size, or 0.0 when no positive size satisfies both bounds.

    Raises
    ------
    MetricsUnavailableError if the provider fails.
    """
    available_width = box_width - padding
    available_height = box_height - padding
    font_size = float(initial_size)
    measured = _measure(metrics, text, font_size)

    while measured.width > available_width and font_size > 0:
        font_size -= 0.5
        measured = _measure(metrics, text, font_size)

    while measured.height > available_height and font_size > 0:
        font_size -= 1
        measured = _measure(metrics, text, font_size)

    return font_size if font_size > 0 else 0.0

# ============================================================================
# PAGE PACKER
# ============================================================================

class PagePacker:
    """
    Deterministic single-pass column-wrap packer.

    Algorithm overview
    ------------------
    Labels are stacked top to bottom in input order.  When the next label
    would cross the bottom edge the packer starts a new column to the
    right of the widest label in the current one, inserting
    ``column_spacing`` each time the cursor reaches the next column band
    (``max_width / columns_per_canvas``).  When the next label would cross
    the right edge the page is closed and a new one started.

    Every label is text-fitted once here; the resulting PlacementPlan is the
    only source of geometry for all renderers.

    Labels larger than the canvas are not rejected: each one is placed
    alone at the origin of its own page and flagged ``oversized``.
    """

    def __init__(self, canvas: CanvasSpec, metrics,
                 padding: float = 2.0, line_gap: float = 10.0) -> None:
        """
        Parameters
        ----------
        canvas   : Page bounds and column settings for this run.
        metrics  : Text metrics provider used by the fit.
        padding  : Padding (mm) passed to fit_text_size.
        line_gap : Gap (mm) between the two lines of a two-line label.
        """
        self.canvas = canvas
        self.metrics = metrics
        self.padding = padding
        self.line_gap = line_gap

    @classmethod
    def from_settings(cls, canvas: CanvasSpec, settings: RenderSettings,
                      metrics) -> 'PagePacker':
        return cls(canvas, metrics, padding=settings.padding,
                   line_gap=settings.line_gap)

    def pack(self, records: Sequence[LabelRecord]) -> PlacementPlan:
        """
        Place *records* in order and return the resulting PlacementPlan.

        Raises
        ------
        MetricsUnavailableError if text fitting fails for any label.
        """
        canvas = self.canvas
        column_threshold = canvas.column_threshold
        pages: List[Page] = []
        current: List[PlacedLabel] = []

        cursor_x = cursor_y = column_width = 0.0
        threshold_index = 1

        for record in records:
            if self._is_oversized(record):
                print(f"  ⚠️  Warning: Label {record.width}x{record.height} mm "
                      f"'{record.first_line}' exceeds the "
                      f"{canvas.max_width}x{canvas.max_height} mm canvas, "
                      f"placed alone on its own page")
                self._close_page(pages, current)
                self._close_page(pages, [self._place(record, 0.0, 0.0,
                                                     oversized=True)])
                current = []
                cursor_x = cursor_y = column_width = 0.0
                threshold_index = 1
                continue

            # Column wrap
            if cursor_y + record.height > canvas.max_height:
                cursor_y = 0.0
                if cursor_x + column_width >= column_threshold * threshold_index:
                    cursor_x += canvas.column_spacing
                    threshold_index += 1
                cursor_x += column_width
                column_width = 0.0

            # Page wrap
            if cursor_x + record.width > canvas.max_width:
                self._close_page(pages, current)
                current = []
                cursor_x = cursor_y = column_width = 0.0
                threshold_index = 1

            current.append(self._place(record, cursor_x, cursor_y))
            cursor_y += record.height
            column_width = max(column_width, record.width)

        self._close_page(pages, current)
        return PlacementPlan(canvas=canvas, pages=tuple(pages))

    def _is_oversized(self, record: LabelRecord) -> bool:
        return (record.width > self.canvas.max_width or
                record.height > self.canvas.max_height)

    def _close_page(self, pages: List[Page], labels: List[PlacedLabel]) -> None:
        if labels:
            pages.append(Page(index=len(pages) + 1,
                              width=self.canvas.max_width,
                              height=self.canvas.max_height,
                              labels=tuple(labels)))

    def _fit(self, record: LabelRecord, text: str, initial_size: float) -> float:
        size = fit_text_size(text, record.width, record.height, self.padding,
                             initial_size, self.metrics)
        if size == 0:
            print(f"  ⚠️  Warning: Text '{text}' does not fit "
                  f"{record.width}x{record.height} mm label, "
                  f"drawn at minimum size")
        return size

    def _place(self, record: LabelRecord, x: float, y: float,
               oversized: bool = False) -> PlacedLabel:
        first_size = self._fit(record, record.first_line,
                               record.requested_first_size)
        second_size = None
        if record.has_second_line:
            second_size = self._fit(record, record.second_line,
                                    record.requested_second_size)
        first_y, second_y = self._line_centres(y, record.height,
                                               first_size, second_size)
        return PlacedLabel(record=record, x=x, y=y,
                           first_size=first_size, second_size=second_size,
                           first_line_y=first_y, second_line_y=second_y,
                           oversized=oversized)

    def _line_centres(self, top: float, height: float, first_size: float,
                      second_size: Optional[float]) -> Tuple[float, Optional[float]]:
        # One line sits at the box centre; two lines are centred as a block
        if second_size is None:
            return top + height / 2, None
        block_height = first_size + self.line_gap + second_size
        block_top = top + (height - block_height) / 2
        first_y = block_top + first_size / 2
        second_y = block_top + first_size + self.line_gap + second_size / 2
        return first_y, second_y

# ============================================================================
# CSV PARSER
# ============================================================================

COL_WIDTH = 'labelWidth (mm)'
COL_HEIGHT = 'labelHeight (mm)'
COL_TEXT_COLOR = 'textColor'
COL_BACKGROUND_COLOR = 'backgroundColor'
COL_QUANTITY = 'quantity'
COL_FIRST_LINE = 'FirstTextLine'
COL_FIRST_SIZE = 'FirstTextSize'
COL_SECOND_LINE = 'SecondTextLine'
COL_SECOND_SIZE = 'SecondTextSize'

REQUIRED_COLUMNS = (COL_WIDTH, COL_HEIGHT, COL_TEXT_COLOR,
                    COL_BACKGROUND_COLOR, COL_QUANTITY, COL_FIRST_LINE)
CSV_COLUMNS = REQUIRED_COLUMNS + (COL_FIRST_SIZE, COL_SECOND_LINE,
                                  COL_SECOND_SIZE)


def _parse_number(value: Optional[str]) -> float:
    """Parse a numeric cell; blank or non-numeric cells become 0."""
    if value is None:
        return 0.0
    try:
        number = float(value.strip().replace(',', '.'))
    except ValueError:
        return 0.0
    return number if math.isfinite(number) else 0.0


def _parse_size(value: Optional[str]) -> Optional[float]:
    size = _parse_number(value)
    return size if size > 0 else None


def _cell(row: Mapping[str, str], column: str, default: str = '') -> str:
    value = (row.get(column) or '').strip()
    return value or default


def records_from_row(row: Mapping[str, str]) -> List[LabelRecord]:
    """
    Expand one parsed CSV row into ``quantity`` identical LabelRecords.

    Blank cells take defaults: 0 for numbers, 'black' for colours and ''
    for text.  Rows that end up with a non-positive size or an empty first
    line produce no records (a warning is printed).

    Parameters
    ----------
    row : Mapping of CSV column name → raw cell string.

    Returns
    -------
    List of LabelRecord; empty for zero quantity or unusable rows.

    Raises
    ------
    MalformedRowError if a required column is absent from *row*.
    """
    missing = [column for column in REQUIRED_COLUMNS if column not in row]
    if missing:
        raise MalformedRowError(f"Row is missing column(s): {', '.join(missing)}")

    quantity = int(_parse_number(row[COL_QUANTITY]))
    if quantity <= 0:
        return []

    width = _parse_number(row[COL_WIDTH])
    height = _parse_number(row[COL_HEIGHT])
    first_line = _cell(row, COL_FIRST_LINE)
    if width <= 0 or height <= 0:
        print(f"  ⚠️  Warning: Skipping '{first_line}': "
              f"label size {width}x{height} mm is not positive")
        return []
    if not first_line:
        print(f"  ⚠️  Warning: Skipping {width}x{height} mm label "
              f"with no text")
        return []

    first_size = _parse_size(row.get(COL_FIRST_SIZE))
    second_size = _parse_size(row.get(COL_SECOND_SIZE)) or first_size
    record = LabelRecord(
        width=width,
        height=height,
        text_color=_cell(row, COL_TEXT_COLOR, 'black'),
        background_color=_cell(row, COL_BACKGROUND_COLOR, 'black'),
        first_line=first_line,
        second_line=_cell(row, COL_SECOND_LINE),
        first_line_size=first_size,
        second_line_size=second_size,
    )
    return [record] * quantity


def parse_csv(filename: str) -> List[LabelRecord]:
    """
    Parse a label CSV file into expanded LabelRecords.

    The delimiter is detected with ``csv.Sniffer`` (one of , ; tab |) and
    falls back to a comma.  Header names are matched case-insensitively.
    Malformed rows are skipped with a warning.

    Parameters
    ----------
    filename : Path to the input CSV (UTF-8, optional BOM).

    Returns
    -------
    List of LabelRecord in file order; empty for an empty file.

    Raises
    ------
    MalformedRowError if the header lacks a required column.
    """
    records: List[LabelRecord] = []

    with open(filename, 'r', encoding='utf-8-sig', newline='') as f:
        sample = f.read(4096)
        f.seek(0)
        delimiter = ','
        try:
            delimiter = csv.Sniffer().sniff(sample, delimiters=',;\t|').delimiter
            print(f"  → Detected CSV delimiter: {delimiter!r}")
        except csv.Error:
            print(f"  ⚠️  Warning: CSV dialect detection failed, "
                  f"using delimiter={delimiter!r}")

        reader = csv.reader(f, delimiter=delimiter, skipinitialspace=True)
        header = next(reader, None)
        if not header:
            print("  ⚠️  Warning: Empty CSV file")
            return []

        known = {column.casefold(): column for column in CSV_COLUMNS}
        columns = [known.get(h.strip().strip('"').casefold(), h.strip())
                   for h in header]
        missing = [column for column in REQUIRED_COLUMNS if column not in columns]
        if missing:
            raise MalformedRowError(
                f"CSV header is missing column(s): {', '.join(missing)}; "
                f"found {header}")

        for row_num, row in enumerate(reader, start=2):
            if not row or all(not cell.strip() for cell in row):
                continue
            cells = dict(zip(columns, row))
            try:
                row_records = records_from_row(cells)
            except MalformedRowError as exc:
                print(f"  ⚠️  Warning: Skipping invalid row {row_num}: {exc}")
                print(f"       Row data: {row}")
                continue
            if row_records:
                sample_record = row_records[0]
                print(f"  Row {row_num}: {len(row_records)}x "
                      f"{sample_record.width}x{sample_record.height}mm "
                      f"{sample_record.text_color}/{sample_record.background_color}"
                      f" - '{sample_record.first_line}'")
            records.extend(row_records)

    return records

# ============================================================================
# SVG RENDERER
# ============================================================================

class SVGRenderer:
    """
    Render each page of a PlacementPlan to an SVG for the laser driver.

    The drawing is sized in millimetres with a matching viewBox, so all
    coordinates are plain mm values.  Two named groups are emitted in draw
    order (back to front):

    =======  ================================================
    Group    Content
    =======  ================================================
    labels   One rect per label: white fill, stroke in the
             label's background colour.
    text     One or two centred bold text lines per label,
             filled with the label's text colour.
    =======  ================================================
    """

    extension = 'svg'

    COLOR_FILL = 'white'
    STROKE_WIDTH = 1.0  # mm

    def __init__(self, settings: RenderSettings) -> None:
        self.settings = settings

    def render(self, plan: PlacementPlan, base_name: str) -> List[Tuple[str, bytes]]:
        """Return one ``<base_name>_<n>.svg`` file per page."""
        return [(f"{base_name}_{page.index}.{self.extension}",
                 self.render_page(page, base_name).encode('utf-8'))
                for page in plan.pages]

    def render_page(self, page: Page, group: str = '') -> str:
        """
        Render one page to an SVG string.

        Raises
        ------
        RenderError if svgwrite rejects an attribute (e.g. a bad colour).
        """
        settings = self.settings
        try:
            dwg = svgwrite.Drawing(size=(f"{page.width}mm", f"{page.height}mm"),
                                   viewBox=f"0 0 {page.width} {page.height}")
            dwg.defs.add(dwg.style(f"""
            .label-text {{ font-family: {settings.font_family}; font-weight: bold;
                          text-anchor: middle; dominant-baseline: middle; }}
            """))

            labels_group = dwg.g(id='labels')
            text_group = dwg.g(id='text')
            for placed in page.labels:
                record = placed.record
                labels_group.add(dwg.rect(
                    insert=(placed.x, placed.y),
                    size=(record.width, record.height),
                    fill=self.COLOR_FILL,
                    stroke=resolve_color(record.background_color, settings.palette),
                    stroke_width=self.STROKE_WIDTH,
                ))
                text_color = resolve_color(record.text_color, settings.palette)
                for text, size, centre_y in placed.text_lines():
                    text_group.add(dwg.text(
                        text,
                        insert=(placed.center_x, centre_y),
                        font_size=settings.visible_size(size),
                        fill=text_color,
                        class_='label-text',
                    ))
            dwg.add(labels_group)
            dwg.add(text_group)
            svg_string = dwg.tostring()
        except (TypeError, ValueError) as exc:
            raise RenderError(f"SVG page {page.index} of {group or 'plan'}: "
                              f"{exc}") from exc

        metadata_comment = f"""
<!-- Label Sheet Exporter -->
<!-- Group: {group} -->
<!-- Page: {page.index} -->
<!-- Pieces: {len(page.labels)} -->
<!-- Efficiency: {page.efficiency:.1f}% -->
"""
        if svg_string.startswith('<?xml'):
            xml_decl_end = svg_string.find('?>') + 2
            return (svg_string[:xml_decl_end] + metadata_comment +
                    svg_string[xml_decl_end:])
        return '<?xml version="1.0" encoding="utf-8" ?>' + metadata_comment + svg_string

# ============================================================================
# PDF RENDERER
# ============================================================================

class PillowRasterizer:
    """
    Convert a Page to PNG bytes for embedding in the PDF document.

    Labels are drawn filled with their background colour and outlined in
    white, with text centred in the text colour.  ``raster_dpi`` is read as
    pixels per millimetre.
    """

    STROKE_COLOR = (255, 255, 255)
    STROKE_WIDTH = 1.0  # mm

    def __init__(self, settings: RenderSettings,
                 font_path: Optional[str] = None) -> None:
        self.settings = settings
        self.font_path = font_path
        self._fonts: Dict[int, ImageFont.FreeTypeFont] = {}

    def _font(self, size_px: int):
        if size_px not in self._fonts:
            if self.font_path:
                self._fonts[size_px] = ImageFont.truetype(self.font_path, size_px)
            else:
                self._fonts[size_px] = ImageFont.load_default(size=size_px)
        return self._fonts[size_px]

    def rasterize(self, page: Page, canvas: CanvasSpec) -> bytes:
        """
        Raises
        ------
        RasterConversionError on an unknown colour or an imaging failure.
        """
        scale = self.settings.raster_dpi
        palette = self.settings.palette
        try:
            image = Image.new('RGB', (max(1, round(canvas.max_width * scale)),
                                      max(1, round(canvas.max_height * scale))),
                              'white')
            draw = ImageDraw.Draw(image)
            stroke = max(1, round(self.STROKE_WIDTH * scale))
            for placed in page.labels:
                record = placed.record
                x0, y0 = placed.x * scale, placed.y * scale
                # Labels thinner than one pixel still get a one-pixel rect
                draw.rectangle(
                    [x0, y0,
                     max(x0, placed.right * scale - 1),
                     max(y0, placed.bottom * scale - 1)],
                    fill=ImageColor.getrgb(resolve_color(record.background_color, palette)),
                    outline=self.STROKE_COLOR,
                    width=stroke,
                )
                text_rgb = ImageColor.getrgb(resolve_color(record.text_color, palette))
                for text, size, centre_y in placed.text_lines():
                    size_px = max(1, round(self.settings.visible_size(size) * scale))
                    draw.text((placed.center_x * scale, centre_y * scale), text,
                              fill=text_rgb, font=self._font(size_px), anchor='mm')
            buffer = io.BytesIO()
            image.save(buffer, format='PNG')
        except (OSError, ValueError) as exc:
            raise RasterConversionError(
                f"Page {page.index} could not be rasterised: {exc}") from exc
        return buffer.getvalue()


class PDFRenderer:
    """
    Render a whole PlacementPlan as one multi-page proof PDF.

    Page layout (bottom-left origin, mm)::

        +---------------------------------------------+
        | header image / title           header_height|
        +---------------------------------------------+
        | margin | page raster (max_w × max_h) | margin|
        +---------------------------------------------+
        |                  signature footer (right)   |
        +---------------------------------------------+
    """

    extension = 'pdf'

    def __init__(self, settings: RenderSettings, rasterizer) -> None:
        self.settings = settings
        self.rasterizer = rasterizer

    def page_size(self, canvas: CanvasSpec) -> Tuple[float, float]:
        """Document page size in mm."""
        s = self.settings
        return (canvas.max_width + 2 * s.margin,
                canvas.max_height + s.header_height + s.footer_height)

    def page_to_document(self, x: float, y: float,
                         canvas: CanvasSpec) -> Tuple[float, float]:
        """Map a canvas point (top-left origin) to document mm (bottom-left)."""
        s = self.settings
        return (s.margin + x, s.footer_height + canvas.max_height - y)

    def render(self, plan: PlacementPlan, base_name: str) -> List[Tuple[str, bytes]]:
        """
        Return ``[(<base_name>.pdf, bytes)]``, or [] for a plan with no pages.

        Raises
        ------
        RasterConversionError if any page fails to rasterise.
        """
        if not plan.pages:
            return []
        canvas = plan.canvas
        page_width, page_height = self.page_size(canvas)

        buffer = io.BytesIO()
        pdf = pdf_canvas.Canvas(buffer, pagesize=(page_width * mm, page_height * mm))
        pdf.setTitle(base_name)
        header = self._header_image()

        for page in plan.pages:
            png = self.rasterizer.rasterize(page, canvas)
            image_x, image_y = self.page_to_document(0, canvas.max_height, canvas)
            self._draw_header(pdf, header, canvas)
            pdf.drawImage(ImageReader(io.BytesIO(png)),
                          image_x * mm, image_y * mm,
                          width=canvas.max_width * mm,
                          height=canvas.max_height * mm,
                          mask=None, preserveAspectRatio=False)
            self._draw_footer(pdf, canvas)
            pdf.showPage()

        pdf.save()
        return [(f"{base_name}.{self.extension}", buffer.getvalue())]

    def _header_image(self) -> Optional[ImageReader]:
        path = self.settings.header_image
        if not path:
            return None
        try:
            return ImageReader(path)
        except OSError as exc:
            print(f"  ⚠️  Warning: Header image {path} unreadable ({exc}), "
                  f"using title text")
            return None

    def _draw_header(self, pdf, header: Optional[ImageReader],
                     canvas: CanvasSpec) -> None:
        s = self.settings
        header_bottom = s.footer_height + canvas.max_height
        if header is not None:
            image_y = header_bottom + (s.header_height - s.header_image_height) / 2
            pdf.drawImage(header, s.margin * mm, image_y * mm,
                          width=s.header_image_width * mm,
                          height=s.header_image_height * mm,
                          mask='auto', preserveAspectRatio=True, anchor='sw')
        elif s.header_title:
            pdf.setFont(s.footer_font, s.footer_font_size)
            pdf.drawString(s.margin * mm, (header_bottom + s.header_height / 2) * mm,
                           s.header_title)

    def _draw_footer(self, pdf, canvas: CanvasSpec) -> None:
        # Lines are right-aligned to the right edge of the label area
        s = self.settings
        right_edge = (s.margin + canvas.max_width) * mm
        pdf.setFont(s.footer_font, s.footer_font_size)
        line_count = len(s.footer_lines)
        for i, line in enumerate(s.footer_lines):
            text_width = stringWidth(line, s.footer_font, s.footer_font_size)
            baseline = s.footer_height * (line_count - i) / (line_count + 2)
            pdf.drawString(right_edge - text_width, baseline * mm, line)

# ============================================================================
# LIGHTBURN RENDERER
# ============================================================================

def _num(value: float) -> str:
    text = f"{value:.4f}".rstrip('0').rstrip('.')
    return '0' if text in ('', '-0') else text


class LightBurnRenderer:
    """
    Render each page of a PlacementPlan as a LightBurn ``.lbrn2`` project.

    Every project repeats the same preamble (project attributes, variable
    text, optimisation preferences and two cut settings), then per label:

    * a ``Rect`` shape on the cut layer (C04) centred on the label, and
    * one ``Text`` shape per line on the scan layer (C23), each carrying a
      ``BackupPath`` of the glyph outlines (the measured box without a font).
    """

    extension = 'lbrn2'

    CUT_INDEX = '4'
    SCAN_INDEX = '23'
    FONT = 'Arial,-1,100,5,75,0,0,0,0,0'

    PROJECT_ATTRIBUTES = (
        ('AppVersion', '1.6.03'),
        ('FormatVersion', '1'),
        ('MaterialHeight', '0'),
        ('MirrorX', 'True'),
        ('MirrorY', 'True'),
    )
    VARIABLE_TEXT = (
        ('Start', '0'),
        ('End', '1047140'),
        ('Current', '0'),
        ('Increment', '1'),
        ('AutoAdvance', '1'),
    )
    UI_PREFS = (
        ('Optimize_ByLayer', '0'),
        ('Optimize_ByGroup', '-1'),
        ('Optimize_ByPriority', '1'),
        ('Optimize_WhichDirection', '0'),
        ('Optimize_InnerToOuter', '1'),
        ('Optimize_ByDirection', '0'),
        ('Optimize_ReduceTravel', '1'),
        ('Optimize_HideBacklash', '0'),
        ('Optimize_ReduceDirChanges', '0'),
        ('Optimize_ChooseCorners', '1'),
        ('Optimize_AllowReverse', '1'),
        ('Optimize_RemoveOverlaps', '1'),
        ('Optimize_OptimalEntryPoint', '1'),
        ('Optimize_OverlapDist', '0.025'),
    )
    CUT_SETTINGS = (
        ('Cut', (
            ('index', CUT_INDEX), ('name', 'C04'),
            ('minPower', '15'), ('maxPower', '15'), ('maxPower2', '20'),
            ('speed', '35'), ('dotTime', '1'), ('priority', '0'),
            ('tabCount', '1'), ('tabCountMax', '1'),
        )),
        ('Scan', (
            ('index', SCAN_INDEX), ('name', 'C23'),
            ('maxPower', '20'), ('maxPower2', '20'),
            ('speed', '2500'), ('dotTime', '1'), ('priority', '1'),
            ('tabCount', '1'), ('tabCountMax', '1'),
        )),
    )

    def __init__(self, settings: RenderSettings, metrics) -> None:
        self.settings = settings
        self.metrics = metrics

    def render(self, plan: PlacementPlan, base_name: str) -> List[Tuple[str, bytes]]:
        """Return one ``<base_name>_<n>.lbrn2`` project per page."""
        return [(f"{base_name}_{page.index}.{self.extension}", self.render_page(page))
                for page in plan.pages]

    def render_page(self, page: Page) -> bytes:
        project = self._new_project()
        for placed in page.labels:
            self._add_rect(project, placed)
            for text, size, centre_y in placed.text_lines():
                self._add_text(project, placed, text,
                               self.settings.visible_size(size), centre_y)

        ET.indent(project)
        buffer = io.BytesIO()
        ET.ElementTree(project).write(buffer, encoding='UTF-8', xml_declaration=True)
        return buffer.getvalue()

    def _new_project(self) -> ET.Element:
        project = ET.Element('LightBurnProject', dict(self.PROJECT_ATTRIBUTES))

        variable_text = ET.SubElement(project, 'VariableText')
        for name, value in self.VARIABLE_TEXT:
            ET.SubElement(variable_text, name, Value=value)

        ui_prefs = ET.SubElement(project, 'UIPrefs')
        for name, value in self.UI_PREFS:
            ET.SubElement(ui_prefs, name, Value=value)

        for cut_type, values in self.CUT_SETTINGS:
            cut_setting = ET.SubElement(project, 'CutSetting', type=cut_type)
            for name, value in values:
                ET.SubElement(cut_setting, name, Value=value)
        return project

    @staticmethod
    def _xform(x: float, y: float) -> str:
        return f"1 0 0 1 {_num(x)} {_num(y)}"

    def _add_rect(self, project: ET.Element, placed: PlacedLabel) -> None:
        shape = ET.SubElement(project, 'Shape', {
            'Type': 'Rect',
            'CutIndex': self.CUT_INDEX,
            'W': _num(placed.record.width),
            'H': _num(placed.record.height),
            'Cr': '0',
        })
        ET.SubElement(shape, 'XForm').text = self._xform(placed.center_x,
                                                         placed.center_y)

    def _add_text(self, project: ET.Element, placed: PlacedLabel, text: str,
                  size: float, centre_y: float) -> None:
        shape = ET.SubElement(project, 'Shape', {
            'Type': 'Text',
            'CutIndex': self.SCAN_INDEX,
            'Font': self.FONT,
            'Str': text,
            'H': _num(size),
            'LS': '0',
            'LnS': '0',
            'Ah': '1',
            'Av': '1',
            'Bold': '1',
            'Weld': '1',
            'HasBackupPath': '1',
        })
        xform = self._xform(placed.center_x, centre_y)

        backup = ET.SubElement(shape, 'BackupPath',
                               Type='Path', CutIndex=self.SCAN_INDEX)
        ET.SubElement(backup, 'XForm').text = xform
        contours = _outline(self.metrics, text, size)
        vertices: Contour = []
        primitives: List[str] = []
        for contour in contours:
            start = len(vertices)
            vertices.extend(contour)
            count = len(contour)
            primitives.extend(f"L{start + i} {start + (i + 1) % count}"
                              for i in range(count))
        ET.SubElement(backup, 'VertList').text = ''.join(
            f"V{_num(vx)} {_num(vy)}" for vx, vy in vertices)
        # A single contour is one closed polyline; several need explicit lines
        ET.SubElement(backup, 'PrimList').text = (
            'LineClosed' if len(contours) == 1 else ''.join(primitives))

        ET.SubElement(shape, 'XForm').text = xform

# ============================================================================
# EXPORT ORCHESTRATOR
# ============================================================================

FORMATS = ('svg', 'pdf', 'lbrn2')


def _clean_name(name: str) -> str:
    for char in ' /\\#:':
        name = name.replace(char, '_')
    return name


@dataclass(frozen=True)
class ExportGroup:
    """Labels sharing one (text colour, background colour) pair."""

    text_color: str
    background_color: str
    records: Tuple[LabelRecord, ...]

    @property
    def key(self) -> str:
        return f"{self.text_color}_{self.background_color}"

    @property
    def folder_name(self) -> str:
        return _clean_name(f"combined_labels_{self.key}")


@dataclass(frozen=True)
class GroupFailure:
    group: str
    fmt: str
    message: str


@dataclass
class GroupResult:
    """Files and failures produced for one ExportGroup."""

    group: ExportGroup
    plan: Optional[PlacementPlan]
    files: List[Tuple[str, bytes]] = field(default_factory=list)
    failures: List[GroupFailure] = field(default_factory=list)


@dataclass
class ExportResult:
    """
    Outcome of export_labels().

    archive_path is None when no file was produced at all.  A partial
    archive (some groups or formats failed) still has its path set, and
    ``ok`` is False.
    """

    archive_path: Optional[str]
    groups: List[GroupResult]

    @property
    def files(self) -> List[str]:
        return [name for result in self.groups for name, _ in result.files]

    @property
    def failures(self) -> List[GroupFailure]:
        return [failure for result in self.groups for failure in result.failures]

    @property
    def ok(self) -> bool:
        return self.archive_path is not None and not self.failures


def group_records(records: Iterable[LabelRecord]) -> List[ExportGroup]:
    """Partition *records* by (text colour, background colour), first-seen order."""
    buckets: Dict[Tuple[str, str], List[LabelRecord]] = {}
    for record in records:
        buckets.setdefault(record.group_key, []).append(record)
    return [ExportGroup(text_color, background_color, tuple(group))
            for (text_color, background_color), group in buckets.items()]


def folder_names(groups: Sequence[ExportGroup]) -> List[str]:
    """
    Archive folder for each group, in order.

    Sanitising can map distinct colour pairs to the same name (``a_b``/``c``
    and ``a``/``b_c``, or ``#x`` and ``:x``); later clashes get ``_2``,
    ``_3``, ... appended.
    """
    used = set()
    names = []
    for group in groups:
        base = name = group.folder_name
        suffix = 1
        while name in used:
            suffix += 1
            name = f"{base}_{suffix}"
        used.add(name)
        names.append(name)
    return names


def make_renderer(fmt: str, settings: RenderSettings, metrics):
    if fmt == 'svg':
        return SVGRenderer(settings)
    if fmt == 'pdf':
        return PDFRenderer(settings, PillowRasterizer(
            settings, font_path=getattr(metrics, 'font_path', None)))
    if fmt == 'lbrn2':
        return LightBurnRenderer(settings, metrics)
    raise ValueError(f"Unknown output format {fmt!r}; expected one of {FORMATS}")


def render_group(group: ExportGroup, canvas: CanvasSpec, settings: RenderSettings,
                 formats: Sequence[str], metrics,
                 folder: Optional[str] = None) -> GroupResult:
    """
    Pack one group once and feed the plan to every requested renderer.

    Files are named under *folder* (default: the group's folder_name).
    A LabelExportError from packing fails the whole group; one from a
    renderer fails only that format.  Both are recorded, not raised.
    """
    folder = folder or group.folder_name
    try:
        plan = PagePacker.from_settings(canvas, settings, metrics).pack(group.records)
    except LabelExportError as exc:
        print(f"  ⚠️  Group {group.key}: packing failed: {exc}")
        return GroupResult(group, None,
                           failures=[GroupFailure(group.key, 'pack', str(exc))])

    result = GroupResult(group, plan)
    for fmt in formats:
        renderer = make_renderer(fmt, settings, metrics)
        try:
            outputs = renderer.render(plan, folder)
        except LabelExportError as exc:
            print(f"  ⚠️  Group {group.key}: {fmt} failed: {exc}")
            result.failures.append(GroupFailure(group.key, fmt, str(exc)))
            continue
        result.files.extend((f"{folder}/{name}", data) for name, data in outputs)
    return result


def archive_filename(formats: Sequence[str], when: datetime) -> str:
    label = '-'.join(fmt.upper() for fmt in formats)
    return f"{label}_labels_{when:%Y-%m-%d}--{when.hour}-{when.minute}.zip"


def write_archive(files: Sequence[Tuple[str, bytes]], path: str) -> str:
    """
    Write *files* (archive name, data) into a zip at *path*.

    Raises
    ------
    ArchiveWriteError on any I/O failure.
    """
    try:
        out_dir = os.path.dirname(path)
        if out_dir:
            os.makedirs(out_dir, exist_ok=True)
        with zipfile.ZipFile(path, 'w', compression=zipfile.ZIP_DEFLATED) as archive:
            for name, data in files:
                archive.writestr(name, data)
    except OSError as exc:
        raise ArchiveWriteError(f"Cannot write archive {path}: {exc}") from exc
    return path


def export_labels(records: Sequence[LabelRecord], canvas: CanvasSpec,
                  output_dir: str = 'output',
                  formats: Sequence[str] = FORMATS,
                  settings: Optional[RenderSettings] = None,
                  metrics=None,
                  max_workers: Optional[int] = None,
                  now: Optional[datetime] = None) -> ExportResult:
    """
    Full pipeline: group → pack → render → zip.

    Groups are independent and run on a thread pool; each packs once and
    renders every format from that one plan.  Failed groups or formats are
    reported in the result while everything that succeeded is archived.

    Parameters
    ----------
    records     : Expanded label records.
    canvas      : Canvas bounds for this run.
    output_dir  : Directory that receives the zip archive.
    formats     : Subset of FORMATS to produce.
    settings    : Render settings (default: from the loaded config).
    metrics     : Text metrics provider (default: font lookup).
    max_workers : Thread pool size (default: executor default).
    now         : Timestamp for the archive name (default: now).

    Returns
    -------
    ExportResult with the archive path and per-group outcomes.

    Raises
    ------
    ArchiveWriteError if the archive cannot be written.
    """
    for fmt in formats:
        if fmt not in FORMATS:
            raise ValueError(f"Unknown output format {fmt!r}; expected one of {FORMATS}")
    settings = settings or RenderSettings.from_config(CFG)
    metrics = metrics or default_metrics(settings)
    groups = group_records(records)
    print(f"  → {len(groups)} group(s), formats: {', '.join(formats)}")

    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        results = list(pool.map(
            lambda group, folder: render_group(group, canvas, settings, formats,
                                               metrics, folder),
            groups, folder_names(groups)))

    files = [item for result in results for item in result.files]
    archive_path = None
    if files:
        archive_path = os.path.join(output_dir,
                                    archive_filename(formats, now or datetime.now()))
        write_archive(files, archive_path)
        print(f"  → Wrote {len(files)} file(s) to {archive_path}")
    return ExportResult(archive_path=archive_path, groups=results)


async def export_labels_async(records: Sequence[LabelRecord], canvas: CanvasSpec,
                              **kwargs) -> ExportResult:
    """Run export_labels() off the event loop and return its ExportResult."""
    return await asyncio.to_thread(export_labels, records, canvas, **kwargs)

# ============================================================================
# CLI INTERFACE
# ============================================================================

def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Pack labels from a CSV into SVG, PDF and LightBurn files",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python label_exporter.py INPUT.csv
  python label_exporter.py INPUT.csv --width 800 --height 400 --columns 4
  python label_exporter.py INPUT.csv --format pdf -o proofs

CSV Format:
  labelWidth (mm),labelHeight (mm),textColor,backgroundColor,quantity,
  FirstTextLine,FirstTextSize,SecondTextLine,SecondTextSize

Output archive:
  <FORMATS>_labels_<date>--<hour>-<minute>.zip with one folder per
  text/background colour pair.
        """
    )
    parser.add_argument("csv_file", help="Input CSV file path")
    parser.add_argument("--config", default=None,
                        help="INI file overriding the built-in settings")
    parser.add_argument("--width", type=float, default=None,
                        help="Canvas width in mm (default from config: 600)")
    parser.add_argument("--height", type=float, default=None,
                        help="Canvas height in mm (default from config: 300)")
    parser.add_argument("--columns", type=int, default=None,
                        help="Column bands per canvas (default from config: 3)")
    parser.add_argument("--column-spacing", type=float, default=None,
                        help="Gap in mm inserted between column bands "
                             "(default from config: 6)")
    parser.add_argument("--format", nargs='+', choices=FORMATS, default=None,
                        dest='formats', help="Formats to produce (default: all)")
    parser.add_argument("-o", "--output", default=None,
                        help="Output directory for the zip archive")
    parser.add_argument("--workers", type=int, default=None,
                        help="Number of groups rendered in parallel")
    args = parser.parse_args(argv)

    try:
        cfg = load_config(args.config) if args.config else CFG
    except FileNotFoundError:
        print(f"\n❌ Error: Config file '{args.config}' not found")
        return 1

    base = CanvasSpec.from_config(cfg)
    try:
        canvas = CanvasSpec(
            max_width=args.width if args.width is not None else base.max_width,
            max_height=args.height if args.height is not None else base.max_height,
            columns_per_canvas=(args.columns if args.columns is not None
                                else base.columns_per_canvas),
            column_spacing=(args.column_spacing if args.column_spacing is not None
                            else base.column_spacing),
        )
    except ValueError as exc:
        print(f"\n❌ Error: {exc}")
        return 1
    formats = args.formats or [f.strip() for f in cfg['output'].get('formats').split(',')
                               if f.strip()]
    output_dir = args.output or cfg['output'].get('directory')

    print("=" * 70)
    print("LABEL SHEET EXPORTER")
    print("=" * 70)
    print(f"\nReading labels from: {args.csv_file}")
    print(f"Canvas: {canvas.max_width} x {canvas.max_height} mm, "
          f"{canvas.columns_per_canvas} column band(s), "
          f"{canvas.column_spacing} mm spacing")
    print()

    try:
        records = parse_csv(args.csv_file)
    except FileNotFoundError:
        print(f"\n❌ Error: File '{args.csv_file}' not found")
        return 1
    except MalformedRowError as exc:
        print(f"\n❌ Error: {exc}")
        return 1

    if not records:
        print("\n❌ Error: No valid labels found in CSV")
        return 1
    print(f"\n✅ Total labels: {len(records)}")

    print(f"\n{'─' * 70}")
    print("PACKING AND RENDERING")
    print(f"{'─' * 70}")
    settings = RenderSettings.from_config(cfg)
    try:
        result = export_labels(records, canvas, output_dir=output_dir,
                               formats=formats, settings=settings,
                               max_workers=args.workers)
    except (ArchiveWriteError, ValueError) as exc:
        print(f"\n❌ Error: {exc}")
        return 1

    print("\nSUMMARY BY GROUP:")
    for group_result in result.groups:
        pages = len(group_result.plan.pages) if group_result.plan else 0
        print(f"  • {group_result.group.key}: {len(group_result.group.records)} "
              f"label(s), {pages} page(s), {len(group_result.files)} file(s)")
    for failure in result.failures:
        print(f"  ❌ {failure.group} [{failure.fmt}]: {failure.message}")

    print(f"\n{'═' * 70}")
    if result.archive_path:
        status = "SUCCESS" if result.ok else "PARTIAL"
        print(f"{'✅' if result.ok else '⚠️ '} {status}: {result.archive_path}")
    else:
        print("❌ FAILED: no files produced")
    print(f"{'═' * 70}")
    return 0 if result.ok else 1


if __name__ == "__main__":
    raise SystemExit(main())
