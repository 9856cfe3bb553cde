#!/usr/bin/env python3

"""
Jump Mat Generator
Renders the measurement mat that a camera-based standing long jump rig uses as its ground truth.

Table of Contents
   1. Setup
   2. Configuration
   3. Fiducial Markers
   4. Coordinate Transform
   5. Drawing Layers
   6. Exports
   7. Commands
"""

# ----------------------1. Setup----------------------------

import base64
import io
import math
import os
import random
import re
import time
from dataclasses import dataclass, replace
from enum import Enum
from functools import cache
from typing import Callable

import numpy as np
import toml
import trimesh
from PIL import Image, ImageColor, ImageDraw, ImageFont

FF = 255
WH = tuple[int, int]
EPS = 1e-9
"""meters; below any printable feature"""


class ConfigError(ValueError):
    """An impossible or contradictory mat configuration, found before any drawing."""


class DictionaryError(ValueError):
    """A malformed marker dictionary, or one whose markers can be confused for each other."""


class SurfaceAllocationError(MemoryError):
    """The raster for the requested pixel density cannot be allocated."""


RE_RGBA_FRACTION = re.compile(r'^\s*rgba\(\s*(\d+)\s*,\s*(\d+)\s*,\s*(\d+)\s*,\s*(\d*\.\d+|[01])\s*\)\s*$')


class Color(Enum):
    WHITE, BLACK = (FF, FF, FF), (0, 0, 0)

    @staticmethod
    @cache
    def to_pil(col_spec):
        """Color tuple for Pillow, accepting CSS-style rgba() with a fractional alpha as well."""
        if isinstance(col_spec, Color):
            return col_spec.value
        if isinstance(col_spec, str):
            if matches := RE_RGBA_FRACTION.match(col_spec):
                r, g, b, a = matches.groups()
                return int(r), int(g), int(b), round(float(a) * FF)
            return ImageColor.getrgb(col_spec)
        return tuple(col_spec)


class FontStyle(Enum):
    REG, BOLD = 0, 1


class OutFormat(Enum):
    PNG, JPEG = 'png', 'jpeg'

    @property
    def mime(self):
        return f'image/{self.value}'

    @classmethod
    def of(cls, fmt: str):
        """Accepts a format name, a file extension or a MIME type: 'PNG', 'jpg', 'image/jpeg'"""
        if isinstance(fmt, cls):
            return fmt
        name = fmt.lower().removeprefix('image/').lstrip('.')
        return cls('jpeg' if name == 'jpg' else name)


class Font:
    """Families are (regular, bold) TrueType files, found on Pillow's font search path."""
    Family = tuple[str, str]
    DejaVuSans: Family = ('DejaVuSans.ttf', 'DejaVuSans-Bold.ttf')
    DejaVuMono: Family = ('DejaVuSansMono.ttf', 'DejaVuSansMono-Bold.ttf')

    @classmethod
    @cache
    def get_truetype_font(cls, font_family: Family, fs: int, font_style: int):
        try:
            return ImageFont.truetype(font_family[font_style], fs)
        except OSError:  # family not installed on this machine
            return ImageFont.load_default(fs)

    @classmethod
    def font_for(cls, font_family: Family, fs: int, font_style=FontStyle.REG):
        return cls.get_truetype_font(font_family, max(1, fs), font_style.value)


UNIT_DIVISORS = {'': 1, 'm': 1, 'cm': 100, 'mm': 1000}


def dim_to_meters(dim) -> float:
    """Distances are meters, or strings with a unit: '8mm', '1.5cm', '0.9m'."""
    if isinstance(dim, str):
        matches = re.match(r'^\s*(-?[\d.]+)\s*([a-z]*)\s*$', dim)
        if not matches or matches.group(2) not in UNIT_DIVISORS:
            raise ConfigError(f'Unrecognized distance: {dim!r}')
        return float(matches.group(1)) / UNIT_DIVISORS[matches.group(2)]
    return float(dim)


def fmt_m(x: float) -> str:
    return f'{round(x, 6):g}m'


def fmt_cm(x: float) -> str:
    return f'{round(x * 100, 4):g}cm'


def fmt_mm(x: float) -> str:
    return f'{round(x * 1000, 4):g}mm'


# ----------------------2. Configuration----------------------------


class ZoneRole(Enum):
    TAKEOFF, FLIGHT, LANDING, EXTENDED = 'takeoff', 'flight', 'landing', 'extended'


class Side(Enum):
    """Long edge of the mat a marker sits against: LEFT is the top edge of the raster."""
    LEFT, RIGHT = 'left', 'right'


class LabelStyle(Enum):
    SIMPLIFIED, DETAILED = 'simplified', 'detailed'


@dataclass(frozen=True)
class Zone:
    role: ZoneRole
    start: float
    """meters from the takeoff line, inclusive"""
    end: float
    """meters from the takeoff line, exclusive"""
    name: str = None

    @classmethod
    def from_dict(cls, zone_def: dict):
        return cls(role=ZoneRole(zone_def['role']), start=dim_to_meters(zone_def['start']),
                   end=dim_to_meters(zone_def['end']), name=zone_def.get('name'))


@dataclass(frozen=True)
class ScaleTier:
    """One height/width class of tick within a zone."""
    key: str
    zone: ZoneRole
    spacing: float
    """distance between ticks of this tier or coarser"""
    line_length: float
    line_width: float
    color: str = None
    """overrides Style.scale"""

    @classmethod
    def from_dict(cls, tier_def: dict):
        return cls(key=tier_def['key'], zone=ZoneRole(tier_def['zone']),
                   spacing=dim_to_meters(tier_def['spacing']),
                   line_length=dim_to_meters(tier_def['line_length']),
                   line_width=dim_to_meters(tier_def['line_width']),
                   color=tier_def.get('color'))


@dataclass(frozen=True)
class MarkerPlacement:
    marker_id: int
    position: float
    side: Side

    @property
    def label(self):
        return fmt_m(self.position)


@dataclass(frozen=True)
class MarkerSpec:
    core_size: float = 0.08
    """side of the black-bordered marker (8cm)"""
    quiet_zone: float = 0.015
    """white margin around the core on every side (1.5cm)"""
    margin: float = 0.02
    """inset of the quiet zone from the long edge"""
    positions: tuple[float, ...] = (0.0, 1.0, 1.8, 2.4)
    left_id_base: int = 8
    right_id_base: int = 0

    @classmethod
    def from_dict(cls, spec_def: dict):
        spec_def = dict(spec_def)
        for key in ('core_size', 'quiet_zone', 'margin'):
            if key in spec_def:
                spec_def[key] = dim_to_meters(spec_def[key])
        if 'positions' in spec_def:
            spec_def['positions'] = tuple(dim_to_meters(x) for x in spec_def['positions'])
        return cls(**spec_def)

    @property
    def footprint(self):
        return self.core_size + 2 * self.quiet_zone

    def placements(self) -> list[MarkerPlacement]:
        """Left side first, then right; IDs count up from each side's base."""
        return [MarkerPlacement(base + i, position, side)
                for side, base in ((Side.LEFT, self.left_id_base), (Side.RIGHT, self.right_id_base))
                for i, position in enumerate(self.positions)]


@dataclass(frozen=True)
class Style:
    background: str = '#1a1a1a'
    """matte near-black base"""
    scale: str = '#c9a227'
    """gold tick color"""
    text: str = '#c9a227'
    border: str = '#c9a227'
    border_inner: str = 'rgba(201, 162, 39, 0.3)'
    speck: str = 'rgba(0, 0, 0, 0.1)'
    font_family: Font.Family = Font.DejaVuSans
    numeral_family: Font.Family = Font.DejaVuMono

    @classmethod
    def from_dict(cls, style_def: dict):
        style_def = dict(style_def)
        for key in ('font_family', 'numeral_family'):
            if key in style_def:
                style_def[key] = getattr(Font, style_def[key])
        return cls(**style_def)

    def font_for(self, fs: int, bold: bool = False):
        return Font.font_for(self.font_family, fs, FontStyle.BOLD if bold else FontStyle.REG)

    def numeral_font_for(self, fs: int, bold: bool = False):
        return Font.font_for(self.numeral_family, fs, FontStyle.BOLD if bold else FontStyle.REG)


@dataclass(frozen=True)
class PrintSpec:
    """Manufacturing requirements, quoted in the specification report"""
    marker_tolerance: float = 0.0005
    tick_tolerance: float = 0.001
    max_delta_e: float = 3
    thickness_min: float = 0.008
    thickness_max: float = 0.010
    surface: str = 'Matte finish required; no glossy or reflective coating'
    material: str = 'Natural rubber base with a PU top layer, or thick TPE'

    @classmethod
    def from_dict(cls, spec_def: dict):
        spec_def = dict(spec_def)
        for key in ('marker_tolerance', 'tick_tolerance', 'thickness_min', 'thickness_max'):
            if key in spec_def:
                spec_def[key] = dim_to_meters(spec_def[key])
        return cls(**spec_def)


REFERENCE_ZONES = (
    Zone(ZoneRole.TAKEOFF, -0.3, 0.0, 'Takeoff'),
    Zone(ZoneRole.FLIGHT, 0.0, 1.4, 'Flight (sparse ticks)'),
    Zone(ZoneRole.LANDING, 1.4, 2.8, 'Landing (precision ticks)'),
    Zone(ZoneRole.EXTENDED, 2.8, 3.0, 'Extended'),
)

REFERENCE_TIERS = (
    ScaleTier('flight_half', ZoneRole.FLIGHT, 0.5, 0.25, 0.002),
    ScaleTier('flight_tenth', ZoneRole.FLIGHT, 0.1, 0.15, 0.002),
    ScaleTier('meter', ZoneRole.LANDING, 1.0, 0.45, 0.003),
    ScaleTier('half', ZoneRole.LANDING, 0.5, 0.35, 0.0025),
    ScaleTier('tenth', ZoneRole.LANDING, 0.1, 0.25, 0.002),
    ScaleTier('cm', ZoneRole.LANDING, 0.01, 0.12, 0.0012),
    ScaleTier('extended', ZoneRole.EXTENDED, 0.1, 0.2, 0.002),
)


@dataclass(frozen=True)
class MatConfig:
    """Metric layout of a mat. All distances in meters, measured from the takeoff line."""
    name: str = 'Reference'
    total_length: float = 3.0
    """origin line to far end; the takeoff zone lies before it"""
    total_width: float = 0.9
    zones: tuple[Zone, ...] = REFERENCE_ZONES
    tiers: tuple[ScaleTier, ...] = REFERENCE_TIERS
    markers: MarkerSpec = MarkerSpec()
    style: Style = Style()
    print_spec: PrintSpec = PrintSpec()
    pixels_per_meter: float = 1200
    origin_line_width: float = 0.004
    border_width: float = 0.008
    border_inset: float = 0.015
    label_style: LabelStyle = LabelStyle.SIMPLIFIED
    speck_count: int = 50

    example_dir_path = os.path.join(os.path.dirname(os.path.realpath(__file__)), 'examples')

    @classmethod
    def from_dict(cls, mat_def: dict):
        mat_def = dict(mat_def)
        if 'zones' in mat_def:
            mat_def['zones'] = tuple(Zone.from_dict(x) for x in mat_def['zones'])
        if 'tiers' in mat_def:
            mat_def['tiers'] = tuple(ScaleTier.from_dict(x) for x in mat_def['tiers'])
        if 'markers' in mat_def:
            mat_def['markers'] = MarkerSpec.from_dict(mat_def['markers'])
        if 'style' in mat_def:
            mat_def['style'] = Style.from_dict(mat_def['style'])
        if 'print_spec' in mat_def:
            mat_def['print_spec'] = PrintSpec.from_dict(mat_def['print_spec'])
        if 'label_style' in mat_def:
            mat_def['label_style'] = LabelStyle(mat_def['label_style'])
        for key in ('total_length', 'total_width', 'origin_line_width', 'border_width', 'border_inset'):
            if key in mat_def:
                mat_def[key] = dim_to_meters(mat_def[key])
        try:
            return cls(**mat_def)
        except TypeError as e:
            raise ConfigError(f'Unrecognized mat setting: {e}') from e

    @classmethod
    def from_toml_file(cls, toml_filename: str):
        return cls.from_dict(toml.load(toml_filename))

    @classmethod
    def from_example(cls, example_name: str):
        return cls.from_toml_file(os.path.join(cls.example_dir_path, f'Mat-{example_name}.toml'))

    @classmethod
    def load(cls, mat_name: str):
        if mat_name == ReferenceMat.name:
            return ReferenceMat
        return cls.from_toml_file(mat_name) if os.path.exists(mat_name) else cls.from_example(mat_name)

    @classmethod
    def example_names(cls):
        for fn in sorted(os.listdir(cls.example_dir_path)):
            if match := re.match(r'Mat-(.*)\.toml$', fn):
                yield match.group(1)

    @property
    def leading_offset(self) -> float:
        """Length of mat before the origin line (the takeoff margin)"""
        return -self.zones[0].start

    def zone(self, role: ZoneRole):
        return next((zone for zone in self.zones if zone.role == role), None)

    def tiers_for(self, role: ZoneRole) -> list[ScaleTier]:
        """Tiers of a zone, coarsest first"""
        return sorted((tier for tier in self.tiers if tier.zone == role), key=lambda tier: tier.spacing, reverse=True)

    def validate(self):
        """Raises ConfigError for a contradictory mat. Returns self, so it chains."""
        if self.total_length <= 0 or self.total_width <= 0:
            raise ConfigError(f'Mat dimensions must be positive: {self.total_length} x {self.total_width}')
        if self.pixels_per_meter <= 0:
            raise ConfigError(f'Pixel density must be positive: {self.pixels_per_meter}')
        if self.origin_line_width <= 0 or self.border_width <= 0:
            raise ConfigError('Origin line and border widths must be positive')
        if self.border_inset < 0 or self.speck_count < 0:
            raise ConfigError('Border inset and speck count cannot be negative')
        self.check_zones()
        self.check_tiers()
        self.check_markers()
        return self

    def check_zones(self):
        if not self.zones:
            raise ConfigError('A mat needs at least one zone')
        if self.zones[0].start > 0:
            raise ConfigError('The first zone must begin at or before the takeoff line')
        for zone in self.zones:
            if zone.end <= zone.start:
                raise ConfigError(f'Zone {zone.role.value} is empty or reversed: [{zone.start}, {zone.end})')
        for prev, zone in zip(self.zones, self.zones[1:]):
            if not math.isclose(prev.end, zone.start, abs_tol=EPS):
                raise ConfigError(f'Zones {prev.role.value} and {zone.role.value} leave a gap or overlap at {prev.end}')
        if not math.isclose(self.zones[-1].end, self.total_length, abs_tol=EPS):
            raise ConfigError(f'Zones end at {self.zones[-1].end} but the mat is {self.total_length} long')
        roles = [zone.role for zone in self.zones]
        for role in ZoneRole:
            if roles.count(role) > 1:
                raise ConfigError(f'Zone {role.value} appears more than once')
        for role in (ZoneRole.FLIGHT, ZoneRole.LANDING):
            if role not in roles:
                raise ConfigError(f'Zone {role.value} is required')

    def check_tiers(self):
        for tier in self.tiers:
            if min(tier.spacing, tier.line_length, tier.line_width) <= 0:
                raise ConfigError(f'Tier {tier.key} needs a positive spacing, length and width')
            if self.zone(tier.zone) is None:
                raise ConfigError(f'Tier {tier.key} belongs to missing zone {tier.zone.value}')
        for role in ZoneRole:
            tiers = self.tiers_for(role)
            for coarse, fine in zip(tiers, tiers[1:]):
                ratio = coarse.spacing / fine.spacing
                if round(ratio) < 2 or not math.isclose(ratio, round(ratio), abs_tol=1e-6):
                    raise ConfigError(f'Tier {coarse.key} spacing must be a whole multiple of tier {fine.key}')
        for role in (ZoneRole.FLIGHT, ZoneRole.LANDING):
            if not self.tiers_for(role):
                raise ConfigError(f'Zone {role.value} has no tick tiers')

    def check_markers(self):
        spec = self.markers
        if spec.core_size <= 0 or spec.quiet_zone < 0 or spec.margin < 0:
            raise ConfigError('Marker core must be positive, its quiet zone and margin non-negative')
        if 2 * (spec.footprint + spec.margin) > self.total_width + EPS:
            raise ConfigError('Markers on both sides do not fit across the mat')
        half = spec.footprint / 2
        for position in spec.positions:
            if position - half < self.zones[0].start - EPS or position + half > self.total_length + EPS:
                raise ConfigError(f'Marker at {fmt_m(position)} extends past the end of the mat')
        for p0, p1 in zip(spec.positions, spec.positions[1:]):
            if p1 - p0 < spec.footprint - EPS:
                raise ConfigError(f'Markers at {fmt_m(p0)} and {fmt_m(p1)} overlap or are out of order')
        marker_ids = [p.marker_id % len(DICTIONARY) for p in spec.placements()]
        if len(set(marker_ids)) != len(marker_ids):
            raise ConfigError(f'Marker IDs repeat across the mat (IDs wrap modulo {len(DICTIONARY)})')
        try:
            DICTIONARY.check_rotations(marker_ids)
        except DictionaryError as e:
            raise ConfigError(str(e)) from e


ReferenceMat = MatConfig()


# ----------------------3. Fiducial Markers----------------------------


ARUCO_4X4 = (
    ((0, 0, 0, 0),
     (0, 1, 0, 1),
     (1, 1, 0, 0),
     (0, 1, 1, 1)),
    ((1, 0, 0, 1),
     (0, 1, 0, 1),
     (1, 0, 0, 0),
     (0, 1, 0, 1)),
    ((1, 1, 0, 0),
     (0, 0, 1, 1),
     (1, 0, 0, 1),
     (1, 0, 1, 0)),
    ((0, 1, 1, 0),
     (0, 0, 1, 1),
     (1, 1, 0, 1),
     (1, 0, 0, 0)),
    ((0, 0, 1, 1),
     (1, 1, 0, 0),
     (0, 1, 1, 0),
     (1, 1, 0, 1)),
    ((1, 0, 1, 0),
     (1, 1, 0, 0),
     (0, 0, 1, 0),
     (1, 1, 1, 1)),
    ((1, 1, 1, 1),
     (0, 0, 0, 1),
     (0, 0, 0, 1),
     (0, 0, 0, 0)),
    ((0, 1, 0, 1),
     (0, 0, 0, 1),
     (0, 1, 0, 1),
     (0, 0, 1, 0)),
    ((0, 0, 0, 1),  # 8: left side, 0m
     (1, 0, 1, 0),
     (1, 1, 1, 0),
     (1, 0, 0, 1)),
    ((1, 0, 0, 0),  # 9: left side, 1m
     (1, 0, 1, 0),
     (1, 0, 1, 0),
     (1, 0, 1, 1)),
    ((0, 1, 1, 1),  # 10: left side, 1.8m
     (1, 1, 1, 0),
     (0, 0, 1, 1),
     (0, 1, 0, 0)),
    ((1, 1, 1, 0),  # 11: left side, 2.4m
     (1, 1, 1, 0),
     (0, 1, 1, 1),
     (0, 0, 0, 0)),
)

MARKER_LIGHT, MARKER_DARK = FF, 0
MARKER_BITS = 4
MARKER_GRID = MARKER_BITS + 2
"""cells across a marker: the data bits plus one border cell each side"""


class FiducialDictionary:
    """Fixed table of square bit patterns. IDs wrap around modulo its size."""

    def __init__(self, patterns, name: str):
        self.name = name
        self.patterns = tuple(tuple(tuple(row) for row in pattern) for pattern in patterns)
        self.check_patterns()

    def __len__(self):
        return len(self.patterns)

    def __repr__(self):
        return f'FiducialDictionary({self.name}, {len(self)} patterns)'

    def bits(self, marker_id: int) -> np.ndarray:
        return np.array(self.patterns[marker_id % len(self.patterns)], dtype=np.uint8)

    def check_patterns(self):
        if not self.patterns:
            raise DictionaryError(f'{self.name} has no patterns')
        for i, pattern in enumerate(self.patterns):
            if len(pattern) != MARKER_BITS or any(len(row) != MARKER_BITS for row in pattern):
                raise DictionaryError(f'{self.name} pattern {i} is not {MARKER_BITS}x{MARKER_BITS}')
            if any(bit not in (0, 1) for row in pattern for bit in row):
                raise DictionaryError(f'{self.name} pattern {i} has a value other than 0 or 1')

    def check_rotations(self, marker_ids=None):
        """
        A camera may see the mat from either end, so markers that coexist must stay distinct
        under quarter turns. Checks all IDs unless given the ones placed together.
        """
        ids = sorted({i % len(self) for i in (range(len(self)) if marker_ids is None else marker_ids)})
        seen: dict[bytes, int] = {}
        for marker_id in ids:
            bits = self.bits(marker_id)
            if (other := seen.get(bits.tobytes())) is not None:
                raise DictionaryError(f'{self.name} marker {marker_id} is a rotation of marker {other}')
            for k in range(4):
                seen.setdefault(np.rot90(bits, k).tobytes(), marker_id)


DICTIONARY = FiducialDictionary(ARUCO_4X4, 'ARUCO_4X4')
DICTIONARY.check_rotations()


def cell_edges(core_px: int) -> list[int]:
    """Pixel offsets of the grid lines across a marker core"""
    return [round(core_px * k / MARKER_GRID) for k in range(MARKER_GRID + 1)]


def encode_marker(marker_id: int, core_px: int, quiet_px: int = 0, dictionary: FiducialDictionary = None):
    """
    Render a marker as a grayscale patch of side core_px + 2 * quiet_px.
    :param int marker_id: dictionary ID, reduced modulo the dictionary size
    :param int core_px: side of the black border square, in pixels
    :param int quiet_px: width of the white ring around the core; 0 leaves it out
    :returns: Image in mode 'L', black where a bit is set
    """
    dictionary = dictionary or DICTIONARY
    core_px, quiet_px = round(core_px), round(quiet_px)
    if core_px < 1 or quiet_px < 0:
        raise ValueError(f'Cannot render a marker with core {core_px}px and quiet zone {quiet_px}px')
    grid = np.full((MARKER_GRID, MARKER_GRID), MARKER_DARK, dtype=np.uint8)
    grid[1:-1, 1:-1] = np.where(dictionary.bits(marker_id) == 1, MARKER_DARK, MARKER_LIGHT)
    side = core_px + 2 * quiet_px
    patch = np.full((side, side), MARKER_LIGHT, dtype=np.uint8)
    edges = [quiet_px + e for e in cell_edges(core_px)]
    for row in range(MARKER_GRID):
        for col in range(MARKER_GRID):
            patch[edges[row]:edges[row + 1], edges[col]:edges[col + 1]] = grid[row, col]
    return Image.fromarray(patch)


def marker_data_url(marker_id: int, size: int = 128, quiet: int = 16) -> str:
    buf = io.BytesIO()
    encode_marker(marker_id, size, quiet).save(buf, 'PNG')
    return 'data:image/png;base64,' + base64.b64encode(buf.getvalue()).decode('ascii')


# ----------------------4. Coordinate Transform----------------------------


@dataclass(frozen=True)
class PixelSpace:
    """
    The one affine map from mat meters to surface pixels.
    Ticks, labels, border and markers all go through it so they stay registered.
    """
    pixels_per_meter: float = 1200
    leading_offset: float = 0.3
    """meters of takeoff zone left of the origin line"""

    def __post_init__(self):
        if self.pixels_per_meter <= 0:
            raise ConfigError(f'Pixel density must be positive: {self.pixels_per_meter}')

    @classmethod
    def for_config(cls, config: MatConfig, pixels_per_meter: float = None):
        return cls(config.pixels_per_meter if pixels_per_meter is None else pixels_per_meter, config.leading_offset)

    def to_pixels(self, length: float) -> float:
        return length * self.pixels_per_meter

    def column_of(self, position: float) -> float:
        """Pixel column of a distance from the takeoff line"""
        return self.to_pixels(position + self.leading_offset)

    def px(self, length: float) -> int:
        """Whole pixels for a stroke or font size, never less than one"""
        return max(1, round(self.to_pixels(length)))

    def surface_size(self, config: MatConfig) -> WH:
        return (round(self.to_pixels(config.total_length + self.leading_offset)),
                round(self.to_pixels(config.total_width)))


# ----------------------5. Drawing Layers----------------------------


class RasterOut:
    """Pixel primitives on a Pillow image; translucent colors blend into what is beneath."""

    def __init__(self, img: Image.Image):
        self.img = img
        self.r = ImageDraw.Draw(img, 'RGBA')

    @classmethod
    def for_image(cls, img: Image.Image):
        return cls(img)

    def fill_rect(self, x0: int, y0: int, dx: int, dy: int, col):
        """Fills pixels [x0, x0 + dx) x [y0, y0 + dy)"""
        if dx > 0 and dy > 0:
            self.r.rectangle((x0, y0, x0 + dx - 1, y0 + dy - 1), fill=Color.to_pil(col))

    def draw_box(self, x0: int, y0: int, dx: int, dy: int, col, width=1):
        if dx > 0 and dy > 0:
            self.r.rectangle((x0, y0, x0 + dx - 1, y0 + dy - 1), outline=Color.to_pil(col), width=width)

    def draw_tick(self, xc: float, yc: float, h: int, width: int, col):
        """Vertical bar of whole pixels centered on (xc, yc)"""
        self.fill_rect(round(xc - width / 2), round(yc - h / 2), width, h, col)

    def draw_text(self, x: float, y: float, symbol: str, font, col, angle: float = 0, anchor='mm'):
        """Text anchored at (x, y), turned counter-clockwise by angle degrees about that anchor"""
        if not angle:
            self.r.text((x, y), symbol, font=font, fill=Color.to_pil(col), anchor=anchor)
            return
        (x1, y1, x2, y2) = font.getbbox(symbol, anchor=anchor)
        radius = math.ceil(max(math.hypot(cx, cy) for cx in (x1, x2) for cy in (y1, y2))) + 1
        layer = Image.new('RGBA', (2 * radius, 2 * radius), (0, 0, 0, 0))
        ImageDraw.Draw(layer).text((radius, radius), symbol, font=font, fill=Color.to_pil(col), anchor=anchor)
        layer = layer.rotate(angle, resample=Image.Resampling.BICUBIC, center=(radius, radius))
        self.img.paste(layer, (round(x) - radius, round(y) - radius), layer)

    def paste(self, patch: Image.Image, x0: int, y0: int):
        self.img.paste(patch, (x0, y0))


@dataclass(frozen=True)
class Renderer:
    r: RasterOut
    space: PixelSpace
    config: MatConfig
    rng: random.Random = None
    """source of the cosmetic speckle; None leaves it out"""

    @property
    def style(self) -> Style:
        return self.config.style

    @property
    def w(self) -> int:
        return self.r.img.width

    @property
    def h(self) -> int:
        return self.r.img.height

    @property
    def center_y(self) -> float:
        return self.h / 2

    def draw_tick(self, position: float, tier: ScaleTier):
        sp = self.space
        self.r.draw_tick(sp.column_of(position), self.center_y, sp.px(tier.line_length), sp.px(tier.line_width),
                         tier.color or self.style.scale)

    def draw_label(self, symbol: str, position: float, y: float, font, angle: float = 0, anchor='mm'):
        self.r.draw_text(self.space.column_of(position), y, symbol, font, self.style.text, angle, anchor)


def tier_index(i: int, steps) -> int:
    """Index of the coarsest step dividing i. Steps run coarse to fine, the last being 1."""
    return next((n for n, step in enumerate(steps) if i % step == 0), len(steps) - 1)


def zone_ticks(config: MatConfig, role: ZoneRole, include_start=True, include_end=True):
    """
    Yields (position, tier) for each tick of a zone. Ticks fall on whole multiples of the zone's
    finest spacing, counted from the takeoff line in integers so no error accumulates; each
    takes the coarsest tier whose spacing divides it.
    """
    zone, tiers = config.zone(role), config.tiers_for(role)
    if zone is None or not tiers:
        return
    finest = tiers[-1].spacing
    steps = [round(tier.spacing / finest) for tier in tiers]
    i_start = math.ceil(zone.start / finest - EPS)
    i_end = math.floor(zone.end / finest + EPS)
    if not include_start and math.isclose(i_start * finest, zone.start, abs_tol=EPS):
        i_start += 1
    if not include_end and math.isclose(i_end * finest, zone.end, abs_tol=EPS):
        i_end -= 1
    for i in range(i_start, i_end + 1):
        yield i * finest, tiers[tier_index(i, steps)]


MAX_SURFACE_PIXELS = 1 << 28


def new_surface(config: MatConfig, space: PixelSpace) -> Image.Image:
    w, h = space.surface_size(config)
    if w < 1 or h < 1 or w * h > MAX_SURFACE_PIXELS:
        raise SurfaceAllocationError(f'Cannot allocate a {w}x{h} surface at {space.pixels_per_meter} px/m')
    try:
        return Image.new('RGB', (w, h), Color.to_pil(config.style.background)[:3])
    except MemoryError as e:
        raise SurfaceAllocationError(f'Out of memory for a {w}x{h} surface') from e


def draw_background(r: Renderer):
    r.r.fill_rect(0, 0, r.w, r.h, r.style.background)


def draw_speckle(r: Renderer):
    """Faint specks for a matte look. Cosmetic, and the only random layer."""
    if r.rng is None:
        return
    for _ in range(r.config.speck_count):
        x, y = int(r.rng.random() * r.w), int(r.rng.random() * r.h)
        size = max(1, round(r.rng.uniform(0.5, 2.5)))
        r.r.fill_rect(x, y, size, size, r.style.speck)


def draw_flight_ticks(r: Renderer):
    """Origin line across the full width, then the sparse flight zone ticks"""
    sp = r.space
    r.r.draw_tick(sp.column_of(0), r.center_y, r.h, sp.px(r.config.origin_line_width), r.style.scale)
    for position, tier in zone_ticks(r.config, ZoneRole.FLIGHT, include_start=False, include_end=False):
        r.draw_tick(position, tier)


def draw_precision_ticks(r: Renderer):
    """Every finest tick across the landing zone, then the sparse extension past it"""
    for position, tier in zone_ticks(r.config, ZoneRole.LANDING):
        r.draw_tick(position, tier)
    for position, tier in zone_ticks(r.config, ZoneRole.EXTENDED, include_start=False):
        r.draw_tick(position, tier)


def draw_simplified_labels(r: Renderer):
    cfg, sp, s = r.config, r.space, r.style
    landing = cfg.zone(ZoneRole.LANDING)
    # Vertical titles, reading top to bottom
    r.draw_label('0mm (takeoff line)', -0.08, r.center_y, s.font_for(sp.px(0.035), bold=True), angle=-90)
    r.draw_label(f'{fmt_m(landing.start)} (precision start)', landing.start - 0.05, r.center_y,
                 s.font_for(sp.px(0.03), bold=True), angle=-90)
    # Slanted distance labels along the bottom edge
    y = r.h - sp.to_pixels(0.04)
    landing_mm, total_mm = round(landing.start * 1000), round(cfg.total_length * 1000)
    f_sm = s.numeral_font_for(sp.px(0.014))
    f_lg = s.numeral_font_for(sp.px(0.018), bold=True)
    for mm in range(0, landing_mm, 500):
        r.draw_label(f'{mm}mm' if mm else '0', mm / 1000, y, f_sm, angle=45, anchor='mt')
    for mm in range(math.ceil(landing_mm / 500) * 500, total_mm + 1, 100):
        r.draw_label(f'{mm / 1000:.1f}m', mm / 1000, y, f_lg, angle=45, anchor='mt')


def detailed_label_marks(config: MatConfig) -> tuple[int, list[int], list[int]]:
    """
    Millimeter marks of the detailed layout: its title and dense labels start 20cm ahead of the
    landing zone, with sparse labels every 20cm before that.
    """
    dense_start = round(config.zone(ZoneRole.LANDING).start * 1000) - 200
    total_mm = round(config.total_length * 1000)
    return dense_start, list(range(200, dense_start, 200)), list(range(dense_start, total_mm + 1, 100))


def draw_detailed_labels(r: Renderer):
    cfg, sp, s = r.config, r.space, r.style
    title_mm, sparse_mms, dense_mms = detailed_label_marks(cfg)
    y = r.h - sp.to_pixels(0.08)
    r.draw_label('0mm (takeoff line)', 0, y, s.font_for(sp.px(0.025), bold=True), angle=90, anchor='ms')
    r.draw_label(f'{title_mm}mm (precision start)', title_mm / 1000, y,
                 s.font_for(sp.px(0.022), bold=True), angle=90, anchor='ms')
    y = r.h - sp.to_pixels(0.035)
    legend = f'{fmt_cm(cfg.tiers_for(ZoneRole.LANDING)[-1].spacing)}/{fmt_cm(cfg.tiers_for(ZoneRole.FLIGHT)[-1].spacing)}'
    f_sparse = s.numeral_font_for(sp.px(0.018))
    r.draw_label(legend, 0, y, f_sparse, angle=45, anchor='mt')
    for mm in sparse_mms:
        r.draw_label(f'{mm}mm', mm / 1000, y, f_sparse, angle=45, anchor='mt')
    f_dense = s.numeral_font_for(sp.px(0.014))
    for mm in dense_mms:
        r.draw_label(f'{mm}mm', mm / 1000, y, f_dense, angle=45, anchor='mt')


def draw_labels(r: Renderer):
    if r.config.label_style == LabelStyle.DETAILED:
        draw_detailed_labels(r)
    else:
        draw_simplified_labels(r)


def draw_border(r: Renderer):
    """Outer stroke plus a faint inset line. Clips any tick that overran the edge."""
    sp = r.space
    r.r.draw_box(0, 0, r.w, r.h, r.style.border, width=sp.px(r.config.border_width))
    inset = round(sp.to_pixels(r.config.border_inset))
    r.r.draw_box(inset, inset, r.w - 2 * inset, r.h - 2 * inset, r.style.border_inner)


@dataclass(frozen=True)
class MarkerBox:
    """Pixel footprint of one placed marker: the quiet zone square with the core centered in it"""
    placement: MarkerPlacement
    x0: int
    y0: int
    core_px: int
    quiet_px: int

    @property
    def side_px(self) -> int:
        return self.core_px + 2 * self.quiet_px

    @property
    def bounds(self) -> tuple[int, int, int, int]:
        return self.x0, self.y0, self.x0 + self.side_px, self.y0 + self.side_px


def marker_boxes(config: MatConfig, space: PixelSpace) -> list[MarkerBox]:
    spec = config.markers
    _, surface_h = space.surface_size(config)
    core_px, quiet_px = round(space.to_pixels(spec.core_size)), round(space.to_pixels(spec.quiet_zone))
    side_px = core_px + 2 * quiet_px
    margin_px = round(space.to_pixels(spec.margin))
    result = []
    for placement in spec.placements():
        x0 = round(space.column_of(placement.position) - side_px / 2)
        y0 = margin_px if placement.side == Side.LEFT else surface_h - side_px - margin_px
        result.append(MarkerBox(placement, x0, y0, core_px, quiet_px))
    return result


def draw_markers(r: Renderer):
    """
    Each marker gets its own white quiet zone, then the bare marker (no built-in quiet zone)
    centered on it. Drawn last so nothing can occlude a marker.
    """
    for box in marker_boxes(r.config, r.space):
        r.r.fill_rect(box.x0, box.y0, box.side_px, box.side_px, Color.WHITE)
        r.r.paste(encode_marker(box.placement.marker_id, box.core_px, 0), box.x0 + box.quiet_px, box.y0 + box.quiet_px)


Layer = Callable[[Renderer], None]

LAYERS: tuple[Layer, ...] = (
    draw_background,
    draw_speckle,
    draw_flight_ticks,
    draw_precision_ticks,
    draw_labels,
    draw_border,
    draw_markers,
)
"""Applied in order; later layers paint over earlier ones."""


def check_resolution(config: MatConfig, space: PixelSpace):
    """Markers need at least one whole pixel per grid cell to stay bit-exact."""
    core_px = round(space.to_pixels(config.markers.core_size))
    if core_px < MARKER_GRID:
        raise ConfigError(f'At {space.pixels_per_meter:g} px/m a marker core is {core_px}px, '
                          f'below the {MARKER_GRID}px needed for its cells')


def render_mat(config: MatConfig, space: PixelSpace = None, layers=LAYERS, seed=None, speckle=True) -> Image.Image:
    config.validate()
    space = space or PixelSpace.for_config(config)
    check_resolution(config, space)
    img = new_surface(config, space)
    r = Renderer(RasterOut.for_image(img), space, config, random.Random(seed) if speckle else None)
    for layer in layers:
        layer(r)
    return img


# ----------------------6. Exports----------------------------


@dataclass
class RenderedMesh:
    """A flat textured quad. Owns its texture until released."""
    mesh: trimesh.Trimesh
    texture: Image.Image

    @property
    def released(self):
        return self.mesh is None

    def release(self):
        if self.texture is not None:
            self.texture.close()
        self.mesh = self.texture = None

    def export(self, filename: str, file_type='glb'):
        self.mesh.export(filename, file_type=file_type)
        print(f'Mesh saved to: file://{os.path.abspath(filename)}')


class MatGenerator:
    """Owns one mat surface and the mesh textured from it, built from a validated config."""

    def __init__(self, config: MatConfig = None, pixels_per_meter: float = None,
                 speckle: bool = True, seed: int = None, layers=LAYERS):
        self.config = (config or ReferenceMat).validate()
        self.space = PixelSpace.for_config(self.config, pixels_per_meter)
        self.speckle = speckle
        self.seed = seed
        self.layers = layers
        self._surface: Image.Image = None
        self._mesh: RenderedMesh = None

    @property
    def size(self) -> WH:
        return self.space.surface_size(self.config)

    @property
    def surface(self) -> Image.Image:
        if self._surface is None:
            self.generate()
        return self._surface

    @property
    def mesh(self) -> RenderedMesh:
        if self._mesh is None:
            self._mesh = self.to_textured_mesh()
        return self._mesh

    def generate(self) -> Image.Image:
        """Draw a fresh surface. A mesh textured from the previous surface is released."""
        surface = render_mat(self.config, self.space, self.layers, seed=self.seed, speckle=self.speckle)
        if self._mesh is not None:
            self._mesh.release()
            self._mesh = None
        self._surface = surface
        return self._surface

    def placements(self) -> list[MarkerPlacement]:
        return self.config.markers.placements()

    def marker_boxes(self) -> list[MarkerBox]:
        return marker_boxes(self.config, self.space)

    def encode(self, fmt='png', quality: float = 1.0) -> bytes:
        """Encoded image bytes; quality runs 0..1 and only affects JPEG."""
        out_format = OutFormat.of(fmt)
        buf = io.BytesIO()
        if out_format == OutFormat.JPEG:
            self.surface.save(buf, 'JPEG', quality=min(100, max(1, round(quality * 100))))
        else:
            self.surface.save(buf, 'PNG')
        return buf.getvalue()

    def data_url(self, fmt='image/png', quality: float = 1.0) -> str:
        out_format = OutFormat.of(fmt)
        return f'data:{out_format.mime};base64,' + base64.b64encode(self.encode(out_format, quality)).decode('ascii')

    def save_image(self, filename: str = 'jump-mat.png', fmt=None, quality: float = 1.0) -> str:
        output_full_path = os.path.abspath(filename)
        with open(output_full_path, 'wb') as f:
            f.write(self.encode(fmt or os.path.splitext(filename)[1] or OutFormat.PNG, quality))
        print(f'Result saved to: file://{output_full_path}')
        return output_full_path

    def to_textured_mesh(self) -> RenderedMesh:
        """
        Quad on the ground plane (normal +Y) spanning the whole surface, with the origin line at x = 0
        and the raster's top edge toward -Z. The mesh owns a copy of the surface as its texture.
        """
        cfg = self.config
        x0, x1, z = -cfg.leading_offset, cfg.total_length, cfg.total_width / 2
        vertices = np.array([[x0, 0, z], [x1, 0, z], [x1, 0, -z], [x0, 0, -z]], dtype=np.float64)
        faces = np.array([[0, 1, 2], [0, 2, 3]], dtype=np.int64)
        uv = np.array([[0, 0], [1, 0], [1, 1], [0, 1]], dtype=np.float64)
        texture = self.surface.copy()
        material = trimesh.visual.material.PBRMaterial(
            baseColorTexture=texture,
            roughnessFactor=0.92,
            metallicFactor=0.0,
            doubleSided=True,
        )
        mesh = trimesh.Trimesh(vertices=vertices, faces=faces,
                               visual=trimesh.visual.TextureVisuals(uv=uv, material=material), process=False)
        return RenderedMesh(mesh, texture)

    def regenerate(self) -> RenderedMesh:
        """Release the current mesh, redraw every layer, and build the replacement mesh."""
        self.generate()
        self._mesh = self.to_textured_mesh()
        return self._mesh


def spec_report(config: MatConfig, generated_at: str = None) -> str:
    """Plain-text technical specification for the mat maker. Same config, same text."""
    config.validate()
    cfg, spec, s, ps = config, config.markers, config.style, config.print_spec
    space = PixelSpace.for_config(cfg)
    w, h = space.surface_size(cfg)
    rule = '=' * 60
    lines = [
        'Standing Long Jump Measurement Mat - Technical Specification',
        rule,
        '',
        '1. Overall Dimensions',
        f'- Total length: {fmt_m(cfg.total_length + cfg.leading_offset)} '
        f'(including {fmt_cm(cfg.leading_offset)} takeoff zone)',
        f'- Total width: {fmt_m(cfg.total_width)} ({fmt_cm(cfg.total_width)})',
        f'- Recommended thickness: {fmt_mm(ps.thickness_min)} to {fmt_mm(ps.thickness_max)}',
        f'- Print raster: {w} x {h} px at {space.pixels_per_meter:g} px/m',
        '',
        '2. Zones',
    ]
    for n, zone in enumerate(cfg.zones, start=1):
        lines.append(f'{n}. {zone.name or zone.role.value}: {fmt_m(zone.start)} to {fmt_m(zone.end)}')
        tiers = cfg.tiers_for(zone.role)
        lines.append(f'   - Tick spacing: {", ".join(fmt_cm(t.spacing) for t in tiers)}' if tiers
                     else '   - No ticks')
    left = [p.marker_id for p in spec.placements() if p.side == Side.LEFT]
    right = [p.marker_id for p in spec.placements() if p.side == Side.RIGHT]
    lines += [
        '',
        '3. Fiducial Markers',
        f'- Dictionary: {DICTIONARY.name} ({len(DICTIONARY)} patterns, {MARKER_BITS}x{MARKER_BITS} bits)',
        f'- Core size: {fmt_cm(spec.core_size)} x {fmt_cm(spec.core_size)}',
        f'- White quiet zone: {fmt_cm(spec.quiet_zone)}',
        f'- Total footprint: {fmt_cm(spec.footprint)} x {fmt_cm(spec.footprint)}',
        f'- Edge margin: {fmt_cm(spec.margin)}',
        f'- Positions: {", ".join(fmt_m(p) for p in spec.positions)}, both sides',
        f'- Count: {len(left) + len(right)}',
        f'- IDs: left {", ".join(map(str, left))}; right {", ".join(map(str, right))}',
        '',
        '4. Tick Lines',
        f'- Origin line: width {fmt_mm(cfg.origin_line_width)}, full mat width, color {s.scale}',
    ]
    for tier in cfg.tiers:
        lines.append(f'- {tier.key} ({tier.zone.value}): every {fmt_cm(tier.spacing)}, '
                     f'length {fmt_cm(tier.line_length)}, width {fmt_mm(tier.line_width)}, '
                     f'color {tier.color or s.scale}')
    lines += [
        '',
        '5. Colors',
        f'- Base: {s.background} (matte)',
        f'- Ticks and labels: {s.scale} / {s.text}',
        f'- Border: {s.border}, width {fmt_mm(cfg.border_width)}',
        '- Markers: #000000 on #FFFFFF',
        '',
        '6. Material',
        f'- {ps.material}',
        f'- Surface: {ps.surface}',
        '',
        '7. Printing Tolerances',
        f'- Marker accuracy: +/-{fmt_mm(ps.marker_tolerance)}',
        f'- Tick position accuracy: +/-{fmt_mm(ps.tick_tolerance)}',
        f'- Color difference: Delta E < {ps.max_delta_e:g}',
        '',
        rule,
    ]
    if generated_at:
        lines.append(f'Generated: {generated_at}')
    return '\n'.join(lines) + '\n'


# ----------------------7. Commands------------------------------------------


def main():
    """CLI processor for rendering a mat and its companion artifacts."""
    import argparse
    args_parser = argparse.ArgumentParser()
    args_parser.add_argument('--config',
                             default=ReferenceMat.name,
                             help='Mat configuration: an example name or a TOML file path')
    args_parser.add_argument('--ppm',
                             type=float,
                             help=f'Pixels per meter (default {ReferenceMat.pixels_per_meter})')
    args_parser.add_argument('--format',
                             default=OutFormat.PNG.value,
                             choices=[f.value for f in OutFormat],
                             help='Raster output format')
    args_parser.add_argument('--quality',
                             type=float,
                             default=1.0,
                             help='JPEG quality, 0 to 1')
    args_parser.add_argument('--labels',
                             choices=[s.value for s in LabelStyle],
                             help='Label strategy (from the config by default)')
    args_parser.add_argument('--seed',
                             type=int,
                             help='Seed for the background speckle')
    args_parser.add_argument('--no-speckle',
                             action='store_true',
                             help='Leave out the background speckle, for reproducible output')
    args_parser.add_argument('--specs',
                             action='store_true',
                             help='Also write the technical specification text')
    args_parser.add_argument('--mesh',
                             action='store_true',
                             help='Also write the textured mesh as GLB')
    args_parser.add_argument('--suffix',
                             help='Output filename suffix for variations')
    cli_args = args_parser.parse_args()
    config = MatConfig.load(cli_args.config)
    if cli_args.labels:
        config = replace(config, label_style=LabelStyle(cli_args.labels))
    out_format = OutFormat(cli_args.format)
    basename = f"{config.name}.JumpMat{'.' + cli_args.suffix if cli_args.suffix else ''}"

    start_time = time.process_time()
    generator = MatGenerator(config, cli_args.ppm, speckle=not cli_args.no_speckle, seed=cli_args.seed)
    w, h = generator.size
    generator.generate()
    print(f'Mat render ({w}x{h}) finished at: {round(time.process_time() - start_time, 3)} seconds')
    generator.save_image(f'{basename}.{out_format.value}', out_format, cli_args.quality)

    if cli_args.specs:
        specs_filename = os.path.abspath(f'{basename}.specs.txt')
        with open(specs_filename, 'w', encoding='utf-8') as f:
            f.write(spec_report(config, generated_at=time.strftime('%Y-%m-%d %H:%M:%S')))
        print(f'Specification saved to: file://{specs_filename}')

    if cli_args.mesh:
        generator.mesh.export(f'{basename}.glb')

    print(f'Program finished at: {round(time.process_time() - start_time, 3)} seconds')


if __name__ == '__main__':
    main()
