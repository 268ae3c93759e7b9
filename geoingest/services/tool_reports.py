"""Parsers for the text reports of ogrinfo and gdalinfo.

The inspection tools print human-readable reports. This module turns them
into VectorMetadata and RasterMetadata. The scanning logic is expressed as
tables of line rules: a rule names the marker a line must contain, the
pattern that extracts values from it, and the metadata field it fills.

Parsing never raises on content. Lines that do not match leave their field
unset, so an empty or garbled report yields metadata with null fields.

Example:
    Parse an ogrinfo summary:
        >>> from geoingest.services import tool_reports
        >>> report = "Geometry: Polygon\\nFeature Count: 42\\n"
        >>> metadata = tool_reports.parse_vector_report(report)
        >>> metadata.geometry_type, metadata.feature_count
        ('Polygon', 42)
"""

from __future__ import annotations

import dataclasses
import re
from typing import TYPE_CHECKING, Any

from geoingest.db import models as db_models

if TYPE_CHECKING:
    from collections.abc import Callable

PARSER_VERSION = "1"

DEFAULT_RASTER_SRID = 4326

_NUMBER = r"[-+]?\d+(?:\.\d*)?(?:[eE][-+]?\d+)?"

CORNER_BLOCK_MARKER = "Corner Coordinates:"
CORNER_BLOCK_LINES = 5


@dataclasses.dataclass(frozen=True)
class LineRule:
    """Maps one report marker to one metadata field.

    Attributes:
        marker: Substring that selects candidate lines.
        pattern: Regular expression applied to a selected line.
        field: Name of the field the converted match is stored under.
        convert: Turns the match into the field value.
        first_wins: Keep the first matching line instead of the last.
    """

    marker: str
    pattern: re.Pattern[str]
    field: str
    convert: Callable[[re.Match[str]], Any]
    first_wins: bool = False

    def apply(self, line: str) -> Any | None:
        if self.marker not in line:
            return None
        match = self.pattern.search(line)
        if match is None:
            return None
        return self.convert(match)


def _extent_from_pairs(match: re.Match[str]) -> db_models.BBox:
    minx, miny = (float(v) for v in match.group(1).split(","))
    maxx, maxy = (float(v) for v in match.group(2).split(","))
    return (minx, miny, maxx, maxy)


VECTOR_RULES: tuple[LineRule, ...] = (
    LineRule(
        "Geometry:",
        re.compile(r"Geometry: (\w[\w ]*\w|\w)"),
        "geometry_type",
        lambda m: m.group(1),
    ),
    LineRule(
        "Feature Count:",
        re.compile(r"Feature Count: (\d+)"),
        "feature_count",
        lambda m: int(m.group(1)),
    ),
    LineRule(
        "Extent:",
        re.compile(
            rf"Extent: \(\s*({_NUMBER}\s*,\s*{_NUMBER})\s*\)"
            rf"\s*-\s*\(\s*({_NUMBER}\s*,\s*{_NUMBER})\s*\)"
        ),
        "extent",
        _extent_from_pairs,
    ),
)

RASTER_RULES: tuple[LineRule, ...] = (
    LineRule(
        "Size is",
        re.compile(r"Size is (\d+),\s*(\d+)"),
        "size",
        lambda m: db_models.RasterSize(int(m.group(1)), int(m.group(2))),
    ),
    *(
        LineRule(
            marker,
            re.compile(r".*\S"),
            "projection",
            lambda m: m.group(0).strip(),
            first_wins=True,
        )
        for marker in ("PROJCS", "GEOGCS", "PROJCRS", "GEOGCRS")
    ),
    LineRule(
        "EPSG",
        re.compile(r"EPSG[\"\s]*[:,][\"\s]*(\d+)", re.IGNORECASE),
        "srid",
        lambda m: int(m.group(1)),
    ),
    LineRule(
        "Pixel Size",
        re.compile(rf"Pixel Size = \(\s*({_NUMBER})\s*,\s*({_NUMBER})\s*\)"),
        "pixel_size",
        lambda m: db_models.PixelSize(float(m.group(1)), float(m.group(2))),
    ),
)

_BAND_PATTERN = re.compile(r"\bBand (\d+)\b")
_BAND_TYPE_PATTERN = re.compile(r"Type=(\w+)")
_COORDINATE_PAIR = re.compile(rf"\(\s*({_NUMBER})\s*,\s*({_NUMBER})\s*\)")


def _scan(lines: list[str], rules: tuple[LineRule, ...]) -> dict[str, Any]:
    """Apply every rule to every line.

    A later match overwrites an earlier one unless the rule says otherwise.
    """
    fields: dict[str, Any] = {}
    for line in lines:
        for rule in rules:
            value = rule.apply(line)
            if value is None:
                continue
            if rule.first_wins and rule.field in fields:
                continue
            fields[rule.field] = value
    return fields


def parse_vector_report(report: str) -> db_models.VectorMetadata:
    """Parse the output of ``ogrinfo -al -so``.

    Recognizes ``Geometry:``, ``Feature Count:`` and ``Extent: (minx, miny)
    - (maxx, maxy)`` lines.

    Args:
        report: Full text report.

    Returns:
        VectorMetadata with whatever fields were found. The report carries
        no SRID marker, so srid is always None here.
    """
    fields = _scan(report.splitlines(), VECTOR_RULES)
    return db_models.VectorMetadata(**fields)


def _corner_extent(lines: list[str]) -> db_models.BBox | None:
    """Bounding box of the coordinate pairs after ``Corner Coordinates:``."""
    for index, line in enumerate(lines):
        if CORNER_BLOCK_MARKER not in line:
            continue
        xs: list[float] = []
        ys: list[float] = []
        block = lines[index + 1:index + 1 + CORNER_BLOCK_LINES]
        for corner_line in block:
            match = _COORDINATE_PAIR.search(corner_line)
            if match:
                xs.append(float(match.group(1)))
                ys.append(float(match.group(2)))
        if xs:
            return (min(xs), min(ys), max(xs), max(ys))
    return None


def _bands(lines: list[str]) -> tuple[db_models.Band, ...]:
    """Collect ``Band N ... Type=T`` pairs in report order."""
    bands: list[db_models.Band] = []
    for line in lines:
        band_match = _BAND_PATTERN.search(line)
        if band_match:
            bands.append(db_models.Band(int(band_match.group(1))))
        type_match = _BAND_TYPE_PATTERN.search(line)
        if bands and type_match and bands[-1].type is None:
            bands[-1] = dataclasses.replace(
                bands[-1],
                type=type_match.group(1),
            )
    return tuple(bands)


def parse_raster_report(report: str) -> db_models.RasterMetadata:
    """Parse the output of ``gdalinfo``.

    Recognizes ``Size is W, H``, ``PROJCS``/``GEOGCS`` lines, ``EPSG`` codes,
    the five lines after ``Corner Coordinates:``, ``Pixel Size = (x, y)``
    and repeated ``Band N`` / ``Type=`` pairs.

    Args:
        report: Full text report.

    Returns:
        RasterMetadata with whatever fields were found; srid falls back to
        4326 when no EPSG code is present.
    """
    lines = report.splitlines()
    fields = _scan(lines, RASTER_RULES)
    fields.setdefault("srid", DEFAULT_RASTER_SRID)
    return db_models.RasterMetadata(
        extent=_corner_extent(lines),
        bands=_bands(lines),
        **fields,
    )
