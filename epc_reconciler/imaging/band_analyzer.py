"""Read current and potential EPC bands from the rating graphic by colour.

The graphic has seven coloured band bars (A-G) down the left and two arrows
on the right pointing at the current and potential bands. The bars are
located first, then the arrow colours are matched against band colours and
checked against the bars' vertical positions.
"""

import logging
import math
from collections import Counter
from dataclasses import dataclass
from typing import Iterator, Optional

from pydantic import BaseModel, Field

from epc_reconciler.imaging.raster import RasterBuffer

logger = logging.getLogger(__name__)

RGB = tuple[int, int, int]


def _hex_to_rgb(value: str) -> RGB:
    value = value.lstrip("#")
    return int(value[0:2], 16), int(value[2:4], 16), int(value[4:6], 16)


@dataclass(frozen=True)
class EpcBand:
    letter: str
    score: int
    color: RGB


EPC_BANDS = (
    EpcBand("A", 92, _hex_to_rgb("#008054")),
    EpcBand("B", 81, _hex_to_rgb("#2c9f29")),
    EpcBand("C", 69, _hex_to_rgb("#8DCE46")),
    EpcBand("D", 55, _hex_to_rgb("#FFD500")),
    EpcBand("E", 39, _hex_to_rgb("#f7af1d")),
    EpcBand("F", 21, _hex_to_rgb("#ed6823")),
    EpcBand("G", 1, _hex_to_rgb("#E9153B")),
)
BANDS_BY_LETTER = {band.letter: band for band in EPC_BANDS}

# Colour comparison (Euclidean distance in RGB)
COLOR_SIMILARITY_THRESHOLD = 55
INDICATOR_SIMILARITY_THRESHOLD = 70
DOMINANT_MATCH_THRESHOLD = 25
MIN_ALPHA_THRESHOLD = 200
IGNORE_COLOR_THRESHOLD = 50
MIN_PIXEL_COUNT_THRESHOLD = 10

# Band bar scan
SCAN_X_FRACTION = 0.15
SCAN_WIDTH_FRACTION = 0.1
SCAN_START_FRACTION = 0.1
SCAN_END_FRACTION = 0.95
MIN_COLOR_STREAK = 3
MIN_BANDS_LOCATED = 5

# Plausible gap between two located bars, as a fraction of image height
MIN_INTERPOLATION_GAP = 0.005
MAX_INTERPOLATION_GAP = 0.2

VERTICAL_TOLERANCE_BANDS = 2.5
# The dominant indicator colour settles both bands only when its band holds at
# least this share of validated hits. Two comparable arrows (current and
# potential) never collapse to one band, and exact-colour A and B arrows still
# reach the A/B rule below.
DOMINANT_BAND_SHARE = 2 / 3


@dataclass(frozen=True)
class RelativeRegion:
    """Rectangle in fractions of image width and height."""

    x: float
    y: float
    width: float
    height: float
    estimated: bool = False

    @property
    def center_y(self) -> float:
        return self.y + self.height / 2


BAND_REGION_X = 0.05
BAND_REGION_WIDTH = 0.25
INDICATOR_REGION = RelativeRegion(x=0.75, y=0.15, width=0.2, height=0.7)
INDICATOR_SAMPLES_X = 20
INDICATOR_SAMPLES_Y = 60


class BandAnalysisResult(BaseModel):
    """Outcome of analysing one EPC graphic; ``error`` is set on failure."""

    current_band: Optional[str] = None
    potential_band: Optional[str] = None
    error: Optional[str] = None
    located_bands: list[str] = Field(default_factory=list)
    estimated_bands: list[str] = Field(default_factory=list)
    indicator_hits: dict[str, int] = Field(default_factory=dict)
    validated_bands: list[str] = Field(default_factory=list)
    resolution: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None and self.current_band is not None


def color_distance(first: RGB, second: RGB) -> float:
    return math.dist(first, second)


def is_color_ignored(r: int, g: int, b: int, a: int) -> bool:
    """Transparent, near-white, near-black and grey pixels carry no band colour."""
    if a < MIN_ALPHA_THRESHOLD:
        return True
    if r > 255 - IGNORE_COLOR_THRESHOLD and g > 255 - IGNORE_COLOR_THRESHOLD and b > 255 - IGNORE_COLOR_THRESHOLD:
        return True
    if r < IGNORE_COLOR_THRESHOLD and g < IGNORE_COLOR_THRESHOLD and b < IGNORE_COLOR_THRESHOLD:
        return True
    avg = (r + g + b) / 3
    return abs(r - avg) + abs(g - avg) + abs(b - avg) < IGNORE_COLOR_THRESHOLD


def _sample_points(
    raster: RasterBuffer, region: RelativeRegion, samples_x: int, samples_y: int
) -> Iterator[tuple[int, int]]:
    start_x = math.floor(region.x * raster.width)
    start_y = math.floor(region.y * raster.height)
    region_width = math.floor(region.width * raster.width)
    region_height = math.floor(region.height * raster.height)
    if region_width <= 0 or region_height <= 0:
        return
    for yi in range(samples_y):
        y = start_y + math.floor(yi / max(1, samples_y - 1) * (region_height - 1))
        for xi in range(samples_x):
            x = start_x + math.floor(xi / max(1, samples_x - 1) * (region_width - 1))
            yield min(max(x, 0), raster.width - 1), min(max(y, 0), raster.height - 1)


def _mode_color(colors: list[RGB]) -> Optional[RGB]:
    if not colors:
        return None
    return Counter(colors).most_common(1)[0][0]


def dominant_color(
    raster: RasterBuffer, region: RelativeRegion, samples_x: int = 10, samples_y: int = 10
) -> Optional[RGB]:
    """Most frequent non-ignored colour on a sample grid over ``region``."""
    colors = []
    for x, y in _sample_points(raster, region, samples_x, samples_y):
        r, g, b, a = raster.pixel(x, y)
        if not is_color_ignored(r, g, b, a):
            colors.append((r, g, b))
    return _mode_color(colors)


def locate_band_regions(raster: RasterBuffer) -> dict[str, RelativeRegion]:
    """Scan a vertical strip near the left edge for each band's bar, A to G.

    A bar is a run of at least ``MIN_COLOR_STREAK`` rows where over a third of
    the strip matches the band colour. Each band's scan starts below the
    previous band found.
    """
    width, height = raster.width, raster.height
    scan_x = math.floor(width * SCAN_X_FRACTION)
    scan_width = max(1, math.floor(width * SCAN_WIDTH_FRACTION))
    end_y = math.floor(height * SCAN_END_FRACTION)

    regions: dict[str, RelativeRegion] = {}
    last_y = 0
    for band in EPC_BANDS:
        start_y = last_y + 5 if last_y > 0 else math.floor(height * SCAN_START_FRACTION)
        streak = 0
        streak_start = -1
        found = None

        for y in range(start_y, end_y):
            matches = 0
            for x in range(scan_x, min(scan_x + scan_width, width)):
                r, g, b, a = raster.pixel(x, y)
                if not is_color_ignored(r, g, b, a) and color_distance((r, g, b), band.color) < COLOR_SIMILARITY_THRESHOLD:
                    matches += 1

            if matches > scan_width / 3:
                if streak_start < 0:
                    streak_start = y
                streak += 1
                continue

            if streak >= MIN_COLOR_STREAK and y - 1 > streak_start:
                found = (streak_start, y - 1)
                break
            streak = 0
            streak_start = -1
        else:
            if streak >= MIN_COLOR_STREAK and end_y - 1 > streak_start:
                found = (streak_start, end_y - 1)

        if found is None:
            continue
        top, bottom = found
        regions[band.letter] = RelativeRegion(
            x=BAND_REGION_X,
            y=top / height,
            width=BAND_REGION_WIDTH,
            height=(bottom - top) / height,
        )
        last_y = bottom
        logger.debug("Band %s bar at rows %d-%d", band.letter, top, bottom)

    return regions


def fill_band_gaps(regions: dict[str, RelativeRegion]) -> dict[str, RelativeRegion]:
    """Estimate bars the scan missed.

    Bars between two located bars share the gap evenly when the gap is
    plausible; the rest are extrapolated one step at a time from a neighbour,
    assuming equal height and the observed bar spacing. Estimates that fall
    outside the image are dropped.
    """
    letters = [band.letter for band in EPC_BANDS]
    filled = dict(regions)
    located = [i for i, letter in enumerate(letters) if letter in regions]
    if not located:
        return filled

    pitches = []
    for lo, hi in zip(located, located[1:]):
        upper, lower = regions[letters[lo]], regions[letters[hi]]
        pitches.append((lower.y - upper.y) / (hi - lo))
        missing = hi - lo - 1
        if missing == 0:
            continue
        gap_top = upper.y + upper.height
        gap = lower.y - gap_top
        if not MIN_INTERPOLATION_GAP <= gap <= MAX_INTERPOLATION_GAP:
            continue
        slot = gap / missing
        for offset in range(missing):
            filled[letters[lo + 1 + offset]] = RelativeRegion(
                x=BAND_REGION_X,
                y=gap_top + offset * slot,
                width=BAND_REGION_WIDTH,
                height=slot,
                estimated=True,
            )

    changed = True
    while changed:
        changed = False
        for index, letter in enumerate(letters):
            if letter in filled:
                continue
            above = filled.get(letters[index - 1]) if index > 0 else None
            below = filled.get(letters[index + 1]) if index + 1 < len(letters) else None
            neighbour = above or below
            if neighbour is None:
                continue
            pitch = sum(pitches) / len(pitches) if pitches else neighbour.height
            y = neighbour.y + pitch if above is not None else neighbour.y - pitch
            if y < 0 or y + neighbour.height > 1:
                continue
            filled[letter] = RelativeRegion(
                x=BAND_REGION_X, y=y, width=BAND_REGION_WIDTH, height=neighbour.height, estimated=True
            )
            changed = True

    return filled


def analyze_band_image(raster: RasterBuffer) -> BandAnalysisResult:
    """Work out the current and potential bands of an EPC rating graphic."""
    if raster.width <= 0 or raster.height <= 0:
        return BandAnalysisResult(error="Image has no pixels.")

    located = locate_band_regions(raster)
    regions = fill_band_gaps(located)
    result = BandAnalysisResult(
        located_bands=sorted(located),
        estimated_bands=sorted(set(regions) - set(located)),
    )
    if len(regions) < MIN_BANDS_LOCATED:
        logger.info("Located %d of %d band bars", len(regions), len(EPC_BANDS))
        result.error = f"Located only {len(regions)} of {len(EPC_BANDS)} reference bands."
        return result

    # Actual rendered colour of each bar, falling back to the canonical one
    actual_colors = {}
    for letter, region in regions.items():
        sampled = dominant_color(raster, region, 8, 4)
        actual_colors[letter] = sampled or BANDS_BY_LETTER[letter].color

    samples = []
    for x, y in _sample_points(raster, INDICATOR_REGION, INDICATOR_SAMPLES_X, INDICATOR_SAMPLES_Y):
        r, g, b, a = raster.pixel(x, y)
        if not is_color_ignored(r, g, b, a):
            samples.append(((r, g, b), y))

    counts: Counter = Counter()
    y_sums: dict[str, int] = {}
    for color, y in samples:
        closest = None
        closest_distance = INDICATOR_SIMILARITY_THRESHOLD
        for band in EPC_BANDS:
            distance = color_distance(color, band.color)
            if distance < closest_distance:
                closest, closest_distance = band.letter, distance
        if closest is not None:
            counts[closest] += 1
            y_sums[closest] = y_sums.get(closest, 0) + y
    result.indicator_hits = dict(counts)

    validated = []
    for letter, count in counts.most_common():
        if count < MIN_PIXEL_COUNT_THRESHOLD:
            continue
        region = regions.get(letter)
        if region is None:
            logger.debug("Band %s has indicator hits but no bar to validate against", letter)
            continue
        mean_y = y_sums[letter] / count / raster.height
        if abs(mean_y - region.center_y) > region.height * VERTICAL_TOLERANCE_BANDS:
            logger.debug("Band %s indicator hits are at the wrong height", letter)
            continue
        validated.append(letter)
    result.validated_bands = validated

    if not validated:
        result.error = "Could not identify distinct & validated current/potential bands."
        return result

    dominant = _mode_color([color for color, _ in samples])
    if dominant is not None:
        tight = [
            letter
            for letter in validated
            if color_distance(dominant, actual_colors[letter]) < DOMINANT_MATCH_THRESHOLD
        ]
        validated_hits = sum(counts[letter] for letter in validated)
        if len(tight) == 1 and counts[tight[0]] >= DOMINANT_BAND_SHARE * validated_hits:
            result.current_band = result.potential_band = tight[0]
            result.resolution = "dominant-color"
            return result

        # TODO: review with product whether A/B should stay forced to B/B
        if len(validated) == 2 and set(validated) == {"A", "B"}:
            logger.info("Indicator shows only A and B; resolving as B/B")
            result.current_band = result.potential_band = "B"
            result.resolution = "forced-a-b"
            return result

    if len(validated) == 1:
        logger.info("Only band %s validated; using it for current and potential", validated[0])
        result.current_band = result.potential_band = validated[0]
        result.resolution = "single-band"
        return result

    top_two = sorted(
        (BANDS_BY_LETTER[letter] for letter in validated[:2]), key=lambda band: band.score
    )
    result.current_band = top_two[0].letter
    result.potential_band = top_two[1].letter
    result.resolution = "hit-count"
    return result
