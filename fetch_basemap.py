#!/usr/bin/env python3
"""
Fetch basemap imagery for an arbitrary bounding box from a slippy-map tile service.
Plans the covering tile grid, downloads tiles concurrently through a persistent
cache, stitches them into one raster and crops it to the exact bounding box.
"""

import argparse
import concurrent.futures
import datetime
import hashlib
import io
import logging
import math
import numbers
import os
import re
import sys
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import rasterio
import requests
from PIL import Image
from pyproj import Transformer
from rasterio.crs import CRS
from rasterio.transform import from_bounds
from rasterio.warp import Resampling
from requests.adapters import HTTPAdapter
from rich.logging import RichHandler
from rich.progress import Progress, SpinnerColumn, BarColumn, TextColumn, TimeElapsedColumn, TimeRemainingColumn

# Configure Rich logging
logging.basicConfig(
    level=logging.INFO,
    format='%(message)s',
    datefmt='[%X]',
    handlers=[RichHandler(rich_tracebacks=True, show_path=False)]
)
logger = logging.getLogger(__name__)

# Slippy-map tiles are square
TILE_SIZE = 256
# Pixel offsets run 0..255 across a tile, so 255 is the far edge
PIXEL_SPAN = TILE_SIZE - 1

# Web Mercator latitude limit (y = 0 at zoom 0)
MAX_LATITUDE = math.degrees(math.atan(math.sinh(math.pi)))

# Above this many tiles a fetch gets slow
MAX_TILES_ADVISORY = 40

DEFAULT_BBOX = [5.0, 52.0, 5.4, 52.2]  # [left, bottom, right, top], Utrecht
DEFAULT_ZOOM = 10
DEFAULT_TIMEOUT = 30
DEFAULT_MAX_WORKERS = 8
DEFAULT_CACHE_DIR = Path('.basemap_cache')
USER_AGENT = 'Basemap-Fetcher/1.0'

# Fully transparent white, used for tiles that could not be fetched
PLACEHOLDER_RGBA = (255, 255, 255, 0)

# Luminance weights for grayscale tiles
GRAYSCALE_WEIGHTS = np.array([0.30, 0.59, 0.11])

_TILE_URL_PATTERN = re.compile(
    r'^(?P<scheme>https?)://(?P<base>.+)/(?P<style>[^/]+)/(?P<projection>[^/]+)'
    r'/(?P<zoom>\d+)/(?P<x>\d+)/(?P<y>\d+)\.(?P<ext>\w+)$'
)


@dataclass(frozen=True)
class GeoBox:
    """Geographic bounding box in longitude/latitude degrees."""

    left: float
    bottom: float
    right: float
    top: float

    def __post_init__(self):
        values = (self.left, self.bottom, self.right, self.top)
        if not all(math.isfinite(v) for v in values):
            raise ValueError(f"bounding box has non-finite values: {values}")
        if not self.left < self.right:
            raise ValueError(f"bounding box left ({self.left}) must be less than right ({self.right})")
        if not self.bottom < self.top:
            raise ValueError(f"bounding box bottom ({self.bottom}) must be less than top ({self.top})")

    @classmethod
    def from_sequence(cls, values: Union[Sequence[float], Mapping[str, float]]) -> 'GeoBox':
        """Build a box from [left, bottom, right, top] or a mapping with those keys."""
        if isinstance(values, Mapping):
            try:
                return cls(*(float(values[k]) for k in ('left', 'bottom', 'right', 'top')))
            except KeyError as e:
                raise ValueError(f"bounding box is missing {e}") from None
        if len(values) != 4:
            raise ValueError("bounding box improperly specified, expected [left, bottom, right, top]")
        return cls(*(float(v) for v in values))

    def validate(self):
        """Check that the box lies inside the area Web Mercator can represent."""
        if self.left < -180.0 or self.right > 180.0:
            raise ValueError(f"longitudes must lie within [-180, 180], got {self.left}..{self.right}")
        if self.bottom < -MAX_LATITUDE or self.top > MAX_LATITUDE:
            raise ValueError(
                f"latitudes must lie within +/-{MAX_LATITUDE:.4f}, got {self.bottom}..{self.top}"
            )

    def contains(self, other: 'GeoBox') -> bool:
        return (self.left <= other.left and self.bottom <= other.bottom and
                self.right >= other.right and self.top >= other.top)

    def as_list(self) -> List[float]:
        return [self.left, self.bottom, self.right, self.top]


@dataclass(frozen=True)
class TileAddress:
    """Slippy-map tile address (zoom, column, row)."""

    zoom: int
    x: int
    y: int

    def validate(self):
        for name, value in (('zoom', self.zoom), ('x', self.x), ('y', self.y)):
            if isinstance(value, bool) or not isinstance(value, numbers.Integral):
                raise ValueError(f"tile {name} must be an integer, got {value!r}")
        if self.zoom < 0:
            raise ValueError(f"tile zoom must be non-negative, got {self.zoom}")
        n = 2 ** self.zoom
        if not (0 <= self.x < n and 0 <= self.y < n):
            raise ValueError(f"tile ({self.x}, {self.y}) out of range for zoom {self.zoom} (0..{n - 1})")


def geo_to_tile(lon: float, lat: float, zoom: int) -> Tuple[int, int, float, float]:
    """Convert lon/lat to the tile containing it and the pixel offset within that tile.

    Pixel offsets run from 0 (west/north edge) to 255 (east/south edge).
    Latitudes at the poles are outside Web Mercator and must not be passed.
    """
    n = 2 ** zoom
    lat_rad = math.radians(lat)
    tile_x = (lon + 180.0) / 360.0 * n
    tile_y = (1.0 - math.log(math.tan(lat_rad) + 1.0 / math.cos(lat_rad)) / math.pi) / 2.0 * n

    # The east/south edges of the world belong to the last tile
    x = min(max(int(math.floor(tile_x)), 0), n - 1)
    y = min(max(int(math.floor(tile_y)), 0), n - 1)
    return x, y, PIXEL_SPAN * (tile_x - x), PIXEL_SPAN * (tile_y - y)


def tile_to_geo(zoom: int, x: int, y: int, pixel_x=0.0, pixel_y=0.0):
    """Convert a tile address plus pixel offset back to (lon, lat).

    Pixel offsets may be numpy arrays, in which case arrays are returned.
    """
    n = 2 ** zoom
    lon = (x + np.asarray(pixel_x, dtype=float) / PIXEL_SPAN) / n * 360.0 - 180.0
    lat = np.degrees(np.arctan(np.sinh(np.pi * (1.0 - 2.0 * (y + np.asarray(pixel_y, dtype=float) / PIXEL_SPAN) / n))))
    if np.ndim(lon) == 0 and np.ndim(lat) == 0:
        return float(lon), float(lat)
    return lon, lat


def tile_bbox(address: TileAddress) -> GeoBox:
    """Geographic box covered exactly by one tile."""
    left, top = tile_to_geo(address.zoom, address.x, address.y)
    right, bottom = tile_to_geo(address.zoom, address.x, address.y, PIXEL_SPAN, PIXEL_SPAN)
    return GeoBox(left=left, bottom=bottom, right=right, top=top)


@dataclass(frozen=True)
class TileGrid:
    """Rectangular block of tiles at one zoom level."""

    zoom: int
    xs: range
    ys: range

    @property
    def addresses(self) -> List[TileAddress]:
        # North row first, west column first
        return [TileAddress(self.zoom, x, y) for y in self.ys for x in self.xs]

    @property
    def shape(self) -> Tuple[int, int]:
        """(rows, columns) of the grid."""
        return len(self.ys), len(self.xs)

    def __len__(self):
        return len(self.xs) * len(self.ys)


def plan_tile_grid(bbox: GeoBox, zoom: int) -> TileGrid:
    """Compute the smallest block of tiles whose union covers the bounding box."""
    corners = [
        (bbox.left, bbox.bottom),
        (bbox.right, bbox.bottom),
        (bbox.left, bbox.top),
        (bbox.right, bbox.top),
    ]
    tiles = [geo_to_tile(lon, lat, zoom)[:2] for lon, lat in corners]
    xs = [x for x, _ in tiles]
    ys = [y for _, y in tiles]

    grid = TileGrid(zoom, range(min(xs), max(xs) + 1), range(min(ys), max(ys) + 1))

    if len(grid) > MAX_TILES_ADVISORY:
        logger.warning(f"{len(grid)} tiles needed, this may take a while (try a smaller zoom).")
    else:
        logger.debug(f"Planned {len(grid)} tiles for bbox {bbox.as_list()} at zoom {zoom}")
    return grid


@dataclass(frozen=True)
class TileProvider:
    """A slippy-map tile service laid out as {style}/{projection}/{zoom}/{x}/{y}.{ext}."""

    name: str
    host: str
    path_prefix: str
    styles: Tuple[str, ...]
    projection: str = 'EPSG:3857'
    extension: str = 'png'
    min_zoom: int = 0
    max_zoom: int = 18
    attribution_template: str = ''

    @property
    def base(self) -> str:
        return f"{self.host}/{self.path_prefix}" if self.path_prefix else self.host

    def tile_url(self, style: str, address: TileAddress, https: bool = True) -> str:
        scheme = 'https' if https else 'http'
        return (f"{scheme}://{self.base}/{style}/{self.projection}/"
                f"{address.zoom}/{address.x}/{address.y}.{self.extension}")

    def attribution(self, year: Optional[int] = None) -> str:
        if year is None:
            year = datetime.date.today().year
        return self.attribution_template.format(year=year)


PDOK = TileProvider(
    name='PDOK',
    host='geodata.nationaalgeoregister.nl',
    path_prefix='tiles/service/wmts',
    styles=(
        'brtachtergrondkaart',
        'brtachtergrondkaartgrijs',
        'brtachtergrondkaartpastel',
        'brtachtergrondkaartwater',
    ),
    attribution_template='BRT Achtergrondkaart (Kadaster, http://www.pdok.nl, {year}) CC BY 4.0',
)


class ColorMode(Enum):
    """Pixel format of fetched tiles."""

    COLOR = 'color'
    GRAYSCALE = 'bw'

    def convert(self, rgba: np.ndarray) -> np.ndarray:
        """Convert an (H, W, 4) uint8 RGBA array to this mode's pixels."""
        return _PIXEL_CONVERTERS[self](rgba)


def _keep_rgba(rgba: np.ndarray) -> np.ndarray:
    return np.array(rgba, dtype=np.uint8)


def _to_grayscale(rgba: np.ndarray) -> np.ndarray:
    # Gray levels are stored as opaque RGBA so every tile has the same shape
    lum = np.rint(rgba[..., :3].astype(np.float64) @ GRAYSCALE_WEIGHTS)
    lum = np.clip(lum, 0, 255).astype(np.uint8)
    gray = np.empty(rgba.shape[:2] + (4,), dtype=np.uint8)
    gray[..., :3] = lum[..., np.newaxis]
    gray[..., 3] = 255
    return gray


_PIXEL_CONVERTERS = {
    ColorMode.COLOR: _keep_rgba,
    ColorMode.GRAYSCALE: _to_grayscale,
}


@dataclass(frozen=True)
class TileRequest:
    """Everything that identifies one tile download."""

    provider: TileProvider
    style: str
    address: TileAddress
    color_mode: ColorMode = ColorMode.COLOR
    https: bool = True

    @property
    def url(self) -> str:
        return self.provider.tile_url(self.style, self.address, self.https)

    @property
    def key(self) -> str:
        """Canonical request key used by the cache and the failure log."""
        return f"{self.url}#{self.color_mode.value}"

    @classmethod
    def from_key(cls, key: str, provider: TileProvider) -> 'TileRequest':
        """Rebuild a request from its key (or from a bare tile URL, assuming color)."""
        url, _, mode = key.partition('#')
        parts = parse_tile_url(url)
        if parts['base'] != provider.base:
            raise ValueError(f"tile URL {url} does not belong to provider {provider.name}")
        return cls(
            provider=provider,
            style=parts['style'],
            address=parts['address'],
            color_mode=ColorMode(mode) if mode else ColorMode.COLOR,
            https=parts['scheme'] == 'https',
        )


def parse_tile_url(url: str) -> Dict[str, object]:
    """Split a tile URL into scheme, base, style, projection, address and extension."""
    match = _TILE_URL_PATTERN.match(url)
    if match is None:
        raise ValueError(f"not a tile URL: {url}")
    return {
        'scheme': match.group('scheme'),
        'base': match.group('base'),
        'style': match.group('style'),
        'projection': match.group('projection'),
        'address': TileAddress(int(match.group('zoom')), int(match.group('x')), int(match.group('y'))),
        'ext': match.group('ext'),
    }


@dataclass
class TileImage:
    """Pixels of one tile. The geographic box is always derived from the address."""

    address: TileAddress
    pixels: np.ndarray
    placeholder: bool = False

    @property
    def bbox(self) -> GeoBox:
        return tile_bbox(self.address)


def placeholder_tile(address: TileAddress) -> TileImage:
    """Fully transparent stand-in for a tile that could not be fetched."""
    pixels = np.empty((TILE_SIZE, TILE_SIZE, 4), dtype=np.uint8)
    pixels[...] = PLACEHOLDER_RGBA
    return TileImage(address, pixels, placeholder=True)


class TileCache(ABC):
    """Key -> TileImage store. Last write wins, nothing is evicted."""

    @abstractmethod
    def get(self, key: str) -> Optional[TileImage]:
        """Return the stored tile, or None if the key is unknown."""

    @abstractmethod
    def set(self, key: str, tile: TileImage):
        """Store (or overwrite) the tile for a key."""

    def has(self, key: str) -> bool:
        return self.get(key) is not None


class MemoryTileCache(TileCache):
    """Process-lifetime cache held in a dict."""

    def __init__(self):
        self._tiles: Dict[str, TileImage] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[TileImage]:
        with self._lock:
            return self._tiles.get(key)

    def set(self, key: str, tile: TileImage):
        with self._lock:
            self._tiles[key] = tile

    def has(self, key: str) -> bool:
        with self._lock:
            return key in self._tiles

    def __len__(self):
        with self._lock:
            return len(self._tiles)


class DiskTileCache(TileCache):
    """Cache that keeps one lossless image file per request key."""

    def __init__(self, cache_dir: Path, cache_format: str = 'png'):
        self.cache_dir = Path(cache_dir)
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        self.cache_format = cache_format.lower()
        self._lock = threading.Lock()

        # Only lossless formats keep placeholder transparency and exact pixels
        valid_formats = ['png', 'webp']
        if self.cache_format not in valid_formats:
            logger.warning(f"Invalid cache format '{cache_format}', defaulting to 'png'")
            self.cache_format = 'png'

    def _get_cache_path(self, key: str) -> Path:
        """Generate cache file path from request key."""
        key_hash = hashlib.md5(key.encode()).hexdigest()
        return self.cache_dir / f"{key_hash}.{self.cache_format}"

    def _get_marker_path(self, key: str) -> Path:
        """Empty file next to a cached tile that stands in for a failed download."""
        return self._get_cache_path(key).with_suffix('.placeholder')

    def get(self, key: str) -> Optional[TileImage]:
        cache_path = self._get_cache_path(key)
        if not cache_path.exists():
            return None

        try:
            with Image.open(cache_path) as img:
                pixels = np.array(img.convert('RGBA'))
        except (OSError, ValueError) as e:
            logger.warning(f"Cache corrupted for {key}: {e}")
            cache_path.unlink(missing_ok=True)
            self._get_marker_path(key).unlink(missing_ok=True)
            return None

        address = parse_tile_url(key.partition('#')[0])['address']
        return TileImage(address, pixels, placeholder=self._get_marker_path(key).exists())

    def set(self, key: str, tile: TileImage):
        cache_path = self._get_cache_path(key)
        marker_path = self._get_marker_path(key)
        temp_path = cache_path.with_name(f"{cache_path.name}.{threading.get_ident()}.tmp")
        img = Image.fromarray(tile.pixels, 'RGBA')

        with self._lock:
            if self.cache_format == 'webp':
                img.save(temp_path, 'WEBP', lossless=True)
            else:
                img.save(temp_path, 'PNG', optimize=True)

            # The marker must never outlive a real tile or be missing for a placeholder
            if tile.placeholder:
                marker_path.touch()
                os.replace(temp_path, cache_path)
            else:
                os.replace(temp_path, cache_path)
                marker_path.unlink(missing_ok=True)

    def has(self, key: str) -> bool:
        return self._get_cache_path(key).exists()


class FailureLog:
    """Insertion-ordered, de-duplicated record of request keys that failed to download."""

    def __init__(self):
        self._keys: Dict[str, None] = {}
        self._lock = threading.Lock()

    def record(self, key: str):
        with self._lock:
            self._keys.setdefault(key, None)

    def entries(self) -> List[str]:
        with self._lock:
            return list(self._keys)

    def reset(self):
        with self._lock:
            self._keys.clear()

    def __len__(self):
        with self._lock:
            return len(self._keys)

    def __contains__(self, key):
        with self._lock:
            return key in self._keys


@dataclass
class StitchedRaster:
    pixels: np.ndarray
    bbox: GeoBox


@dataclass
class MapRaster:
    """Final map image plus the metadata a renderer needs to place it."""

    pixels: np.ndarray
    bbox: GeoBox
    zoom: int
    source: str
    style: str
    color_mode: ColorMode
    cropped: bool
    tile_count: int = 0
    failed_tiles: int = 0
    attribution: str = ''

    @property
    def width(self) -> int:
        return self.pixels.shape[1]

    @property
    def height(self) -> int:
        return self.pixels.shape[0]


def stitch_tiles(tiles: Mapping[TileAddress, TileImage], grid: TileGrid) -> StitchedRaster:
    """Assemble a fully populated tile grid into one raster.

    Rows run north to south and columns west to east, so the result is
    (256 * rows, 256 * columns, 4).
    """
    rows = []
    for y in grid.ys:
        row = [tiles[TileAddress(grid.zoom, x, y)].pixels for x in grid.xs]
        rows.append(np.concatenate(row, axis=1))
    pixels = np.concatenate(rows, axis=0)

    boxes = [tiles[address].bbox for address in grid.addresses]
    bbox = GeoBox(
        left=min(b.left for b in boxes),
        bottom=min(b.bottom for b in boxes),
        right=max(b.right for b in boxes),
        top=max(b.top for b in boxes),
    )
    return StitchedRaster(pixels, bbox)


def pixel_longitudes(bbox: GeoBox, width: int) -> np.ndarray:
    """Longitude of every pixel column, west to east. Longitude is linear in x."""
    return np.linspace(bbox.left, bbox.right, width)


def pixel_latitudes(grid: TileGrid) -> np.ndarray:
    """Latitude of every pixel row, north to south.

    Mercator spacing is not uniform, so each row goes through the inverse
    projection instead of being interpolated.
    """
    offsets = np.arange(TILE_SIZE)
    return np.concatenate([
        tile_to_geo(grid.zoom, grid.xs[0], y, 0, offsets)[1] for y in grid.ys
    ])


def crop_raster(stitched: StitchedRaster, bbox: GeoBox, grid: TileGrid) -> np.ndarray:
    """Slice the stitched raster down to the pixels that fall inside bbox."""
    height, width = stitched.pixels.shape[:2]
    lons = pixel_longitudes(stitched.bbox, width)
    lats = pixel_latitudes(grid)

    cols = np.flatnonzero((bbox.left <= lons) & (lons <= bbox.right))
    rows = np.flatnonzero((bbox.bottom <= lats) & (lats <= bbox.top))
    if cols.size == 0 or rows.size == 0:
        raise ValueError(f"bounding box {bbox.as_list()} is smaller than one pixel at zoom {grid.zoom}")

    return stitched.pixels[rows[0]:rows[-1] + 1, cols[0]:cols[-1] + 1].copy()


def _progress() -> Progress:
    return Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
        TextColumn("({task.completed}/{task.total})"),
        TimeElapsedColumn(),
        TimeRemainingColumn(),
    )


class BasemapFetcher:
    """Fetches, caches, stitches and crops map tiles for one provider.

    The cache and the failure log are owned by the fetcher session and can be
    injected, so separate sessions (and tests) never share state by accident.
    """

    def __init__(self,
                 provider: TileProvider = PDOK,
                 cache: Optional[TileCache] = None,
                 failure_log: Optional[FailureLog] = None,
                 session: Optional[requests.Session] = None,
                 max_workers: int = DEFAULT_MAX_WORKERS,
                 timeout: float = DEFAULT_TIMEOUT,
                 https: bool = True,
                 messaging: bool = False):
        if max_workers < 1:
            raise ValueError(f"max_workers must be at least 1, got {max_workers}")
        if not timeout or timeout <= 0:
            raise ValueError(f"timeout must be positive, got {timeout}")

        self.provider = provider
        self.cache = cache if cache is not None else MemoryTileCache()
        self.failure_log = failure_log if failure_log is not None else FailureLog()
        self.max_workers = max_workers
        self.timeout = timeout
        self.https = https
        self.messaging = messaging

        if session is None:
            session = requests.Session()
            session.headers.update({'User-Agent': USER_AGENT})
            adapter = HTTPAdapter(pool_connections=max_workers, pool_maxsize=max_workers, max_retries=0)
            session.mount('http://', adapter)
            session.mount('https://', adapter)
        self.session = session

        # Downloads currently running, keyed by request key
        self._inflight: Dict[str, concurrent.futures.Future] = {}
        self._inflight_lock = threading.Lock()

    def _resolve_style(self, style: Optional[str]) -> str:
        if style is None:
            return self.provider.styles[0]
        if style not in self.provider.styles:
            raise ValueError(
                f"unknown style '{style}' for {self.provider.name}, "
                f"choose from: {', '.join(self.provider.styles)}"
            )
        return style

    def _validate_zoom(self, zoom: int):
        if isinstance(zoom, bool) or not isinstance(zoom, numbers.Integral) or \
                not self.provider.min_zoom <= zoom <= self.provider.max_zoom:
            raise ValueError(
                f"zoom must be an integer {self.provider.min_zoom}-{self.provider.max_zoom} "
                f"for {self.provider.name}, got {zoom!r}"
            )

    def _request(self, address: TileAddress, style: str, color_mode: ColorMode) -> TileRequest:
        return TileRequest(self.provider, style, address, color_mode, self.https)

    def fetch_tile(self, address: TileAddress, style: Optional[str] = None,
                   color_mode: ColorMode = ColorMode.COLOR, force: bool = False) -> TileImage:
        """Resolve one tile address to pixels, from cache or from the network.

        Raises ValueError for addresses outside the zoom's tile range.
        Download failures never raise; they yield a transparent placeholder.
        """
        address.validate()
        self._validate_zoom(address.zoom)
        address = TileAddress(int(address.zoom), int(address.x), int(address.y))
        request = self._request(address, self._resolve_style(style), ColorMode(color_mode))
        return self._fetch(request, force)

    def _fetch(self, request: TileRequest, force: bool) -> TileImage:
        key = request.key
        if not force:
            tile = self.cache.get(key)
            if tile is not None:
                logger.debug(f"Cache hit for {key}")
                return tile

        with self._inflight_lock:
            pending = self._inflight.get(key)
            owner = pending is None
            if owner:
                pending = concurrent.futures.Future()
                self._inflight[key] = pending

        if not owner:
            return pending.result()

        try:
            # Another download may have filled the cache before we took ownership
            tile = None if force else self.cache.get(key)
            if tile is None:
                tile = self._download(request)
                self.cache.set(key, tile)
            pending.set_result(tile)
            return tile
        except Exception as e:
            pending.set_exception(e)
            raise
        finally:
            with self._inflight_lock:
                self._inflight.pop(key, None)

    def _download(self, request: TileRequest) -> TileImage:
        url = request.url
        if self.messaging:
            logger.info(f"Source : {url}")

        try:
            response = self.session.get(url, timeout=self.timeout)
        except requests.exceptions.RequestException as e:
            logger.warning(f"Failed to download {url}: {e}")
            return self._record_failure(request)

        if response.status_code != 200:
            logger.warning(f"HTTP {response.status_code} acquiring tile {url}")
            return self._record_failure(request)

        try:
            with Image.open(io.BytesIO(response.content)) as img:
                img = img.convert('RGBA')
        except (OSError, ValueError) as e:
            logger.warning(f"Could not decode tile {url}: {e}")
            return self._record_failure(request)

        if img.size != (TILE_SIZE, TILE_SIZE):
            logger.debug(f"Resizing {img.size} tile from {url} to {TILE_SIZE}x{TILE_SIZE}")
            img = img.resize((TILE_SIZE, TILE_SIZE), Image.Resampling.BILINEAR)

        pixels = request.color_mode.convert(np.asarray(img))
        return TileImage(request.address, pixels)

    def _record_failure(self, request: TileRequest) -> TileImage:
        self.failure_log.record(request.key)
        return placeholder_tile(request.address)

    def _fetch_many(self, tile_requests: List[TileRequest], force: bool,
                    description: str) -> List[TileImage]:
        """Run fetches through the bounded pool and wait for all of them."""
        results: List[Optional[TileImage]] = [None] * len(tile_requests)

        with _progress() as progress:
            task = progress.add_task(description, total=len(tile_requests))

            with concurrent.futures.ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                future_to_index = {
                    executor.submit(self._fetch, request, force): i
                    for i, request in enumerate(tile_requests)
                }

                for future in concurrent.futures.as_completed(future_to_index):
                    results[future_to_index[future]] = future.result()
                    progress.update(task, advance=1)

        return results

    def fetch_tiles(self, grid: TileGrid, style: Optional[str] = None,
                    color_mode: ColorMode = ColorMode.COLOR,
                    force: bool = False) -> Dict[TileAddress, TileImage]:
        """Fetch every tile of a grid concurrently and return them by address."""
        style = self._resolve_style(style)
        color_mode = ColorMode(color_mode)
        addresses = grid.addresses
        tile_requests = [self._request(address, style, color_mode) for address in addresses]
        tiles = self._fetch_many(tile_requests, force, "Downloading tiles")
        return dict(zip(addresses, tiles))

    def tile_urls(self, bbox: Union[GeoBox, Sequence[float]], zoom: int,
                  style: Optional[str] = None) -> List[str]:
        """URLs of the tiles covering bbox, without downloading anything."""
        bbox = _as_geobox(bbox)
        bbox.validate()
        self._validate_zoom(zoom)
        zoom = int(zoom)
        style = self._resolve_style(style)

        grid = plan_tile_grid(bbox, zoom)
        urls = [self.provider.tile_url(style, address, self.https) for address in grid.addresses]
        if self.messaging:
            logger.info(f"{len(urls)} tiles required.")
        return urls

    def acquire_map(self, bbox: Union[GeoBox, Sequence[float]], zoom: int,
                    style: Optional[str] = None,
                    color_mode: Union[ColorMode, str] = ColorMode.COLOR,
                    crop: bool = True, force_refresh: bool = False) -> MapRaster:
        """Fetch the map covering bbox at the given zoom.

        Args:
            bbox: GeoBox or [left, bottom, right, top] in degrees
            zoom: Zoom level within the provider's range
            style: Provider map style (defaults to the provider's first style)
            color_mode: ColorMode.COLOR or ColorMode.GRAYSCALE ('color' / 'bw')
            crop: Trim the stitched tiles to bbox exactly
            force_refresh: Download tiles even when they are cached

        Returns:
            MapRaster whose bbox is the requested box when cropped, or the
            union of the tiles otherwise. Tiles that could not be downloaded
            are transparent and listed by list_failed_tiles().
        """
        bbox = _as_geobox(bbox)
        bbox.validate()
        self._validate_zoom(zoom)
        zoom = int(zoom)
        style = self._resolve_style(style)
        color_mode = ColorMode(color_mode)

        attribution = self.provider.attribution()
        logger.info(attribution)

        grid = plan_tile_grid(bbox, zoom)
        if self.messaging:
            logger.info(f"{len(grid)} tiles required.")

        tiles = self.fetch_tiles(grid, style, color_mode, force_refresh)

        failed = sum(tile.placeholder for tile in tiles.values())
        if failed == len(tiles):
            logger.error(f"None of the {len(tiles)} tiles could be downloaded")
        elif failed:
            logger.warning(f"{failed} of {len(tiles)} tiles are missing and will appear blank")

        stitched = stitch_tiles(tiles, grid)
        if crop:
            pixels = crop_raster(stitched, bbox, grid)
            result_bbox = bbox
        else:
            pixels = stitched.pixels
            result_bbox = stitched.bbox

        logger.info(f"Map assembled: {pixels.shape[1]}x{pixels.shape[0]} pixels from {len(tiles)} tiles")
        return MapRaster(
            pixels=pixels,
            bbox=result_bbox,
            zoom=zoom,
            source=self.provider.name,
            style=style,
            color_mode=color_mode,
            cropped=crop,
            tile_count=len(tiles),
            failed_tiles=failed,
            attribution=attribution,
        )

    def list_failed_tiles(self) -> List[str]:
        """Request keys of tiles that failed to download, oldest first."""
        return self.failure_log.entries()

    def retry_failed_tiles(self) -> Dict[str, bool]:
        """Download every logged failure again, bypassing the cache.

        Entries stay in the failure log whatever the outcome, so calling this
        repeatedly re-attempts the same tiles.

        Returns:
            Mapping of request key to whether the tile was fetched this time
        """
        keys = self.failure_log.entries()
        if not keys:
            logger.info("No failed tiles to retry")
            return {}

        tile_requests = [TileRequest.from_key(key, self.provider) for key in keys]
        tiles = self._fetch_many(tile_requests, True, "Retrying failed tiles")
        outcome = {key: not tile.placeholder for key, tile in zip(keys, tiles)}

        recovered = sum(outcome.values())
        logger.info(f"Recovered {recovered} / {len(keys)} failed tiles")
        return outcome


def _as_geobox(bbox: Union[GeoBox, Sequence[float], Mapping[str, float]]) -> GeoBox:
    if isinstance(bbox, GeoBox):
        return bbox
    return GeoBox.from_sequence(bbox)


def save_geotiff(raster: MapRaster, output_path: Path) -> bool:
    """Write a map raster as an EPSG:3857 GeoTIFF.

    Tile pixels are evenly spaced in Web Mercator metres, so the lon/lat box
    is projected and used as the raster's bounds.
    """
    transformer = Transformer.from_crs('EPSG:4326', 'EPSG:3857', always_xy=True)
    left, bottom = transformer.transform(raster.bbox.left, raster.bbox.bottom)
    right, top = transformer.transform(raster.bbox.right, raster.bbox.top)

    height, width, bands = raster.pixels.shape
    transform = from_bounds(left, bottom, right, top, width, height)

    try:
        with rasterio.open(
            str(output_path),
            'w',
            driver='GTiff',
            height=height,
            width=width,
            count=bands,
            dtype=rasterio.uint8,
            crs=CRS.from_epsg(3857),
            transform=transform,
            compress='deflate',
            tiled=True,
            blockxsize=TILE_SIZE,
            blockysize=TILE_SIZE,
            predictor=2,
            photometric='RGB',
            alpha='YES'
        ) as dst:
            dst.write(np.moveaxis(raster.pixels, -1, 0))
            dst.update_tags(
                source=raster.source,
                style=raster.style,
                zoom=str(raster.zoom),
                bbox=','.join(str(v) for v in raster.bbox.as_list()),
                attribution=raster.attribution,
            )

            overview_factors = [f for f in (2, 4, 8, 16) if min(width, height) // f >= TILE_SIZE]
            if overview_factors:
                dst.build_overviews(overview_factors, Resampling.average)
                dst.update_tags(ns='rio_overview', resampling='average')

        logger.info(f"GeoTIFF created: {output_path}")
        return True

    except Exception as e:
        logger.error(f"Failed to create GeoTIFF: {e}")
        if Path(output_path).exists():
            Path(output_path).unlink()
        return False


def save_png(raster: MapRaster, output_path: Path) -> bool:
    """Write a map raster as a plain RGBA PNG."""
    try:
        Image.fromarray(raster.pixels, 'RGBA').save(output_path, 'PNG', optimize=True)
    except (OSError, ValueError) as e:
        logger.error(f"Failed to write PNG: {e}")
        return False
    logger.info(f"PNG created: {output_path}")
    return True


def main(argv: Optional[Iterable[str]] = None):
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description='Fetch a basemap for a bounding box from a slippy-map tile service',
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )

    parser.add_argument(
        '--bbox',
        nargs=4,
        type=float,
        metavar=('LEFT', 'BOTTOM', 'RIGHT', 'TOP'),
        default=DEFAULT_BBOX,
        help='Bounding box in longitude/latitude degrees'
    )

    parser.add_argument(
        '--zoom',
        type=int,
        default=DEFAULT_ZOOM,
        help=f'Zoom level ({PDOK.min_zoom}-{PDOK.max_zoom})'
    )

    parser.add_argument(
        '--style',
        choices=PDOK.styles,
        default=PDOK.styles[0],
        help='Map style'
    )

    parser.add_argument(
        '--color',
        choices=[mode.value for mode in ColorMode],
        default=ColorMode.COLOR.value,
        help='Color or black-and-white tiles'
    )

    parser.add_argument(
        '--no-crop',
        action='store_true',
        help='Keep the whole stitched tile block instead of cropping to the bounding box'
    )

    parser.add_argument(
        '--force',
        action='store_true',
        help='Download tiles even if they are cached'
    )

    parser.add_argument(
        '--cache-dir',
        type=Path,
        default=DEFAULT_CACHE_DIR,
        help='Directory for tile cache'
    )

    parser.add_argument(
        '--no-disk-cache',
        action='store_true',
        help='Keep tiles in memory only'
    )

    parser.add_argument(
        '--max-workers',
        type=int,
        default=DEFAULT_MAX_WORKERS,
        help='Maximum concurrent download threads'
    )

    parser.add_argument(
        '--timeout',
        type=float,
        default=DEFAULT_TIMEOUT,
        help='Per-tile request timeout in seconds'
    )

    parser.add_argument(
        '--http',
        action='store_true',
        help='Query the plain http endpoint instead of https'
    )

    parser.add_argument(
        '--url-only',
        action='store_true',
        help='Print the tile URLs and exit without downloading'
    )

    parser.add_argument(
        '--retry-failed',
        action='store_true',
        help='Retry failed tiles once and rebuild the map'
    )

    parser.add_argument(
        '--output',
        '-o',
        type=Path,
        default=Path('basemap.tif'),
        help='Output file (.tif/.tiff for GeoTIFF, .png for PNG)'
    )

    parser.add_argument(
        '--verbose',
        '-v',
        action='store_true',
        help='Enable verbose logging'
    )

    args = parser.parse_args(argv)

    # Set logging level
    if args.verbose:
        logger.setLevel(logging.DEBUG)

    try:
        bbox = GeoBox.from_sequence(args.bbox)
        cache = MemoryTileCache() if args.no_disk_cache else DiskTileCache(args.cache_dir)
        fetcher = BasemapFetcher(
            cache=cache,
            max_workers=args.max_workers,
            timeout=args.timeout,
            https=not args.http,
            messaging=args.verbose,
        )

        if args.url_only:
            for url in fetcher.tile_urls(bbox, args.zoom, args.style):
                print(url)
            return 0

        raster = fetcher.acquire_map(
            bbox, args.zoom, args.style, ColorMode(args.color),
            crop=not args.no_crop, force_refresh=args.force
        )

        if args.retry_failed and fetcher.list_failed_tiles():
            fetcher.retry_failed_tiles()
            raster = fetcher.acquire_map(
                bbox, args.zoom, args.style, ColorMode(args.color), crop=not args.no_crop
            )
    except ValueError as e:
        logger.error(str(e))
        return 1

    failed = fetcher.list_failed_tiles()
    if failed:
        logger.warning(f"{len(failed)} tile(s) failed to download:")
        for key in failed:
            logger.warning(f"  {key}")

    if raster.failed_tiles == raster.tile_count:
        logger.error("No tiles downloaded successfully")
        return 1

    if args.output.suffix.lower() == '.png':
        saved = save_png(raster, args.output)
    else:
        saved = save_geotiff(raster, args.output)

    return 0 if saved else 1


if __name__ == '__main__':
    sys.exit(main())
