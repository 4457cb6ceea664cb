#!/usr/bin/env python3
"""
Demo workflow showing how the basemap fetcher works (without actual network access).
Tiles are synthesised locally so the stitch and crop steps can be shown end to end.
"""

import sys
from pathlib import Path

import numpy as np

# Add current directory to path
sys.path.insert(0, str(Path(__file__).parent))

from fetch_basemap import (
    DEFAULT_BBOX,
    PDOK,
    TILE_SIZE,
    GeoBox,
    TileImage,
    crop_raster,
    geo_to_tile,
    plan_tile_grid,
    stitch_tiles,
    tile_bbox,
)


def synthetic_tile(address):
    """Checkerboard-coloured tile so neighbouring tiles are easy to tell apart."""
    shade = 200 if (address.x + address.y) % 2 else 120
    pixels = np.full((TILE_SIZE, TILE_SIZE, 4), shade, dtype=np.uint8)
    pixels[..., 3] = 255
    return TileImage(address, pixels)


def demo_workflow():
    """Demonstrate the workflow without network access."""

    print("=" * 80)
    print("Basemap Fetcher - Demonstration Workflow")
    print("=" * 80)
    print()

    # Step 1: Define area of interest
    print("Step 1: Define Area of Interest")
    print("-" * 80)
    bbox = GeoBox.from_sequence(DEFAULT_BBOX)
    print(f"Bounding box: {bbox.as_list()}")
    print(f"  Left:   {bbox.left}° (longitude)")
    print(f"  Bottom: {bbox.bottom}° (latitude)")
    print(f"  Right:  {bbox.right}° (longitude)")
    print(f"  Top:    {bbox.top}° (latitude)")
    print()

    # Step 2: Convert corners to tile coordinates
    print("Step 2: Corner Tiles")
    print("-" * 80)
    zoom = 12
    for name, lon, lat in [('lower left', bbox.left, bbox.bottom), ('upper right', bbox.right, bbox.top)]:
        x, y, px, py = geo_to_tile(lon, lat, zoom)
        print(f"  {name:12s}: tile ({x}, {y}) at pixel ({px:.1f}, {py:.1f})")
    print()

    # Step 3: Plan the tile grid at several zoom levels
    print("Step 3: Tile Grid per Zoom Level")
    print("-" * 80)
    for z in [10, 12, 14]:
        grid = plan_tile_grid(bbox, z)
        print(f"Zoom level {z:2d}: {len(grid):4d} tiles ({len(grid.xs)} columns x {len(grid.ys)} rows)")
    print()

    # Step 4: Tile URLs
    print("Step 4: Tile URLs")
    print("-" * 80)
    grid = plan_tile_grid(bbox, zoom)
    for address in grid.addresses[:3]:
        print(f"  {PDOK.tile_url(PDOK.styles[0], address)}")
    print(f"  ... {len(grid) - 3} more")
    print()

    # Step 5: Stitch and crop synthetic tiles
    print("Step 5: Stitch and Crop")
    print("-" * 80)
    tiles = {address: synthetic_tile(address) for address in grid.addresses}
    stitched = stitch_tiles(tiles, grid)
    cropped = crop_raster(stitched, bbox, grid)
    corner = tile_bbox(grid.addresses[0])
    print(f"North-west tile covers: {corner.as_list()}")
    print(f"Stitched raster:        {stitched.pixels.shape[1]}x{stitched.pixels.shape[0]} pixels")
    print(f"  covering              {stitched.bbox.as_list()}")
    print(f"Cropped raster:         {cropped.shape[1]}x{cropped.shape[0]} pixels")
    print(f"  covering exactly      {bbox.as_list()}")
    print()

    # Step 6: Example command
    print("Step 6: Example CLI Usage")
    print("-" * 80)
    print("Basic usage:")
    print("  python3 fetch_basemap.py")
    print()
    print("Advanced usage:")
    print("  python3 fetch_basemap.py \\")
    print("    --bbox 5.0 52.0 5.4 52.2 \\")
    print("    --zoom 14 \\")
    print("    --style brtachtergrondkaartgrijs \\")
    print("    --retry-failed \\")
    print("    --output utrecht.tif \\")
    print("    --verbose")
    print()

    print("=" * 80)
    print("Demonstration Complete!")
    print("=" * 80)
    print()
    print(f"Note: Actual execution requires network access to the {PDOK.name} tile service")
    print()


if __name__ == '__main__':
    demo_workflow()
