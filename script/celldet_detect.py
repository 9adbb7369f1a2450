# celldet_detect.py
# Watershed nucleus / cell detection on a single image: CSV + annotated overlay.

from __future__ import annotations
import argparse
import logging
import re
from dataclasses import replace
from pathlib import Path
from typing import List, Optional

import cv2
import numpy as np

from celldet.addons import write_measurements_csv
from celldet.core import (
    CellDetector,
    DebugStack,
    DetectionParameters,
    H_DAB,
    H_E,
    ImageFileRegionSupplier,
    MICRON_DEFAULTS,
    PixelCalibration,
    PolygonROI,
    calibration_from_metadata,
    dump_tiff_metadata_text,
)

STAINS = {"none": None, "h-dab": H_DAB, "h-e": H_E}

# CLI flag -> DetectionParameters field
PARAM_FLAGS = (
    "median_radius", "background_radius", "max_background", "sigma", "min_area", "max_area",
    "threshold", "cell_expansion",
)


def safe_stem(stem: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]+", "_", stem) or "image"


def to_bgr8(img: np.ndarray) -> np.ndarray:
    """8-bit BGR view of an RGB / grayscale / multi-band region for drawing."""
    if img.ndim == 3 and img.shape[2] not in (3, 4):
        img = img[..., 0]
    if img.dtype != np.uint8:
        img = cv2.normalize(img.astype(np.float32), None, 0, 255, cv2.NORM_MINMAX).astype(np.uint8)
    if img.ndim == 2:
        return cv2.cvtColor(img, cv2.COLOR_GRAY2BGR)
    if img.shape[2] == 4:
        return cv2.cvtColor(img, cv2.COLOR_RGBA2BGR)
    return cv2.cvtColor(img, cv2.COLOR_RGB2BGR)


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Watershed nucleus and cell detection")
    ap.add_argument("image")
    # calibration
    ap.add_argument("--pixel_size", type=float, default=None,
                    help="µm/px. If not given, it is read from TIFF metadata when available.")
    ap.add_argument("--requested_pixel_size", type=float, default=0.5,
                    help="µm/px to run detection at (negative = multiple of the native size)")
    # channels
    ap.add_argument("--stains", choices=sorted(STAINS), default="none")
    ap.add_argument("--channel", default=None, help="detection channel (default: first / Hematoxylin OD)")
    # parameters (µm when calibrated, pixels otherwise)
    ap.add_argument("--median_radius", type=float, default=None)
    ap.add_argument("--background_radius", type=float, default=None)
    ap.add_argument("--max_background", type=float, default=None)
    ap.add_argument("--sigma", type=float, default=None)
    ap.add_argument("--min_area", type=float, default=None)
    ap.add_argument("--max_area", type=float, default=None)
    ap.add_argument("--threshold", type=float, default=None)
    ap.add_argument("--cell_expansion", type=float, default=None)
    ap.add_argument("--no_split", action="store_true", help="disable split-by-shape post-processing")
    ap.add_argument("--no_smooth", action="store_true", help="keep pixel-edge boundaries")
    ap.add_argument("--exclude_nuclei", action="store_true", help="do not attach nuclei to cells")
    # output
    ap.add_argument("--out", default="results")
    ap.add_argument("--debug", action="store_true", help="write intermediate rasters as PNG")
    ap.add_argument("--meta_debug", action="store_true", help="Print all textual TIFF metadata and exit")
    ap.add_argument("-v", "--verbose", action="store_true")
    return ap


def params_from_args(args: argparse.Namespace, calibrated: bool) -> DetectionParameters:
    base = MICRON_DEFAULTS if calibrated else DetectionParameters()
    overrides = {k: getattr(args, k) for k in PARAM_FLAGS if getattr(args, k) is not None}
    return replace(
        base,
        watershed_post_process=not args.no_split,
        smooth_boundaries=not args.no_smooth,
        include_nuclei=not args.exclude_nuclei,
        **overrides,
    )


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="%(levelname)s %(name)s: %(message)s")

    p = Path(args.image)
    if args.meta_debug:
        print("===== TIFF METADATA =====")
        print(dump_tiff_metadata_text(str(p)))
        print("===== END =====")
        return 0

    out_dir = Path(args.out)
    out_dir.mkdir(parents=True, exist_ok=True)
    sstem = safe_stem(p.stem)

    # scale
    if args.pixel_size is not None:
        calibration = PixelCalibration(args.pixel_size, args.pixel_size)
    else:
        calibration = calibration_from_metadata(str(p))
        if calibration.has_pixel_size_microns:
            print(f"[meta-scale] {calibration.averaged_pixel_size_um:.6f} µm/px from TIFF metadata")

    supplier = ImageFileRegionSupplier()
    w, h = supplier.image_size(str(p))
    params = params_from_args(args, calibration.has_pixel_size_microns)
    detector = CellDetector(
        supplier, str(p), calibration,
        stains=STAINS[args.stains],
        detection_channel=args.channel,
        requested_pixel_size_um=args.requested_pixel_size,
    )
    debug = DebugStack() if args.debug else None
    result = detector.run_detection(PolygonROI.rectangle(0, 0, w, h), params, debug=debug)

    if debug is not None:
        dbg_dir = out_dir / f"debug_{sstem}"
        dbg_dir.mkdir(parents=True, exist_ok=True)
        for i, name in enumerate(debug, start=1):
            raster = np.nan_to_num(debug[name].astype(np.float32), nan=0.0, posinf=0.0, neginf=0.0)
            png = cv2.normalize(raster, None, 0, 255, cv2.NORM_MINMAX)
            cv2.imwrite(str(dbg_dir / f"{i:02d}_{safe_stem(name)}.png"), png.astype(np.uint8))

    # overlay: cells green, nuclei red
    overlay = to_bgr8(supplier.read_region(str(p), 1.0, 0, 0, w, h))
    for obj in result.objects:
        color = (0, 255, 0) if obj.is_cell else (0, 0, 255)
        cv2.polylines(overlay, [np.round(obj.roi.points).astype(np.int32)], True, color, 1)
        if obj.nucleus_roi is not None:
            cv2.polylines(overlay, [np.round(obj.nucleus_roi.points).astype(np.int32)], True, (0, 0, 255), 1)
    overlay_path = out_dir / f"annotated_{sstem}.png"
    if not cv2.imwrite(str(overlay_path), overlay):
        print(f"[WARN] imwrite failed: {overlay_path}")

    csv_path = out_dir / f"measurements_{sstem}.csv"
    write_measurements_csv(str(csv_path), result.objects)

    print("=== RESULTS ===")
    print(f"Image   : {p}")
    print(f"Scale   : {calibration.averaged_pixel_size_um:.6f} µm/px" if calibration.has_pixel_size_microns
          else "Scale   : uncalibrated (px)")
    print(f"Result  : {result.description}")
    print(f"Overlay : {overlay_path}")
    print(f"CSV     : {csv_path}")
    return 0 if result.completed else 1


if __name__ == "__main__":
    raise SystemExit(main())
