import numpy as np
import cv2
from pathlib import Path

import pytest
from PIL import Image, TiffImagePlugin
from celldet.core import (
    ArrayRegionSupplier,
    ImageFileRegionSupplier,
    InvalidInputError,
    RegionRequest,
    calibration_from_metadata,
    parse_pixel_size_from_text,
)


def test_parse_aperio_mpp():
    cal = parse_pixel_size_from_text("[270] Aperio Image Library v10 |AppMag = 20|MPP = 0.2520|Date = 01/01/20")
    assert cal.pixel_width_um == pytest.approx(0.252)
    assert cal.pixel_height_um == pytest.approx(0.252)


def test_parse_ome_physical_size_with_units():
    txt = '<Pixels PhysicalSizeX="250" PhysicalSizeXUnit="nm" PhysicalSizeY="0.3" PhysicalSizeYUnit="µm"/>'
    cal = parse_pixel_size_from_text(txt)
    assert cal.pixel_width_um == pytest.approx(0.25)
    assert cal.pixel_height_um == pytest.approx(0.3)


def test_parse_imagej_resolution():
    txt = "[270] ImageJ=1.53t\nunit=micron\n[282] 4.0\n[283] 2.0"
    cal = parse_pixel_size_from_text(txt)
    assert cal.pixel_width_um == pytest.approx(0.25)
    assert cal.pixel_height_um == pytest.approx(0.5)


def test_parse_without_scale():
    assert not parse_pixel_size_from_text("nothing here").has_pixel_size_microns
    assert not parse_pixel_size_from_text("").has_pixel_size_microns


def test_calibration_from_tiff_description(tmp_path: Path):
    p = tmp_path / "meta.tif"
    img = Image.new("L", (20, 10), 0)
    tiffinfo = TiffImagePlugin.ImageFileDirectory_v2()
    tiffinfo[270] = "Aperio Image Library |MPP = 0.5"
    img.save(p, tiffinfo=tiffinfo)
    cal = calibration_from_metadata(str(p))
    assert cal.has_pixel_size_microns
    assert cal.averaged_pixel_size_um == pytest.approx(0.5)


def test_calibration_missing_file(tmp_path: Path):
    assert not calibration_from_metadata(str(tmp_path / "missing.tif")).has_pixel_size_microns


def test_region_request_for_bounds_clips():
    req = RegionRequest.for_bounds("img", 2.0, (-3.5, 4.2, 30.1, 60), image_size=(25, 50))
    assert (req.x, req.y, req.width, req.height) == (0, 4, 25, 46)
    assert req.origin == (0.0, 4.0)
    assert req.output_shape == (23, 12)
    with pytest.raises(InvalidInputError):
        RegionRequest.for_bounds("img", 1.0, (30, 30, 40, 40), image_size=(25, 25))


def test_array_supplier_crops_and_downsamples():
    img = np.arange(40 * 40, dtype=np.float32).reshape(40, 40)
    sup = ArrayRegionSupplier({"a": img})
    assert sup.image_size("a") == (40, 40)
    full = sup.read_region("a", 1.0, 5, 10, 8, 6)
    assert full.shape == (6, 8) and full[0, 0] == img[10, 5]
    half = sup.read_region("a", 2.0, 0, 0, 20, 20)
    assert half.shape == (10, 10)
    assert half[0, 0] == pytest.approx(img[:2, :2].mean())
    with pytest.raises(InvalidInputError):
        sup.read_region("a", 1.0, 0, 0, 10, 10, z=1)
    with pytest.raises(InvalidInputError):
        sup.read_region("a", 1.0, 35, 0, 10, 10)
    with pytest.raises(InvalidInputError):
        sup.read_region("b", 1.0, 0, 0, 1, 1)


def test_file_supplier_returns_rgb(tmp_path: Path):
    p = tmp_path / "rgb.png"
    bgr = np.zeros((30, 40, 3), np.uint8)
    bgr[..., 2] = 255  # red in OpenCV order
    cv2.imwrite(str(p), bgr)
    sup = ImageFileRegionSupplier()
    assert sup.image_size(str(p)) == (40, 30)
    region = sup.read_region(str(p), 1.0, 0, 0, 40, 30)
    assert region.shape == (30, 40, 3)
    assert np.all(region[..., 0] == 255) and np.all(region[..., 2] == 0)
