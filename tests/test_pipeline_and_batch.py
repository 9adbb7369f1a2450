import csv
import importlib.util
import math
from dataclasses import replace
from pathlib import Path

import numpy as np
import cv2
import pytest
from celldet.addons import write_measurements_csv
from celldet.core import (
    ArrayRegionSupplier,
    CancelToken,
    CellDetector,
    DebugStack,
    DetectionParameters,
    PixelCalibration,
    PolygonROI,
    detect_batch,
    detect_objects,
)

SCRIPT = Path(__file__).resolve().parents[1] / "script" / "celldet_detect.py"


@pytest.fixture
def two_disc_supplier():
    img = np.zeros((120, 120), np.float32)
    cv2.circle(img, (30, 60), 10, 200, -1)
    cv2.circle(img, (90, 60), 10, 200, -1)
    return ArrayRegionSupplier({"img": img})


def test_debug_stack_collects_named_steps(blobs_img, pixel_params):
    stack = DebugStack()
    detect_objects(blobs_img, replace(pixel_params, cell_expansion=3), debug=stack)
    names = stack.names()
    assert names[0] == "Input image"
    for name in ("Laplacian of Gaussian filtered", "Watershed labels", "Binary", "Labeled ROIs", "Cell labels"):
        assert name in stack
    assert stack["Input image"].shape == blobs_img.shape


def test_detector_uncalibrated(two_disc_supplier, pixel_params):
    det = CellDetector(two_disc_supplier, "img")
    res = det.run_detection(PolygonROI.rectangle(0, 0, 120, 120), pixel_params)
    assert res.completed and len(res) == 2
    assert det.last_results_description == "2 nuclei detected"
    xs = sorted(o.roi.points[:, 0].mean() for o in res.objects)
    assert xs[0] == pytest.approx(30.5, abs=1.5) and xs[1] == pytest.approx(90.5, abs=1.5)


def test_detector_reuses_seeds_for_same_roi(two_disc_supplier, pixel_params):
    det = CellDetector(two_disc_supplier, "img")
    roi = PolygonROI.rectangle(0, 0, 120, 120)
    det.run_detection(roi, pixel_params)
    det.run_detection(roi, replace(pixel_params, threshold=80))
    assert det.segmenter.seed_computations == 1
    det.run_detection(PolygonROI.rectangle(0, 0, 70, 120), pixel_params)
    assert det.segmenter.seed_computations == 2


def test_detector_calibrated_downsamples_and_scales(two_disc_supplier):
    # 0.5 µm/px native, detection at 1 µm/px -> downsample 2
    cal = PixelCalibration(0.5, 0.5)
    det = CellDetector(two_disc_supplier, "img", cal, requested_pixel_size_um=1.0)
    params_um = DetectionParameters(background_radius=0, sigma=2, threshold=50, min_area=20, max_area=1000,
                                    cell_expansion=0, smooth_boundaries=False)
    downsample, px = det.processing_scale(params_um)
    assert downsample == pytest.approx(2.0)
    assert px.sigma == pytest.approx(2.0) and px.min_area == pytest.approx(20.0)

    res = det.run_detection(PolygonROI.rectangle(0, 0, 120, 120), params_um)
    assert len(res) == 2
    for obj in res.objects:
        # full-resolution coordinates
        cx, cy = obj.roi.points.mean(axis=0)
        assert cy == pytest.approx(60.5, abs=2.5)
        # disc of radius 5 µm
        assert 60 < obj.measurements["Nucleus: Area"] < 140


def test_detector_rejects_empty_roi(two_disc_supplier, pixel_params):
    det = CellDetector(two_disc_supplier, "img")
    with pytest.raises(ValueError):
        det.run_detection(PolygonROI(np.zeros((0, 2))), pixel_params)


def test_batch_isolates_failures_and_keeps_order(two_disc_supplier, pixel_params):
    rois = [
        PolygonROI.rectangle(0, 0, 60, 120),
        PolygonROI.rectangle(500, 500, 10, 10),  # outside the image
        PolygonROI.rectangle(60, 0, 60, 120),
    ]
    results = detect_batch(rois, lambda: CellDetector(two_disc_supplier, "img"), pixel_params, max_workers=2)
    assert len(results) == 3
    assert results[0].completed and len(results[0]) == 1
    assert not results[1].completed and results[1].error
    assert results[2].completed and len(results[2]) == 1
    assert results[2].objects[0].roi.points[:, 0].min() >= 60


def test_batch_cancelled(two_disc_supplier, pixel_params):
    token = CancelToken()
    token.cancel()
    results = detect_batch([PolygonROI.rectangle(0, 0, 60, 120)] * 2,
                           lambda: CellDetector(two_disc_supplier, "img"), pixel_params, cancel=token)
    assert [r.completed for r in results] == [False, False]
    assert detect_batch([], lambda: None, pixel_params) == []


def test_measurements_csv(tmp_path, blobs_img, pixel_params):
    res = detect_objects(blobs_img, replace(pixel_params, cell_expansion=3), channel_names=["DAPI"])
    path = tmp_path / "m.csv"
    write_measurements_csv(str(path), res.objects)
    with open(path, newline="", encoding="utf-8") as f:
        rows = list(csv.reader(f))
    header = rows[0]
    assert header[:4] == ["idx", "kind", "centroid_x_px", "centroid_y_px"]
    assert "Cytoplasm: DAPI mean" in header
    assert len(rows) == 1 + len(res) == 4
    assert all(r[1] == "cell" for r in rows[1:])
    col = header.index("Nucleus/Cell area ratio")
    assert all(0.0 <= float(r[col]) <= 1.0 for r in rows[1:])


def test_command_line_script(tmp_path, blobs_img):
    mod_spec = importlib.util.spec_from_file_location("celldet_detect", SCRIPT)
    mod = importlib.util.module_from_spec(mod_spec)
    mod_spec.loader.exec_module(mod)

    img_path = tmp_path / "blobs.png"
    cv2.imwrite(str(img_path), blobs_img.astype(np.uint8))
    out = tmp_path / "out"
    code = mod.main([str(img_path), "--background_radius", "0", "--sigma", "2", "--threshold", "50",
                     "--min_area", "30", "--max_area", "2000", "--cell_expansion", "4",
                     "--out", str(out), "--debug"])
    assert code == 0
    with open(out / "measurements_blobs.csv", newline="", encoding="utf-8") as f:
        rows = list(csv.reader(f))
    assert len(rows) == 4
    assert (out / "annotated_blobs.png").exists()
    assert any((out / "debug_blobs").iterdir())
    area = float(rows[1][rows[0].index("Cell: Area")])
    assert not math.isnan(area) and area > 0
