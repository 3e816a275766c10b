import numpy as np
import pytest

from xfeatlite.detector import (
    Features,
    XFDetector,
    get_kpts_heatmap,
    match_descriptors,
    nms,
    parse_input,
    preprocess_tensor,
)
from xfeatlite.model import XFeatModel


@pytest.fixture(scope="module")
def image():
    return np.random.default_rng(0).integers(0, 256, size=(64, 64), dtype=np.uint8)


@pytest.fixture(scope="module")
def detector():
    return XFDetector(top_k=4096, detection_threshold=0.0)


def test_parse_input_grayscale_scaled():
    img = np.full((4, 6), 255, dtype=np.uint8)
    out = parse_input(img)
    assert out.shape == (1, 1, 4, 6)
    assert np.allclose(out, 1.0)


def test_parse_input_colour_keeps_channel_order():
    img = np.zeros((5, 7, 3), dtype=np.uint8)
    img[..., 2] = 255
    out = parse_input(img)
    assert out.shape == (1, 3, 5, 7)
    assert np.allclose(out[0, 2], 1.0)
    assert np.allclose(out[0, :2], 0.0)


def test_parse_input_rejects_four_channels():
    with pytest.raises(ValueError):
        parse_input(np.zeros((4, 4, 4), dtype=np.uint8))


def test_preprocess_tensor_sizes_and_ratios():
    x = np.random.default_rng(1).random((1, 1, 70, 100)).astype(np.float32)
    out, rh, rw = preprocess_tensor(x)
    assert out.shape == (1, 1, 64, 96)
    assert rh == pytest.approx(70 / 64)
    assert rw == pytest.approx(100 / 96)
    assert out[0, 0, 0, 0] == pytest.approx(x[0, 0, 0, 0], abs=1e-5)
    assert out[0, 0, -1, -1] == pytest.approx(x[0, 0, -1, -1], abs=1e-5)


def test_preprocess_tensor_too_small():
    with pytest.raises(ValueError):
        preprocess_tensor(np.zeros((1, 1, 20, 64), dtype=np.float32))


def test_heatmap_layout_places_channel_in_cell():
    logits = np.full((1, 65, 2, 3), -50.0)
    logits[0, 19, 1, 2] = 50.0
    heat = get_kpts_heatmap(logits)
    assert heat.shape == (1, 1, 16, 24)
    row, col = np.unravel_index(np.argmax(heat[0, 0]), heat[0, 0].shape)
    assert (row, col) == (1 * 8 + 19 // 8, 2 * 8 + 19 % 8)


def test_heatmap_cells_sum_to_one_without_dustbin():
    logits = np.random.default_rng(2).normal(size=(2, 65, 3, 3))
    logits[:, 64] = -1e4
    heat = get_kpts_heatmap(logits)
    cells = heat.reshape(2, 3, 8, 3, 8).sum(axis=(2, 4))
    assert np.allclose(cells, 1.0)


def test_heatmap_temperature_sharpens():
    logits = np.random.default_rng(3).normal(size=(1, 65, 1, 1))
    soft = get_kpts_heatmap(logits, 1.0)
    sharp = get_kpts_heatmap(logits, 5.0)
    assert sharp.max() > soft.max()


def test_nms_finds_peaks_in_row_order():
    x = np.zeros((1, 1, 8, 8))
    x[0, 0, 2, 5] = 1.0
    x[0, 0, 6, 1] = 0.5
    out = nms(x, 0.05, 5)
    assert out.tolist() == [[[5, 2], [1, 6]]]


def test_nms_threshold_filters():
    x = np.zeros((1, 1, 8, 8))
    x[0, 0, 2, 5] = 1.0
    x[0, 0, 6, 1] = 0.5
    assert nms(x, 0.6, 5).tolist() == [[[5, 2]]]


def test_nms_suppresses_neighbour():
    x = np.zeros((1, 1, 8, 8))
    x[0, 0, 2, 2] = 1.0
    x[0, 0, 2, 3] = 0.8
    assert nms(x, 0.05, 5).tolist() == [[[2, 2]]]


def test_nms_pads_batches():
    x = np.zeros((2, 1, 8, 8))
    x[0, 0, 1, 1] = 1.0
    x[0, 0, 6, 6] = 1.0
    out = nms(x, 0.05, 5)
    assert out.shape == (2, 2, 2)
    assert np.all(out[1] == 0)


def test_match_descriptors_permutation():
    feats1 = np.eye(3)
    feats2 = np.eye(3)[[2, 0, 1]]
    idx0, idx1 = match_descriptors(feats1, feats2)
    assert idx0.tolist() == [0, 1, 2]
    assert idx1.tolist() == [1, 2, 0]
    assert np.allclose(feats1[idx0], feats2[idx1])


def test_match_descriptors_requires_mutual():
    feats1 = np.array([[1.0, 0.0], [0.9, 0.1]])
    feats2 = np.array([[1.0, 0.0]])
    idx0, idx1 = match_descriptors(feats1, feats2)
    assert idx0.tolist() == [0]
    assert idx1.tolist() == [0]


def test_match_descriptors_min_cossim():
    feats1 = np.array([[1.0, 0.0], [0.0, 1.0]])
    feats2 = np.array([[1.0, 0.0], [0.6, 0.8]])
    idx0, _ = match_descriptors(feats1, feats2, -1.0)
    assert idx0.tolist() == [0, 1]
    idx0, idx1 = match_descriptors(feats1, feats2, 0.9)
    assert idx0.tolist() == [0]
    assert idx1.tolist() == [0]


def test_match_descriptors_empty():
    idx0, idx1 = match_descriptors(np.zeros((0, 64)), np.eye(64))
    assert len(idx0) == 0 and len(idx1) == 0


def test_detect_and_compute_invariants(detector, image):
    feats = detector.detect_and_compute(parse_input(image))
    n = len(feats)
    assert n > 0
    assert feats.keypoints.shape == (n, 2)
    assert feats.descriptors.shape == (n, 64)
    assert np.all(feats.scores > 0)
    assert np.all(np.diff(feats.scores) <= 0)
    assert np.allclose(np.linalg.norm(feats.descriptors, axis=1), 1.0, atol=1e-4)


def test_detect_and_compute_top_k(image):
    det = XFDetector(top_k=5, detection_threshold=0.0)
    feats = det.detect_and_compute(parse_input(image))
    assert len(feats) == 5


def test_detect_and_compute_scales_keypoints(detector):
    img = np.random.default_rng(4).integers(0, 256, size=(70, 80), dtype=np.uint8)
    feats = detector.detect_and_compute(parse_input(img))
    assert len(feats) > 0
    assert np.all(feats.keypoints[:, 0] < 80)
    assert np.all(feats.keypoints[:, 1] < 70)
    assert np.all(feats.keypoints >= 0)


def test_detect_and_compute_nothing_above_threshold(image):
    det = XFDetector(detection_threshold=1.0)
    feats = det.detect_and_compute(parse_input(image))
    assert feats.keypoints.shape == (0, 2)
    assert feats.scores.shape == (0,)
    assert feats.descriptors.shape == (0, 64)
    idx0, idx1 = det.match(feats.descriptors, feats.descriptors)
    assert len(idx0) == 0 and len(idx1) == 0


def test_match_records_min_cossim(detector):
    detector.match(np.eye(2), np.eye(2), 0.5)
    assert detector.min_cossim == 0.5
    detector.match(np.eye(2), np.eye(2))
    assert detector.min_cossim == -1.0


def test_match_xfeat_same_image(detector):
    img = np.random.default_rng(5).integers(0, 256, size=(64, 64, 3), dtype=np.uint8)
    mkpts_0, mkpts_1 = detector.match_xfeat(img, img)
    assert mkpts_0.dtype == np.float32
    assert mkpts_0.shape[1] == 2
    assert len(mkpts_0) > 0
    assert np.array_equal(mkpts_0, mkpts_1)


def test_extract_dense_features(detector, image):
    dense = detector.extract_dense_features(parse_input(image))
    assert dense.shape == (64, 8, 8)
    assert np.allclose(np.linalg.norm(dense, axis=0), 1.0, atol=1e-4)


def test_weights_from_mapping_and_npz_agree(tmp_path, image):
    state = XFeatModel(4).state_dict()
    path = tmp_path / "weights.npz"
    np.savez(path, **state)
    from_dict = XFDetector(weights=state, detection_threshold=0.0)
    from_file = XFDetector(weights=str(path), detection_threshold=0.0)
    x = parse_input(image)
    a = from_dict.detect_and_compute(x)
    b = from_file.detect_and_compute(x)
    assert isinstance(a, Features)
    assert np.allclose(a.keypoints, b.keypoints)
    assert np.allclose(a.descriptors, b.descriptors)


def test_weights_rejects_bad_type():
    with pytest.raises(TypeError):
        XFDetector(weights=42)


def test_weights_rejects_missing_keys():
    with pytest.raises(KeyError):
        XFDetector(weights={"norm.weight": np.zeros(1)})