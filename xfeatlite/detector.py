"""Keypoint detection, description and mutual nearest-neighbour matching."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

import numpy as np
from numpy.lib.stride_tricks import sliding_window_view

from .interpolate import InterpolateSparse2d
from .model import XFeatModel, interpolate_bilinear

_NORMALIZE_EPS = 1e-12


@dataclass(frozen=True)
class Features:
    """Keypoints (N, 2) as (x, y), their scores (N,) and descriptors (N, 64)."""

    keypoints: np.ndarray
    scores: np.ndarray
    descriptors: np.ndarray

    def __len__(self) -> int:
        return len(self.keypoints)


def _l2_normalize(x: np.ndarray, axis: int) -> np.ndarray:
    norm = np.linalg.norm(x, axis=axis, keepdims=True)
    return x / np.maximum(norm, _NORMALIZE_EPS)


def _softmax(x: np.ndarray, axis: int) -> np.ndarray:
    shifted = x - x.max(axis=axis, keepdims=True)
    exp = np.exp(shifted)
    return exp / exp.sum(axis=axis, keepdims=True)


def parse_input(img):
    """Turn an H x W (x 1 or 3) uint8 image into a (1, C, H, W) float array in [0, 1]."""
    img = np.asarray(img)
    if img.ndim == 2:
        img = img[..., None]
    if img.ndim != 3 or img.shape[-1] not in (1, 3):
        raise ValueError("Unsupported number of channels in the input image.")
    tensor = img.astype(np.float32)[None].transpose(0, 3, 1, 2)
    return tensor / np.float32(255.0)


def preprocess_tensor(x):
    """Resize so height and width are multiples of 32.

    Returns the resized array and the height and width ratios of the original
    size to the new one.
    """
    x = np.asarray(x, dtype=np.float32)
    height, width = x.shape[-2], x.shape[-1]
    new_h = (height // 32) * 32
    new_w = (width // 32) * 32
    if new_h == 0 or new_w == 0:
        raise ValueError("image must be at least 32 pixels high and wide")
    rh = height / new_h
    rw = width / new_w
    x = interpolate_bilinear(x, (new_h, new_w), align_corners=True)
    return x, rh, rw


def get_kpts_heatmap(kpts, softmax_temp=1.0):
    """Convert (B, 65, H, W) keypoint logits to a (B, 1, 8H, 8W) heatmap."""
    kpts = np.asarray(kpts)
    scores = _softmax(kpts * softmax_temp, axis=1)[:, :64]
    batch, _, height, width = scores.shape
    heatmap = scores.transpose(0, 2, 3, 1).reshape(batch, height, width, 8, 8)
    return heatmap.transpose(0, 1, 3, 2, 4).reshape(batch, 1, height * 8, width * 8)


def nms(x, threshold=0.05, kernel_size=5):
    """Positions (B, N, 2) as (x, y) of local maxima above ``threshold``.

    Batches with fewer maxima are padded with (0, 0) rows.
    """
    x = np.asarray(x, dtype=np.float64)
    batch = x.shape[0]
    pad = kernel_size // 2
    padded = np.pad(
        x, ((0, 0), (0, 0), (pad, pad), (pad, pad)), constant_values=-np.inf
    )
    windows = sliding_window_view(padded, (kernel_size, kernel_size), axis=(2, 3))
    local_max = windows.max(axis=(-2, -1))
    pos = (x == local_max) & (x > threshold)

    found = [np.argwhere(plane)[:, 1:][:, ::-1] for plane in pos]
    count = max((len(points) for points in found), default=0)
    result = np.zeros((batch, count, 2), dtype=np.int64)
    for out, points in zip(result, found):
        out[: len(points)] = points
    return result


def match_descriptors(feats1, feats2, min_cossim=-1.0):
    """Mutual nearest neighbours by cosine similarity.

    Returns index arrays into ``feats1`` and ``feats2``. When ``min_cossim`` is
    positive, pairs whose similarity does not exceed it are dropped.
    """
    feats1 = np.asarray(feats1)
    feats2 = np.asarray(feats2)
    if len(feats1) == 0 or len(feats2) == 0:
        empty = np.zeros(0, dtype=np.int64)
        return empty, empty.copy()

    cossim = feats1 @ feats2.T
    match12 = cossim.argmax(axis=1)
    match21 = (feats2 @ feats1.T).argmax(axis=1)

    idx0 = np.arange(len(match12))
    keep = match21[match12] == idx0
    if min_cossim > 0:
        keep &= cossim.max(axis=1) > min_cossim
    return idx0[keep], match12[keep]


def _load_weights(model: XFeatModel, weights) -> None:
    if weights is None:
        return
    if isinstance(weights, (str, os.PathLike)):
        data = np.load(weights, allow_pickle=False)
        if not hasattr(data, "files"):
            raise ValueError("weights file must be an .npz archive of named arrays")
        with data:
            state = {name: data[name] for name in data.files}
    elif isinstance(weights, Mapping):
        state = weights
    else:
        raise TypeError("weights must be a path, a mapping of arrays, or None")
    model.load_state_dict(state)


class XFDetector:
    """Detects keypoints, computes descriptors and matches them between images."""

    def __init__(self, weights=None, top_k=4096, detection_threshold=0.05):
        self.top_k = top_k
        self.detection_threshold = detection_threshold
        self.model = XFeatModel(4)
        _load_weights(self.model, weights)
        self.bilinear = InterpolateSparse2d("bilinear")
        self.nearest = InterpolateSparse2d("nearest")
        self.min_cossim = -1.0

    def _dense(self, x):
        x, rh, rw = preprocess_tensor(x)
        feats, logits, heatmap = self.model(x)
        return x, rh, rw, _l2_normalize(feats, axis=1), logits, heatmap

    def detect_and_compute(self, x):
        """Detect up to ``top_k`` keypoints in the first image of a (B, C, H, W) batch."""
        x, rh, rw, m1, k1, h1 = self._dense(x)
        height, width = x.shape[2], x.shape[3]

        k1h = get_kpts_heatmap(k1)
        mkpts = nms(k1h, self.detection_threshold, 5)

        scores = (
            self.nearest(k1h, mkpts, height, width)
            * self.bilinear(h1, mkpts, height, width)
        ).squeeze(-1)
        scores[np.all(mkpts == 0, axis=-1)] = -1

        idxs = np.argsort(-scores, axis=-1, kind="stable")[:, : self.top_k]
        mkpts = np.stack(
            [np.take_along_axis(mkpts[..., axis], idxs, axis=-1) for axis in (0, 1)],
            axis=-1,
        )
        scores = np.take_along_axis(scores, idxs, axis=-1)

        feats = _l2_normalize(self.bilinear(m1, mkpts, height, width), axis=-1)
        keypoints = mkpts * np.array([rw, rh]).reshape(1, 1, -1)

        valid = scores[0] > 0
        return Features(
            keypoints=keypoints[0][valid],
            scores=scores[0][valid],
            descriptors=feats[0][valid],
        )

    def match(self, feats1, feats2, min_cossim=-1.0):
        """Mutual nearest-neighbour matching; returns index arrays into each set."""
        self.min_cossim = min_cossim
        return match_descriptors(feats1, feats2, min_cossim)

    def match_xfeat(self, img1, img2):
        """Detect and match two images; returns matched (N, 2) float32 point arrays."""
        out1 = self.detect_and_compute(parse_input(img1))
        out2 = self.detect_and_compute(parse_input(img2))
        idx0, idx1 = self.match(out1.descriptors, out2.descriptors, -1.0)
        mkpts_0 = np.asarray(out1.keypoints[idx0], dtype=np.float32).reshape(-1, 2)
        mkpts_1 = np.asarray(out2.keypoints[idx1], dtype=np.float32).reshape(-1, 2)
        return mkpts_0, mkpts_1

    def extract_dense_features(self, x):
        """L2-normalised dense features (64, H/8, W/8) of the first image."""
        return self._dense(x)[3][0]