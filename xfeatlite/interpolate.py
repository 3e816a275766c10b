"""Sparse sampling of dense feature maps at keypoint positions."""

from __future__ import annotations

import numpy as np

_MODES = ("bilinear", "nearest")


def _check_mode(mode: str) -> None:
    if mode not in _MODES:
        raise ValueError("Choose either 'bilinear' or 'nearest'.")


def _float_dtype(arr: np.ndarray) -> np.dtype:
    return arr.dtype if np.issubdtype(arr.dtype, np.floating) else np.dtype(np.float32)


def _unnormalize(coord: np.ndarray, size: int, align_corners: bool) -> np.ndarray:
    """Map coordinates in [-1, 1] to pixel indices along an axis of ``size``."""
    if align_corners:
        return (coord + 1.0) / 2.0 * (size - 1)
    return ((coord + 1.0) * size - 1.0) / 2.0


def _gather(x: np.ndarray, iy: np.ndarray, ix: np.ndarray) -> np.ndarray:
    """Read ``x`` at integer positions, with zeros outside the image."""
    batch, _, height, width = x.shape
    iy = iy.astype(np.int64)
    ix = ix.astype(np.int64)
    valid = (ix >= 0) & (ix < width) & (iy >= 0) & (iy < height)
    yc = np.clip(iy, 0, height - 1)
    xc = np.clip(ix, 0, width - 1)
    batch_index = np.arange(batch).reshape(batch, 1, 1)
    values = x[batch_index, :, yc, xc]  # (B, Hg, Wg, C)
    values = values * valid[..., None]
    return np.moveaxis(values, -1, 1)


def grid_sample(x, grid, mode="bilinear", align_corners=False):
    """Sample ``x`` (B, C, H, W) at normalised ``grid`` (B, Hg, Wg, 2) positions.

    Grid values are (x, y) pairs in [-1, 1]; samples outside the image read as
    zero. Returns an array of shape (B, C, Hg, Wg).
    """
    _check_mode(mode)
    x = np.asarray(x)
    grid = np.asarray(grid, dtype=np.float64)
    if x.ndim != 4:
        raise ValueError("input must have shape (B, C, H, W)")
    if grid.ndim != 4 or grid.shape[-1] != 2:
        raise ValueError("grid must have shape (B, Hg, Wg, 2)")
    if grid.shape[0] != x.shape[0]:
        raise ValueError("input and grid must have the same batch size")

    height, width = x.shape[2], x.shape[3]
    ix = _unnormalize(grid[..., 0], width, align_corners)
    iy = _unnormalize(grid[..., 1], height, align_corners)

    if mode == "nearest":
        out = _gather(x, np.rint(iy), np.rint(ix))
    else:
        x0 = np.floor(ix)
        y0 = np.floor(iy)
        wx1 = ix - x0
        wy1 = iy - y0
        wx0 = 1.0 - wx1
        wy0 = 1.0 - wy1
        out = (
            _gather(x, y0, x0) * (wy0 * wx0)[:, None]
            + _gather(x, y0, x0 + 1) * (wy0 * wx1)[:, None]
            + _gather(x, y0 + 1, x0) * (wy1 * wx0)[:, None]
            + _gather(x, y0 + 1, x0 + 1) * (wy1 * wx1)[:, None]
        )
    return out.astype(_float_dtype(x), copy=False)


class InterpolateSparse2d:
    """Interpolate a dense (B, C, H, W) map at sparse (x, y) pixel positions."""

    def __init__(self, mode="bilinear", align_corners=False):
        _check_mode(mode)
        self.mode = mode
        self.align_corners = align_corners

    @staticmethod
    def _normgrid(pos, height: int, width: int) -> np.ndarray:
        pos = np.asarray(pos, dtype=np.float64)
        size = np.array([width - 1, height - 1], dtype=np.float64)
        with np.errstate(divide="ignore", invalid="ignore"):
            return 2.0 * (pos / size) - 1.0

    def forward(self, x, pos, H, W):
        """Sample ``x`` at ``pos`` (B, N, 2) and return features as (B, N, C)."""
        x = np.asarray(x)
        grid = self._normgrid(pos, H, W)[..., None, :].astype(_float_dtype(x))
        sampled = grid_sample(x, grid, self.mode, self.align_corners)  # (B, C, N, 1)
        return sampled.transpose(0, 2, 3, 1).squeeze(-2)

    def __call__(self, x, pos, H, W):
        return self.forward(x, pos, H, W)