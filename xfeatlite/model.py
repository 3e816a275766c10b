"""The XFeat convolutional network evaluated with numpy."""

from __future__ import annotations

from itertools import product
from typing import Iterator

import numpy as np

_rng = np.random.default_rng()


def _float_dtype(arr: np.ndarray) -> np.dtype:
    return arr.dtype if np.issubdtype(arr.dtype, np.floating) else np.dtype(np.float32)


def conv2d(x, weight, bias=None, stride=1, padding=0, dilation=1):
    """2-D cross-correlation of (B, C, H, W) input with (O, C, kh, kw) weights."""
    x = np.asarray(x)
    weight = np.asarray(weight)
    batch, channels, height, width = x.shape
    out_channels, weight_channels, kh, kw = weight.shape
    if channels != weight_channels:
        raise ValueError(
            f"input has {channels} channels but weight expects {weight_channels}"
        )
    out_h = (height + 2 * padding - dilation * (kh - 1) - 1) // stride + 1
    out_w = (width + 2 * padding - dilation * (kw - 1) - 1) // stride + 1
    if out_h <= 0 or out_w <= 0:
        raise ValueError("input is too small for this convolution")

    padded = np.pad(x, ((0, 0), (0, 0), (padding, padding), (padding, padding)))
    out = np.zeros((batch, out_channels, out_h, out_w), dtype=np.result_type(x, weight))
    span_h = stride * (out_h - 1) + 1
    span_w = stride * (out_w - 1) + 1
    for i, j in product(range(kh), range(kw)):
        top, left = i * dilation, j * dilation
        patch = padded[:, :, top : top + span_h : stride, left : left + span_w : stride]
        out += np.einsum("oc,bchw->bohw", weight[:, :, i, j], patch, optimize=True)
    if bias is not None:
        out += np.asarray(bias).reshape(1, -1, 1, 1)
    return out


def batch_norm(x, running_mean, running_var, eps=1e-5):
    """Normalise channel axis 1 with stored statistics (no affine transform)."""
    x = np.asarray(x)
    shape = (1, -1) + (1,) * (x.ndim - 2)
    mean = np.asarray(running_mean).reshape(shape)
    var = np.asarray(running_var).reshape(shape)
    return (x - mean) / np.sqrt(var + eps)


def instance_norm(x, eps=1e-5):
    """Normalise every (sample, channel) plane to zero mean and unit variance."""
    x = np.asarray(x)
    axes = tuple(range(2, x.ndim))
    mean = x.mean(axis=axes, keepdims=True)
    var = x.var(axis=axes, keepdims=True)
    return (x - mean) / np.sqrt(var + eps)


def avg_pool2d(x, kernel_size, stride=None):
    """Average pooling without padding; partial windows are dropped."""
    x = np.asarray(x)
    stride = kernel_size if stride is None else stride
    height, width = x.shape[2], x.shape[3]
    out_h = (height - kernel_size) // stride + 1
    out_w = (width - kernel_size) // stride + 1
    if out_h <= 0 or out_w <= 0:
        raise ValueError("input is smaller than the pooling window")
    span_h = stride * (out_h - 1) + 1
    span_w = stride * (out_w - 1) + 1
    total = sum(
        x[:, :, i : i + span_h : stride, j : j + span_w : stride]
        for i, j in product(range(kernel_size), repeat=2)
    )
    return (total / (kernel_size * kernel_size)).astype(_float_dtype(x), copy=False)


def _source_index(out_size: int, in_size: int, align_corners: bool):
    dst = np.arange(out_size, dtype=np.float64)
    if align_corners:
        scale = (in_size - 1) / (out_size - 1) if out_size > 1 else 0.0
        src = dst * scale
    else:
        src = np.maximum((dst + 0.5) * in_size / out_size - 0.5, 0.0)
    lo = np.minimum(np.floor(src).astype(np.int64), in_size - 1)
    hi = np.minimum(lo + 1, in_size - 1)
    return lo, hi, src - lo


def interpolate_bilinear(x, size, align_corners=False):
    """Resize (B, C, H, W) input to ``size`` = (H', W') with bilinear weights."""
    x = np.asarray(x)
    out_h, out_w = (int(s) for s in size)
    lo_y, hi_y, fy = _source_index(out_h, x.shape[2], align_corners)
    lo_x, hi_x, fx = _source_index(out_w, x.shape[3], align_corners)
    rows = x[:, :, lo_y, :] * (1.0 - fy)[:, None] + x[:, :, hi_y, :] * fy[:, None]
    out = rows[..., lo_x] * (1.0 - fx) + rows[..., hi_x] * fx
    return out.astype(_float_dtype(x), copy=False)


def unfold2d(x, ws=2):
    """Fold every ws x ws window into channels: (B, C, H, W) -> (B, C*ws*ws, H/ws, W/ws)."""
    x = np.asarray(x)
    batch, channels, height, width = x.shape
    out_h, out_w = height // ws, width // ws
    x = x[:, :, : out_h * ws, : out_w * ws]
    x = x.reshape(batch, channels, out_h, ws, out_w, ws)
    return x.transpose(0, 1, 3, 5, 2, 4).reshape(batch, channels * ws * ws, out_h, out_w)


class _Module:
    """A node in the layer tree holding named arrays and named children."""

    def __init__(self):
        self._arrays: dict[str, np.ndarray] = {}
        self._children: dict[str, _Module] = {}

    def _named_arrays(self, prefix: str = "") -> Iterator[tuple[str, np.ndarray]]:
        for name, arr in self._arrays.items():
            yield prefix + name, arr
        for name, child in self._children.items():
            yield from child._named_arrays(f"{prefix}{name}.")

    def _assign(self, path: str, value: np.ndarray) -> None:
        head, _, rest = path.partition(".")
        if rest:
            self._children[head]._assign(rest, value)
        else:
            self._arrays[head] = value

    def _state_dict(self) -> dict[str, np.ndarray]:
        return {name: arr.copy() for name, arr in self._named_arrays()}

    def _load_state_dict(self, state) -> None:
        current = dict(self._named_arrays())
        missing = sorted(set(current) - set(state))
        unexpected = sorted(
            key
            for key in set(state) - set(current)
            if not key.endswith("num_batches_tracked")
        )
        if missing or unexpected:
            raise KeyError(f"missing keys: {missing}; unexpected keys: {unexpected}")
        converted = {}
        for name, arr in current.items():
            value = np.array(state[name])
            if value.shape != arr.shape:
                raise ValueError(
                    f"shape mismatch for {name}: expected {arr.shape}, got {value.shape}"
                )
            converted[name] = value.astype(_float_dtype(value))
        for name, value in converted.items():
            self._assign(name, value)


def _uniform(bound: float, shape: tuple[int, ...]) -> np.ndarray:
    return _rng.uniform(-bound, bound, size=shape).astype(np.float32)


class _Conv2d(_Module):
    def __init__(self, in_channels, out_channels, kernel_size, stride=1, padding=0,
                 dilation=1, bias=True):
        super().__init__()
        self.stride = stride
        self.padding = padding
        self.dilation = dilation
        bound = 1.0 / np.sqrt(in_channels * kernel_size * kernel_size)
        self._arrays["weight"] = _uniform(
            bound, (out_channels, in_channels, kernel_size, kernel_size)
        )
        if bias:
            self._arrays["bias"] = _uniform(bound, (out_channels,))

    def forward(self, x):
        return conv2d(x, self._arrays["weight"], self._arrays.get("bias"),
                      self.stride, self.padding, self.dilation)


class _Linear(_Module):
    def __init__(self, in_features, out_features):
        super().__init__()
        bound = 1.0 / np.sqrt(in_features)
        self._arrays["weight"] = _uniform(bound, (out_features, in_features))
        self._arrays["bias"] = _uniform(bound, (out_features,))

    def forward(self, x):
        return np.asarray(x) @ self._arrays["weight"].T + self._arrays["bias"]


class _BatchNorm(_Module):
    def __init__(self, num_features, eps=1e-5):
        super().__init__()
        self.eps = eps
        self._arrays["running_mean"] = np.zeros(num_features, dtype=np.float32)
        self._arrays["running_var"] = np.ones(num_features, dtype=np.float32)

    def forward(self, x):
        return batch_norm(x, self._arrays["running_mean"], self._arrays["running_var"],
                          self.eps)


class _InstanceNorm(_Module):
    def __init__(self, eps=1e-5):
        super().__init__()
        self.eps = eps

    def forward(self, x):
        return instance_norm(x, self.eps)


class _AvgPool2d(_Module):
    def __init__(self, kernel_size, stride):
        super().__init__()
        self.kernel_size = kernel_size
        self.stride = stride

    def forward(self, x):
        return avg_pool2d(x, self.kernel_size, self.stride)


class _ReLU(_Module):
    def forward(self, x):
        return np.maximum(x, 0)


class _Sigmoid(_Module):
    def forward(self, x):
        x = np.asarray(x)
        return 0.5 * (1.0 + np.tanh(0.5 * x))


class _Sequential(_Module):
    def __init__(self, *modules):
        super().__init__()
        for index, module in enumerate(modules):
            self._children[str(index)] = module

    def forward(self, x):
        for module in self._children.values():
            x = module.forward(x)
        return x

    def __call__(self, x):
        return self.forward(x)


class BasicLayer(_Module):
    """Conv2d -> BatchNorm (no affine) -> ReLU."""

    def __init__(self, in_channels, out_channels, kernel_size=3, stride=1, padding=1,
                 dilation=1, bias=False):
        super().__init__()
        self.layer = _Sequential(
            _Conv2d(in_channels, out_channels, kernel_size, stride=stride,
                    padding=padding, dilation=dilation, bias=bias),
            _BatchNorm(out_channels),
            _ReLU(),
        )
        self._children["layer"] = self.layer

    def forward(self, x):
        return self.layer.forward(x)

    def __call__(self, x):
        return self.forward(x)


class XFeatModel(_Module):
    """Backbone and heads of the XFeat local feature network."""

    def __init__(self, stride=4):
        super().__init__()
        if stride in (1, 2):
            block1 = _Sequential(
                BasicLayer(1, 4, 3, 1, 1), BasicLayer(4, 8, 3, stride, 1),
                BasicLayer(8, 8, 3, 1, 1), BasicLayer(8, 24, 3, 1, 1),
            )
        elif stride == 4:
            block1 = _Sequential(
                BasicLayer(1, 4, 3, 1, 1), BasicLayer(4, 8, 3, 2, 1),
                BasicLayer(8, 8, 3, 1, 1), BasicLayer(8, 24, 3, 2, 1),
            )
        else:
            raise ValueError("Invalid stride value, must be 1, 2 or 4")

        self.norm = _InstanceNorm()
        self.skip1 = _Sequential(
            _AvgPool2d(stride, stride),
            _Conv2d(1, 24, 1, stride=1, padding=0),
        )
        self.block1 = block1
        self.block2 = _Sequential(BasicLayer(24, 24, 3, 1, 1), BasicLayer(24, 24, 3, 1, 1))
        self.block3 = _Sequential(
            BasicLayer(24, 64, 3, 1, 1), BasicLayer(64, 64, 3, 1, 1),
            BasicLayer(64, 64, 1, 1, 0),
        )
        self.block4 = _Sequential(
            BasicLayer(64, 64, 3, 2, 1), BasicLayer(64, 64, 3, 1, 1),
            BasicLayer(64, 64, 3, 1, 1),
        )
        self.block5 = _Sequential(
            BasicLayer(64, 128, 3, 2, 1), BasicLayer(128, 128, 3, 1, 1),
            BasicLayer(128, 128, 3, 1, 1), BasicLayer(128, 64, 1, 1, 0),
        )
        self.block_fusion = _Sequential(
            BasicLayer(64, 64, 3, 1, 1), BasicLayer(64, 64, 3, 1, 1),
            _Conv2d(64, 64, 1, padding=0),
        )
        self.heatmap_head = _Sequential(
            BasicLayer(64, 64, 1, 1, 0), BasicLayer(64, 64, 1, 1, 0),
            _Conv2d(64, 1, 1), _Sigmoid(),
        )
        self.keypoint_head = _Sequential(
            BasicLayer(64, 64, 1, 1, 0), BasicLayer(64, 64, 1, 1, 0),
            BasicLayer(64, 64, 1, 1, 0), _Conv2d(64, 65, 1),
        )
        matcher_layers: list[_Module] = [_Linear(128, 512)]
        for _ in range(3):
            matcher_layers += [_BatchNorm(512), _ReLU(), _Linear(512, 512)]
        matcher_layers += [_BatchNorm(512), _ReLU(), _Linear(512, 64)]
        self.fine_matcher = _Sequential(*matcher_layers)

        for name in ("norm", "skip1", "block1", "block2", "block3", "block4", "block5",
                     "block_fusion", "heatmap_head", "keypoint_head", "fine_matcher"):
            self._children[name] = getattr(self, name)

    def unfold2d(self, x, ws=2):
        """Fold ws x ws windows into channels."""
        return unfold2d(x, ws)

    def forward(self, x):
        """Return (feats, keypoint logits, heatmap) for (B, C, H, W) images."""
        x = np.asarray(x)
        x = x.astype(_float_dtype(x), copy=False)
        x = x.mean(axis=1, keepdims=True)
        x = self.norm.forward(x)

        x1 = self.block1(x)
        x2 = self.block2(x1 + self.skip1(x))
        x3 = self.block3(x2)
        x4 = self.block4(x3)
        x5 = self.block5(x4)

        size = x3.shape[2:]
        x4 = interpolate_bilinear(x4, size, align_corners=False)
        x5 = interpolate_bilinear(x5, size, align_corners=False)
        feats = self.block_fusion(x3 + x4 + x5)

        heatmap = self.heatmap_head(feats)
        keypoints = self.keypoint_head(self.unfold2d(x, 8))
        return feats, keypoints, heatmap

    def __call__(self, x):
        return self.forward(x)

    def state_dict(self):
        """Copies of every weight and statistic, keyed by dotted layer path."""
        return self._state_dict()

    def load_state_dict(self, state):
        """Replace every weight and statistic; keys and shapes must match."""
        self._load_state_dict(state)