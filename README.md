# xfeatlite

The XFeat local feature network written in NumPy: keypoint detection,
64-dimensional descriptors and mutual nearest-neighbour matching. The
convolutional backbone, the heads and the sparse interpolation are plain
array code; no deep-learning framework is needed.

## Installation

```
pip install xfeatlite
```

## Weights

`XFDetector(weights=None, top_k=4096, detection_threshold=0.05)` accepts
trained weights as either

- a path to an `.npz` archive of named arrays, or
- a mapping from parameter names to arrays,

laid out as `XFeatModel.state_dict()` returns them (dotted layer paths such as
`block1.0.layer.0.weight`). Keys and shapes must match exactly, otherwise
`KeyError` or `ValueError` is raised; extra `num_batches_tracked` keys are
ignored. With `weights=None` the network keeps its random initial weights,
which is useful only for testing shapes.

## Usage

```python
from xfeatlite.detector import XFDetector, parse_input

detector = XFDetector("xfeat.npz", top_k=4096, detection_threshold=0.05)

# Images are H x W, H x W x 1 or H x W x 3 uint8 arrays,
# at least 32 pixels high and wide.
mkpts_0, mkpts_1 = detector.match_xfeat(image1, image2)  # (N, 2) float32 each

# Step by step.
features = detector.detect_and_compute(parse_input(image1))
print(len(features), features.keypoints.shape, features.descriptors.shape)

other = detector.detect_and_compute(parse_input(image2))
idx0, idx1 = detector.match(features.descriptors, other.descriptors, min_cossim=0.82)
pairs = features.keypoints[idx0], other.keypoints[idx1]

dense = detector.extract_dense_features(parse_input(image1))  # (64, H/32*4, W/32*4)
```

`detect_and_compute` works on the first image of a `(B, C, H, W)` batch. The
image is resized so both sides are multiples of 32, keypoints are found by
non-maximum suppression on the keypoint heatmap, ranked by score, cut to
`top_k`, and returned as a `Features` record of `keypoints` (x, y in original
image pixels), `scores` and L2-normalised `descriptors`. Only keypoints with a
positive score are kept.

`match` returns index arrays of mutual nearest neighbours by cosine
similarity; a positive `min_cossim` also drops pairs whose similarity is not
above it. `match_xfeat` detects in both images and matches with no
similarity threshold.

## Modules

- `xfeatlite.interpolate`: `grid_sample` (bilinear or nearest, zeros outside
  the image) and `InterpolateSparse2d`, which samples a `(B, C, H, W)` map at
  `(B, N, 2)` pixel positions and returns `(B, N, C)`.
- `xfeatlite.model`: the array operations `conv2d`, `batch_norm`,
  `instance_norm`, `avg_pool2d`, `interpolate_bilinear` and `unfold2d`, the
  `BasicLayer` block (convolution, batch norm, ReLU) and `XFeatModel`, whose
  `forward` returns dense features, keypoint logits and the reliability
  heatmap, with `state_dict` and `load_state_dict` for weights.
- `xfeatlite.detector`: `parse_input`, `preprocess_tensor`,
  `get_kpts_heatmap`, `nms`, `match_descriptors`, the `Features` record and
  `XFDetector`.

## What it does not do

- There is no command-line program and no interactive or live-camera demo.
- It does not read or write image files, estimate homographies or draw
  matches; pass decoded arrays in and use the returned points as you wish.
- It does not read framework checkpoint files; weights must be given as an
  `.npz` archive or a mapping of arrays.
- Everything runs on the CPU.

## Tests

```
pip install -e .[test]
pytest
```