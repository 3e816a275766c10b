"""XFeat keypoint detection, description and matching in NumPy."""

__version__ = "0.1.0"
__all__ = ["interpolate", "model", "detector"]