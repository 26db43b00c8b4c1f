"""
filters.py - Named image transforms with a get-or-create-with-fallback cache.

Every transform takes a numpy image plus keyword parameters and returns a
new image. Transforms that cannot be built are replaced with identity so
callers always get something they can run.
"""

import logging
import threading
from typing import Callable, Dict, Optional, Set

import numpy as np
import cv2

logger = logging.getLogger(__name__)

Transform = Callable[..., np.ndarray]
TransformFactory = Callable[[], Transform]


def identity(image: np.ndarray, **params) -> np.ndarray:
    """Pass-through used in place of any unavailable transform."""
    return image


def _to_gray(image: np.ndarray) -> np.ndarray:
    if image.ndim == 3 and image.shape[2] == 3:
        return cv2.cvtColor(image, cv2.COLOR_RGB2GRAY)
    if image.ndim == 3 and image.shape[2] == 4:
        return cv2.cvtColor(image, cv2.COLOR_RGBA2GRAY)
    return image


def _make_median_denoise() -> Transform:
    def median_denoise(image: np.ndarray, ksize: int = 3) -> np.ndarray:
        return cv2.medianBlur(image, ksize)
    return median_denoise


def _make_grayscale() -> Transform:
    def grayscale(image: np.ndarray) -> np.ndarray:
        return _to_gray(image)
    return grayscale


def _make_unsharp_mask() -> Transform:
    def unsharp_mask(image: np.ndarray, amount: float = 1.5, radius: float = 2.0) -> np.ndarray:
        blurred = cv2.GaussianBlur(image, (0, 0), sigmaX=radius, borderType=cv2.BORDER_REPLICATE)
        return cv2.addWeighted(image, 1.0 + amount, blurred, -amount, 0)
    return unsharp_mask


def _make_local_contrast() -> Transform:
    # CLAHE object is stateful; only ever used under the cache lock
    clahe = cv2.createCLAHE(clipLimit=2.0, tileGridSize=(8, 8))

    def local_contrast(image: np.ndarray) -> np.ndarray:
        return clahe.apply(_to_gray(image))
    return local_contrast


def _make_color_controls() -> Transform:
    def color_controls(image: np.ndarray, contrast: float = 1.0, brightness: float = 0.0) -> np.ndarray:
        # Contrast pivots around mid-gray, brightness is an offset in [0, 1] units
        normalized = image.astype(np.float32) / 255.0
        adjusted = (normalized - 0.5) * contrast + 0.5 + brightness
        return (np.clip(adjusted, 0.0, 1.0) * 255.0 + 0.5).astype(np.uint8)
    return color_controls


def _make_monochrome() -> Transform:
    def monochrome(image: np.ndarray, cutoff: int = 128) -> np.ndarray:
        gray = _to_gray(image)
        return np.where(gray < cutoff, 0, 255).astype(np.uint8)
    return monochrome


def _make_gaussian_blur() -> Transform:
    def gaussian_blur(image: np.ndarray, radius: float = 10.0) -> np.ndarray:
        # Output keeps the input extent; edges are replicated rather than grown
        return cv2.GaussianBlur(image, (0, 0), sigmaX=radius, borderType=cv2.BORDER_REPLICATE)
    return gaussian_blur


def _make_sharpen_luminance() -> Transform:
    unsharp = _make_unsharp_mask()

    def sharpen_luminance(image: np.ndarray, sharpness: float = 0.8) -> np.ndarray:
        return unsharp(image, amount=sharpness, radius=1.0)
    return sharpen_luminance


DEFAULT_FACTORIES: Dict[str, TransformFactory] = {
    "median_denoise": _make_median_denoise,
    "grayscale": _make_grayscale,
    "unsharp_mask": _make_unsharp_mask,
    "local_contrast": _make_local_contrast,
    "color_controls": _make_color_controls,
    "monochrome": _make_monochrome,
    "gaussian_blur": _make_gaussian_blur,
    "sharpen_luminance": _make_sharpen_luminance,
}


class FilterCache:
    """
    Cache of named transforms.

    `get` builds a transform on first use and falls back to identity when
    the name is unknown or its factory raises. All access goes through one
    lock: cached transforms may hold state that is not safe to share.
    """

    def __init__(self, factories: Optional[Dict[str, TransformFactory]] = None):
        self._factories = dict(DEFAULT_FACTORIES if factories is None else factories)
        self._cache: Dict[str, Transform] = {}
        self._lock = threading.RLock()
        self.fallbacks: Set[str] = set()

    def register(self, name: str, factory: TransformFactory):
        with self._lock:
            self._factories[name] = factory
            self._cache.pop(name, None)
            self.fallbacks.discard(name)

    def get(self, name: str) -> Transform:
        with self._lock:
            cached = self._cache.get(name)
            if cached is not None:
                return cached

            factory = self._factories.get(name)
            if factory is None:
                logger.warning(f"Transform '{name}' unavailable, using identity")
                transform = identity
            else:
                try:
                    transform = factory()
                except Exception as e:
                    logger.warning(f"Could not build transform '{name}': {e}; using identity")
                    transform = identity

            if transform is identity:
                self.fallbacks.add(name)
            self._cache[name] = transform
            return transform

    def is_fallback(self, name: str) -> bool:
        with self._lock:
            return name in self.fallbacks

    def apply(self, name: str, image: np.ndarray, **params) -> np.ndarray:
        """Run a transform while holding the cache lock."""
        with self._lock:
            return self.get(name)(image, **params)

    def clear(self):
        """Drop cached transforms to free memory."""
        with self._lock:
            count = len(self._cache)
            self._cache.clear()
            self.fallbacks.clear()
        logger.debug(f"Cleared {count} cached transforms")

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)
