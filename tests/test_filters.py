import numpy as np

from mrc_optimizer.filters import DEFAULT_FACTORIES, FilterCache, identity


def test_unknown_name_falls_back_to_identity():
    cache = FilterCache(factories={})
    assert cache.get("nope") is identity
    assert cache.is_fallback("nope")


def test_failing_factory_falls_back_to_identity():
    def broken():
        raise RuntimeError("no backend")

    cache = FilterCache(factories={"blur": broken})
    image = np.arange(12, dtype=np.uint8).reshape(3, 4)
    assert cache.apply("blur", image) is image
    assert cache.fallbacks == {"blur"}


def test_factory_built_once_and_cached():
    calls = []

    def factory():
        calls.append(1)
        return lambda image, amount=1: image + amount

    cache = FilterCache(factories={"add": factory})
    image = np.zeros((2, 2), np.uint8)
    assert cache.apply("add", image, amount=2).max() == 2
    assert cache.apply("add", image).max() == 1
    assert len(calls) == 1
    assert len(cache) == 1
    assert not cache.is_fallback("add")


def test_register_replaces_fallback():
    cache = FilterCache(factories={})
    cache.get("invert")
    assert cache.is_fallback("invert")

    cache.register("invert", lambda: lambda image: 255 - image)
    assert not cache.is_fallback("invert")
    assert cache.apply("invert", np.zeros((1, 1), np.uint8))[0, 0] == 255


def test_clear_drops_cached_transforms():
    cache = FilterCache()
    cache.get("grayscale")
    cache.get("missing")
    assert len(cache) == 2
    cache.clear()
    assert len(cache) == 0
    assert not cache.fallbacks


def test_default_transforms_all_build():
    cache = FilterCache()
    for name in DEFAULT_FACTORIES:
        assert cache.get(name) is not identity
    assert not cache.fallbacks


def test_monochrome_and_color_controls():
    cache = FilterCache()
    gray = np.array([[10, 127, 128, 250]], np.uint8)
    assert cache.apply("monochrome", gray).tolist() == [[0, 0, 255, 255]]

    # Contrast pivots around mid-gray; brightness shifts everything
    ramp = np.array([[0, 128, 255]], np.uint8)
    stretched = cache.apply("color_controls", ramp, contrast=4.0, brightness=0.0)
    assert stretched[0, 0] == 0
    assert abs(int(stretched[0, 1]) - 128) <= 2
    assert stretched[0, 2] == 255
    assert cache.apply("color_controls", ramp, contrast=1.0, brightness=-0.1)[0, 1] < 128


def test_gaussian_blur_keeps_extent():
    cache = FilterCache()
    image = np.zeros((40, 60, 3), np.uint8)
    image[20, 30] = 255
    blurred = cache.apply("gaussian_blur", image, radius=15.0)
    assert blurred.shape == image.shape
