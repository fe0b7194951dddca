import numpy as np
import pytest

from semslam.descriptors import KeyPoint
from semslam.features import (
    ExtractorNode,
    distribute_oct_tree,
    fast_detect,
    gaussian_blur,
    pad_reflect101,
    resize_bilinear,
)


def _square_image():
    img = np.zeros((30, 30), dtype=np.uint8)
    img[10:20, 10:20] = 200
    return img


def test_divide_bounds_and_partition():
    keys = [KeyPoint(1, 1), KeyPoint(8, 2), KeyPoint(2, 8), KeyPoint(7, 7), KeyPoint(9, 9)]
    node = ExtractorNode(ul=(0, 0), ur=(10, 0), bl=(0, 10), br=(10, 10), keys=keys)
    n1, n2, n3, n4 = node.divide()
    assert n1.ul == (0, 0) and n1.br == (5, 5)
    assert n2.ul == (5, 0) and n2.br == (10, 5)
    assert n3.ul == (0, 5) and n3.br == (5, 10)
    assert n4.ul == (5, 5) and n4.br == (10, 10)
    assert [k.pt for k in n1.keys] == [(1, 1)]
    assert [k.pt for k in n2.keys] == [(8, 2)]
    assert [k.pt for k in n3.keys] == [(2, 8)]
    assert len(n4.keys) == 2
    assert n1.no_more and n2.no_more and n3.no_more
    assert not n4.no_more


def test_divide_keeps_every_key():
    keys = [KeyPoint(float(x), float(y)) for x in range(0, 10, 3) for y in range(0, 10, 2)]
    node = ExtractorNode(ul=(0, 0), ur=(10, 0), bl=(0, 10), br=(10, 10), keys=keys)
    children = node.divide()
    assert sum(len(c.keys) for c in children) == len(keys)


def test_distribute_spread_points_all_kept():
    keys = [KeyPoint(5, 5), KeyPoint(25, 5), KeyPoint(5, 25), KeyPoint(25, 25)]
    result = distribute_oct_tree(keys, 0, 30, 0, 30, 10)
    assert sorted(k.pt for k in result) == sorted(k.pt for k in keys)


def test_distribute_coincident_points_keeps_strongest():
    keys = [KeyPoint(4, 4, response=1.0), KeyPoint(4, 4, response=5.0), KeyPoint(4, 4, response=3.0)]
    result = distribute_oct_tree(keys, 0, 20, 0, 20, 10)
    assert len(result) == 1
    assert result[0].response == 5.0


def test_distribute_empty():
    assert distribute_oct_tree([], 0, 40, 0, 20, 5) == []


def test_distribute_result_subset_and_distinct():
    rng = np.random.default_rng(3)
    keys = [
        KeyPoint(float(x), float(y), response=float(r))
        for x, y, r in zip(rng.uniform(0, 60, 200), rng.uniform(0, 30, 200), rng.uniform(0, 100, 200))
    ]
    result = distribute_oct_tree(keys, 0, 60, 0, 30, 20)
    inputs = {(k.x, k.y, k.response) for k in keys}
    assert 0 < len(result) <= len(keys)
    assert all((k.x, k.y, k.response) in inputs for k in result)
    assert len({(k.x, k.y) for k in result}) == len(result)


def test_distribute_returns_copies():
    keys = [KeyPoint(5, 5), KeyPoint(25, 25)]
    result = distribute_oct_tree(keys, 0, 30, 0, 30, 10)
    for k in result:
        k.x += 100
    assert sorted(k.pt for k in keys) == [(5, 5), (25, 25)]


def test_distribute_rejects_empty_region():
    with pytest.raises(ValueError):
        distribute_oct_tree([KeyPoint(1, 1)], 0, 10, 5, 5, 3)


def test_fast_uniform_image_has_no_corners():
    img = np.full((20, 20), 90, dtype=np.uint8)
    assert fast_detect(img, 10, True) == []
    assert fast_detect(img, 0, False) == []


def test_fast_single_bright_pixel():
    img = np.zeros((21, 21), dtype=np.uint8)
    img[10, 10] = 200
    for nonmax in (True, False):
        kps = fast_detect(img, 20, nonmax)
        assert [k.pt for k in kps] == [(10.0, 10.0)]
        assert kps[0].response >= 20


def test_fast_small_image():
    assert fast_detect(np.zeros((6, 6), dtype=np.uint8), 10, True) == []


def test_fast_nonmax_subset():
    img = _square_image()
    raw = fast_detect(img, 20, False)
    suppressed = fast_detect(img, 20, True)
    assert suppressed
    assert len(suppressed) <= len(raw)
    raw_pts = {k.pt for k in raw}
    assert all(k.pt in raw_pts for k in suppressed)


def test_fast_row_major_order():
    kps = fast_detect(_square_image(), 20, False)
    order = [(k.y, k.x) for k in kps]
    assert order == sorted(order)


def test_fast_higher_threshold_finds_fewer():
    img = _square_image()
    assert len(fast_detect(img, 250, False)) <= len(fast_detect(img, 20, False))


def test_resize_shape_and_constant():
    img = np.full((10, 16), 77, dtype=np.uint8)
    out = resize_bilinear(img, 8, 5)
    assert out.shape == (5, 8)
    assert out.dtype == np.uint8
    assert np.all(out == 77)


def test_resize_same_size_identity():
    img = np.arange(48, dtype=np.uint8).reshape(6, 8)
    assert np.array_equal(resize_bilinear(img, 8, 6), img)


def test_resize_values_within_range():
    rng = np.random.default_rng(0)
    img = rng.integers(10, 200, size=(24, 32)).astype(np.uint8)
    out = resize_bilinear(img, 20, 15)
    assert out.min() >= img.min() and out.max() <= img.max()


def test_resize_invalid_size():
    with pytest.raises(ValueError):
        resize_bilinear(np.zeros((4, 4), dtype=np.uint8), 0, 3)


def test_pad_reflect101_row():
    out = pad_reflect101(np.array([[1, 2, 3], [4, 5, 6]]), 1)
    assert out[1].tolist() == [2, 1, 2, 3, 2]
    assert out.shape == (4, 5)
    assert np.array_equal(out[0], out[2])


def test_pad_negative_border():
    with pytest.raises(ValueError):
        pad_reflect101(np.zeros((3, 3)), -1)


def test_blur_constant_and_shape():
    img = np.full((12, 9), 130, dtype=np.uint8)
    out = gaussian_blur(img, 7, 2)
    assert out.shape == img.shape
    assert np.all(out == 130)


def test_blur_impulse_symmetric_peak():
    img = np.zeros((15, 15), dtype=np.float64)
    img[7, 7] = 1.0
    out = gaussian_blur(img, 7, 2)
    assert np.allclose(out, out.T)
    assert np.allclose(out, out[::-1, ::-1])
    assert np.unravel_index(np.argmax(out), out.shape) == (7, 7)
    assert out.sum() == pytest.approx(1.0)


def test_blur_even_ksize_rejected():
    with pytest.raises(ValueError):
        gaussian_blur(np.zeros((5, 5), dtype=np.uint8), 4, 1.0)