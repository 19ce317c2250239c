import numpy as np
import pytest

from kiosk_attendance.imaging import (
    compute_signature,
    cosine_similarity,
    decode_image,
    encode_jpeg,
    euclidean_distance,
    presence_variance,
    resize_max_side,
)

from .helpers import encode_png, make_face


def test_signature_is_unit_length_and_sized():
    signature = compute_signature(make_face(10), size=16)
    assert signature.shape == (256,)
    assert float(np.linalg.norm(signature)) == pytest.approx(1.0, abs=1e-5)
    assert not signature.flags.writeable


def test_black_frame_signature_is_zero_vector():
    signature = compute_signature(np.zeros((48, 64, 3), dtype=np.uint8))
    assert not signature.any()
    assert presence_variance(signature) == 0.0


def test_flat_frame_has_no_presence():
    signature = compute_signature(np.full((48, 64, 3), 128, dtype=np.uint8))
    assert presence_variance(signature) < 1e-6


def test_high_contrast_frame_has_presence():
    frame = np.zeros((64, 64), dtype=np.uint8)
    frame[:, 32:] = 255
    assert presence_variance(compute_signature(frame)) > 0.001


def test_cosine_similarity_of_identical_vectors_is_one():
    signature = compute_signature(make_face(20))
    assert cosine_similarity(signature, signature) == pytest.approx(1.0, abs=1e-6)


def test_cosine_similarity_stays_in_range():
    rng = np.random.default_rng(7)
    for _ in range(20):
        a = rng.normal(size=32).astype(np.float32)
        b = rng.normal(size=32).astype(np.float32)
        assert -1.0 <= cosine_similarity(a, b) <= 1.0
    assert cosine_similarity(np.ones(4), -np.ones(4)) == pytest.approx(-1.0)


def test_cosine_similarity_with_zero_vector_is_zero():
    assert cosine_similarity(np.zeros(8), np.ones(8)) == 0.0


def test_euclidean_distance():
    a = np.array([0.0, 0.0, 0.0], dtype=np.float32)
    b = np.array([3.0, 4.0, 0.0], dtype=np.float32)
    assert euclidean_distance(a, b) == pytest.approx(5.0)


def test_decode_image_rejects_garbage():
    assert decode_image(b"") is None
    assert decode_image(b"not an image") is None


def test_decode_image_roundtrips_png_pixels():
    frame = make_face(30)
    decoded = decode_image(encode_png(frame))
    assert decoded is not None
    assert np.array_equal(decoded, frame)


def test_encode_jpeg_produces_jpeg_bytes():
    assert encode_jpeg(make_face(10)).startswith(b"\xff\xd8")


def test_resize_max_side_keeps_aspect_ratio():
    frame = np.zeros((480, 1280, 3), dtype=np.uint8)
    resized = resize_max_side(frame, 640)
    assert resized.shape[:2] == (240, 640)
    assert resize_max_side(frame, 2000) is frame
