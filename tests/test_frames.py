from __future__ import annotations

import numpy as np
import pytest

from steady_take.frames import FrameBuffer


def test_luma_plane_respects_row_padding() -> None:
    data = np.arange(32, dtype=np.uint8).reshape(4, 8)
    frame = FrameBuffer(data, 6, 4, 0.0, pixel_format="gray")

    plane = frame.plane(0)

    assert plane is not None
    assert plane.shape == (4, 6)
    assert frame.bytes_per_row == 8
    assert plane[1, 0] == 8
    assert frame.plane(1) is None


def test_flat_buffers_require_bytes_per_row() -> None:
    raw = bytes(range(16))
    frame = FrameBuffer(raw, 4, 4, 1.5, pixel_format="gray", bytes_per_row=4)
    assert frame.plane(0).shape == (4, 4)
    with pytest.raises(ValueError):
        FrameBuffer(raw, 4, 4, 1.5, pixel_format="gray")


def test_pixel_data_is_read_only() -> None:
    source = np.zeros((4, 4), dtype=np.uint8)
    frame = FrameBuffer.from_luma(source, 0.0)
    plane = frame.plane(0)
    assert plane is not None
    with pytest.raises(ValueError):
        plane[0, 0] = 1


def test_lock_balance_is_enforced() -> None:
    frame = FrameBuffer.from_luma(np.zeros((2, 2), dtype=np.uint8), 0.0)
    with pytest.raises(RuntimeError):
        frame.unlock()

    with pytest.raises(KeyError):
        with frame.locked():
            assert frame.is_locked
            raise KeyError("boom")
    assert not frame.is_locked


def test_missing_data_has_no_planes() -> None:
    frame = FrameBuffer(None, 0, 0, 0.0, pixel_format="gray")
    assert frame.plane_count == 0
    assert frame.plane(0) is None


def test_subsampled_formats_need_even_dimensions() -> None:
    with pytest.raises(ValueError):
        FrameBuffer(np.zeros((4, 3), dtype=np.uint8), 3, 2, 0.0, pixel_format="yuv420p")
    with pytest.raises(ValueError):
        FrameBuffer(np.zeros((4, 4), dtype=np.uint8), 4, 4, 0.0, pixel_format="rgb")


def test_from_rgb_produces_neutral_chroma_for_white() -> None:
    white = np.full((5, 7, 3), 255, dtype=np.uint8)
    frame = FrameBuffer.from_rgb(white, 2.0)

    assert (frame.width, frame.height) == (6, 4)
    assert frame.plane_count == 3
    assert np.all(frame.plane(0) == 255)
    assert np.all(frame.plane(1) == 128)
    assert np.all(frame.plane(2) == 128)
    assert frame.as_i420().shape == (6, 6)


def test_nv12_chroma_is_deinterleaved() -> None:
    luma = np.full((2, 4), 100, dtype=np.uint8)
    chroma = np.array([[10, 20, 30, 40]], dtype=np.uint8)
    frame = FrameBuffer(np.vstack([luma, chroma]), 4, 2, 0.0, pixel_format="nv12")

    packed = frame.as_i420().reshape(-1)

    assert packed[:8].tolist() == [100] * 8
    assert packed[8:10].tolist() == [10, 30]
    assert packed[10:12].tolist() == [20, 40]


def test_gray_frames_encode_with_neutral_chroma() -> None:
    frame = FrameBuffer.from_luma(np.full((4, 4), 60, dtype=np.uint8), 0.0)
    packed = frame.as_i420()
    assert packed.shape == (6, 4)
    assert np.all(packed[4:] == 128)
