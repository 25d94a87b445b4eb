"""Read-only pixel buffers handed from the capture layer to the core."""
from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator

import numpy as np

# Number of pixel planes carried by each supported layout.
PIXEL_FORMATS: dict[str, int] = {
    "gray": 1,
    "nv12": 2,
    "yuv420p": 3,
}

_SUBSAMPLED_FORMATS = frozenset({"nv12", "yuv420p"})


def _as_uint8_rows(data: object, bytes_per_row: int | None) -> np.ndarray:
    if isinstance(data, (bytes, bytearray, memoryview)):
        array = np.frombuffer(data, dtype=np.uint8)
    else:
        array = np.asarray(data)
    if array.dtype != np.uint8:
        raise ValueError("Frame data must be 8-bit")
    if array.ndim == 1:
        if not bytes_per_row or bytes_per_row <= 0:
            raise ValueError("bytes_per_row is required for flat frame data")
        if array.size % bytes_per_row:
            raise ValueError("Frame data length is not a multiple of bytes_per_row")
        array = array.reshape(-1, bytes_per_row)
    elif array.ndim != 2:
        raise ValueError("Frame data must be a 2D plane layout")
    return array


class FrameBuffer:
    """One captured image: pixel planes, geometry and a presentation timestamp.

    ``data`` holds the planes stacked row-wise the way capture stacks emit them
    (luma rows first, chroma rows after) with ``bytes_per_row`` bytes per row,
    which may exceed ``width`` when rows are padded. Consumers must hold the
    buffer lock while reading pixel data so the capture layer does not recycle
    it underneath them.
    """

    __slots__ = (
        "_data",
        "width",
        "height",
        "timestamp",
        "pixel_format",
        "_lock",
        "_lock_count",
    )

    def __init__(
        self,
        data: object | None,
        width: int,
        height: int,
        timestamp: float,
        *,
        pixel_format: str = "yuv420p",
        bytes_per_row: int | None = None,
    ) -> None:
        if pixel_format not in PIXEL_FORMATS:
            raise ValueError(f"Unsupported pixel format: {pixel_format!r}")
        width = int(width)
        height = int(height)
        if width < 0 or height < 0:
            raise ValueError("Frame dimensions must not be negative")
        if pixel_format in _SUBSAMPLED_FORMATS and (width % 2 or height % 2):
            raise ValueError(f"{pixel_format} frames require even dimensions")
        self._data: np.ndarray | None = None
        if data is not None:
            view = _as_uint8_rows(data, bytes_per_row).view()
            view.setflags(write=False)
            self._data = view
        self.width = width
        self.height = height
        self.timestamp = float(timestamp)
        self.pixel_format = pixel_format
        self._lock = threading.Lock()
        self._lock_count = 0

    # ------------------------------------------------------------------
    @classmethod
    def from_luma(cls, luma: np.ndarray, timestamp: float) -> "FrameBuffer":
        """Wrap a single 2D luma plane."""

        array = np.asarray(luma)
        if array.ndim != 2:
            raise ValueError("Luma plane must be two-dimensional")
        if array.dtype != np.uint8:
            array = np.clip(array, 0, 255).astype(np.uint8)
        height, width = array.shape
        return cls(array, width, height, timestamp, pixel_format="gray")

    @classmethod
    def from_rgb(cls, frame: np.ndarray, timestamp: float) -> "FrameBuffer":
        """Convert an RGB frame to a full-range I420 buffer.

        Odd trailing rows/columns are dropped so the chroma planes subsample
        evenly.
        """

        array = np.asarray(frame)
        if array.ndim == 2:
            array = np.repeat(array[:, :, np.newaxis], 3, axis=2)
        elif array.ndim != 3 or array.shape[2] < 3:
            raise ValueError("Expected an RGB frame")
        height, width = array.shape[:2]
        height -= height % 2
        width -= width % 2
        rgb = array[:height, :width, :3].astype(np.float32)
        red, green, blue = rgb[..., 0], rgb[..., 1], rgb[..., 2]
        luma = 0.299 * red + 0.587 * green + 0.114 * blue
        cb = -0.168736 * red - 0.331264 * green + 0.5 * blue + 128.0
        cr = 0.5 * red - 0.418688 * green - 0.081312 * blue + 128.0

        def _subsample(plane: np.ndarray) -> np.ndarray:
            blocks = plane.reshape(height // 2, 2, width // 2, 2)
            return blocks.mean(axis=(1, 3))

        packed = _pack_i420(
            _to_uint8(luma), _to_uint8(_subsample(cb)), _to_uint8(_subsample(cr))
        )
        return cls(packed, width, height, timestamp, pixel_format="yuv420p")

    # ------------------------------------------------------------------
    @property
    def plane_count(self) -> int:
        if self._data is None:
            return 0
        return PIXEL_FORMATS[self.pixel_format]

    @property
    def bytes_per_row(self) -> int:
        if self._data is None:
            return 0
        return int(self._data.shape[1])

    @property
    def is_locked(self) -> bool:
        with self._lock:
            return self._lock_count > 0

    def lock(self) -> None:
        with self._lock:
            self._lock_count += 1

    def unlock(self) -> None:
        with self._lock:
            if self._lock_count <= 0:
                raise RuntimeError("Frame buffer is not locked")
            self._lock_count -= 1

    @contextmanager
    def locked(self) -> Iterator["FrameBuffer"]:
        """Hold the read lock for the duration of the block."""

        self.lock()
        try:
            yield self
        finally:
            self.unlock()

    def plane(self, index: int) -> np.ndarray | None:
        """Return plane ``index`` as a ``(rows, columns)`` view.

        ``None`` is returned when the plane does not exist or the backing data
        is too short to hold it.
        """

        data = self._data
        if data is None or not (0 <= index < self.plane_count):
            return None
        width, height = self.width, self.height
        rows, stride = data.shape
        if index == 0:
            if rows < height or stride < width:
                return None
            return data[:height, :width]
        if self.pixel_format == "nv12":
            if rows < height + height // 2 or stride < width:
                return None
            return data[height : height + height // 2, :width]
        # Planar I420 chroma is only addressable when rows are unpadded.
        if stride != width or rows < height + height // 2:
            return None
        chroma = data[height : height + height // 2].reshape(-1)
        quarter = (width // 2) * (height // 2)
        start = (index - 1) * quarter
        return chroma[start : start + quarter].reshape(height // 2, width // 2)

    def as_i420(self) -> np.ndarray:
        """Return a contiguous ``(height * 3 / 2, width)`` I420 array."""

        luma = self.plane(0)
        if luma is None:
            raise ValueError("Frame has no readable luma plane")
        if self.pixel_format == "gray":
            height = luma.shape[0] - luma.shape[0] % 2
            width = luma.shape[1] - luma.shape[1] % 2
            neutral = np.full((height // 2, width // 2), 128, dtype=np.uint8)
            return _pack_i420(luma[:height, :width], neutral, neutral)
        if self.pixel_format == "nv12":
            interleaved = self.plane(1)
            if interleaved is None:
                raise ValueError("Frame has no readable chroma plane")
            return _pack_i420(luma, interleaved[:, 0::2], interleaved[:, 1::2])
        cb = self.plane(1)
        cr = self.plane(2)
        if cb is None or cr is None:
            raise ValueError("Frame has no readable chroma plane")
        return _pack_i420(luma, cb, cr)

    def __repr__(self) -> str:
        return (
            f"FrameBuffer({self.pixel_format}, {self.width}x{self.height}, "
            f"t={self.timestamp:.3f})"
        )


def _to_uint8(plane: np.ndarray) -> np.ndarray:
    return np.clip(np.rint(plane), 0, 255).astype(np.uint8)


def _pack_i420(luma: np.ndarray, cb: np.ndarray, cr: np.ndarray) -> np.ndarray:
    height, width = luma.shape
    packed = np.concatenate(
        (
            np.ascontiguousarray(luma).reshape(-1),
            np.ascontiguousarray(cb).reshape(-1),
            np.ascontiguousarray(cr).reshape(-1),
        )
    )
    return packed.reshape(height * 3 // 2, width)


__all__ = ["FrameBuffer", "PIXEL_FORMATS"]
