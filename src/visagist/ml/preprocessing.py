"""Image loading and preprocessing.

Resolves an image reference (raw bytes, a local path, or an http(s) URL)
into an RGB image, then turns it into the normalized NCHW float32 tensor the
classifier expects. Resize and normalization parameters come from the
model's ``preprocessor_config.json``.
"""

from __future__ import annotations

import io
import os
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Union

import httpx
import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

if TYPE_CHECKING:
    from numpy.typing import NDArray

ImageRef = Union[bytes, str, os.PathLike[str]]

_IMAGENET_MEAN = (0.485, 0.456, 0.406)
_IMAGENET_STD = (0.229, 0.224, 0.225)
_DEFAULT_SIZE = 224

# PIL resample codes used by HF image processors
_RESAMPLE: dict[int, Image.Resampling] = {
    0: Image.Resampling.NEAREST,
    1: Image.Resampling.LANCZOS,
    2: Image.Resampling.BILINEAR,
    3: Image.Resampling.BICUBIC,
    4: Image.Resampling.BOX,
    5: Image.Resampling.HAMMING,
}


def _read_ref(image_ref: ImageRef, max_file_size: int, fetch_timeout: float) -> bytes:
    if isinstance(image_ref, (bytes, bytearray)):
        data = bytes(image_ref)
    elif isinstance(image_ref, str) and image_ref.startswith(("http://", "https://")):
        response = httpx.get(image_ref, timeout=fetch_timeout, follow_redirects=True)
        response.raise_for_status()
        data = response.content
    else:
        path = Path(image_ref)
        if not path.is_file():
            raise ValueError(f"Image file not found: {path}")
        if path.stat().st_size > max_file_size:
            raise ValueError(f"Image file exceeds {max_file_size} bytes: {path}")
        data = path.read_bytes()

    if len(data) > max_file_size:
        raise ValueError(f"Image payload exceeds {max_file_size} bytes")
    if not data:
        raise ValueError("Image payload is empty")
    return data


def load_image(
    image_ref: ImageRef,
    *,
    max_file_size: int,
    max_image_pixels: int,
    fetch_timeout: float = 10.0,
) -> Image.Image:
    """Resolve an image reference into an RGB PIL image.

    Raises:
        ValueError: If the image cannot be read or decoded, or exceeds size limits.
        httpx.HTTPError: If a URL reference cannot be fetched.
    """
    data = _read_ref(image_ref, max_file_size, fetch_timeout)
    try:
        image = Image.open(io.BytesIO(data))
        width, height = image.size
        if width * height > max_image_pixels:
            raise ValueError(f"Image has {width * height} pixels, limit is {max_image_pixels}")
        image = ImageOps.exif_transpose(image)
        return image.convert("RGB")
    except (UnidentifiedImageError, OSError) as exc:
        raise ValueError(f"Cannot decode image: {exc}") from exc


def _target_size(size: Any) -> tuple[int, int] | int:
    """Return (width, height) for fixed sizes, or an int for shortest-edge resizing."""
    if isinstance(size, int):
        return (size, size)
    if isinstance(size, dict):
        if "height" in size and "width" in size:
            return (int(size["width"]), int(size["height"]))
        if "shortest_edge" in size:
            return int(size["shortest_edge"])
    return (_DEFAULT_SIZE, _DEFAULT_SIZE)


@dataclass(frozen=True)
class ImagePreprocessor:
    """Resize, rescale and normalize an RGB image into a model input tensor."""

    size: tuple[int, int] | int = (_DEFAULT_SIZE, _DEFAULT_SIZE)
    crop_size: tuple[int, int] | None = None
    resample: Image.Resampling = Image.Resampling.BILINEAR
    rescale_factor: float = 1 / 255
    image_mean: tuple[float, ...] = _IMAGENET_MEAN
    image_std: tuple[float, ...] = _IMAGENET_STD
    do_resize: bool = True
    do_rescale: bool = True
    do_normalize: bool = True

    @classmethod
    def from_config(cls, config: dict[str, Any]) -> ImagePreprocessor:
        """Build a preprocessor from a Hugging Face ``preprocessor_config.json`` dict."""
        crop = config.get("crop_size") if config.get("do_center_crop", "crop_size" in config) else None
        crop_size = _target_size(crop) if crop is not None else None
        return cls(
            size=_target_size(config.get("size", _DEFAULT_SIZE)),
            crop_size=crop_size if isinstance(crop_size, tuple) else None,
            resample=_RESAMPLE.get(int(config.get("resample", 2)), Image.Resampling.BILINEAR),
            rescale_factor=float(config.get("rescale_factor", 1 / 255)),
            image_mean=tuple(config.get("image_mean", _IMAGENET_MEAN)),
            image_std=tuple(config.get("image_std", _IMAGENET_STD)),
            do_resize=bool(config.get("do_resize", True)),
            do_rescale=bool(config.get("do_rescale", True)),
            do_normalize=bool(config.get("do_normalize", True)),
        )

    def __call__(self, image: Image.Image) -> NDArray[np.float32]:
        """Return a (1, 3, H, W) float32 tensor for the given RGB image."""
        if self.do_resize:
            image = self._resize(image)
        if self.crop_size is not None:
            image = self._center_crop(image, self.crop_size)

        pixels = np.asarray(image, dtype=np.float32)
        if self.do_rescale:
            pixels = pixels * np.float32(self.rescale_factor)
        if self.do_normalize:
            mean = np.asarray(self.image_mean, dtype=np.float32)
            std = np.asarray(self.image_std, dtype=np.float32)
            pixels = (pixels - mean) / std

        return np.ascontiguousarray(pixels.transpose(2, 0, 1)[np.newaxis, ...], dtype=np.float32)

    def _resize(self, image: Image.Image) -> Image.Image:
        if isinstance(self.size, tuple):
            return image.resize(self.size, resample=self.resample)

        width, height = image.size
        scale = self.size / min(width, height)
        new_size = (max(1, round(width * scale)), max(1, round(height * scale)))
        return image.resize(new_size, resample=self.resample)

    @staticmethod
    def _center_crop(image: Image.Image, crop_size: tuple[int, int]) -> Image.Image:
        crop_w, crop_h = crop_size
        width, height = image.size
        left = max(0, (width - crop_w) // 2)
        top = max(0, (height - crop_h) // 2)
        return image.crop((left, top, left + crop_w, top + crop_h))
