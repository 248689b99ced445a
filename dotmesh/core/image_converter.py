"""
Raster image → DotPattern conversion.

Pipeline: grayscale → optional blur → optional contrast → resize/letterbox →
optional error-diffusion dithering → threshold (→ optional invert).
"""

from __future__ import annotations

from datetime import datetime, timezone
import io
import logging
from pathlib import Path
from typing import BinaryIO, Callable, Optional, Union

import numpy as np
from PIL import Image, ImageColor, UnidentifiedImageError
from scipy import ndimage

from .dot_pattern import DotPattern, PatternMetadata
from .errors import ImageProcessingError
from .params import ConversionParams

_LOGGER = logging.getLogger(__name__)

ImageSource = Union[str, Path, bytes, BinaryIO]
PixelInput = Union[np.ndarray, Image.Image]
ProgressCallback = Callable[[int], None]

# (dx, dy, weight) error distribution kernels.
DITHER_KERNELS: dict[str, tuple[tuple[int, int, float], ...]] = {
    "floyd-steinberg": (
        (1, 0, 7 / 16),
        (-1, 1, 3 / 16),
        (0, 1, 5 / 16),
        (1, 1, 1 / 16),
    ),
    "atkinson": (
        (1, 0, 1 / 8),
        (2, 0, 1 / 8),
        (-1, 1, 1 / 8),
        (0, 1, 1 / 8),
        (1, 1, 1 / 8),
        (0, 2, 1 / 8),
    ),
    "sierra": (
        (1, 0, 5 / 32),
        (2, 0, 3 / 32),
        (-2, 1, 2 / 32),
        (-1, 1, 4 / 32),
        (0, 1, 5 / 32),
        (1, 1, 4 / 32),
        (2, 1, 2 / 32),
        (-1, 2, 2 / 32),
        (0, 2, 3 / 32),
        (1, 2, 2 / 32),
    ),
}

_RESAMPLE = {
    "nearest": Image.Resampling.NEAREST,
    "bilinear": Image.Resampling.BILINEAR,
    "bicubic": Image.Resampling.BICUBIC,
}


def load_image(source: ImageSource) -> np.ndarray:
    """
    Load an image file (path, raw bytes or binary file object) as a uint8 array.

    Returns an (H, W, 3) RGB or (H, W, 4) RGBA array.

    Raises:
        ImageProcessingError: missing file or unreadable/unsupported image data.
    """
    try:
        if isinstance(source, (bytes, bytearray)):
            img = Image.open(io.BytesIO(bytes(source)))
        else:
            img = Image.open(source)
        img.load()
    except FileNotFoundError as e:
        raise ImageProcessingError(f"Image file not found: {source}") from e
    except (UnidentifiedImageError, OSError) as e:
        raise ImageProcessingError(f"Unsupported or corrupt image: {e}") from e

    mode = "RGBA" if ("A" in img.getbands() or img.mode == "P") else "RGB"
    return np.asarray(img.convert(mode), dtype=np.uint8)


def _fill_rgb(fill_color: str) -> tuple[int, int, int]:
    rgb = ImageColor.getrgb(str(fill_color))
    return int(rgb[0]), int(rgb[1]), int(rgb[2])


def _to_rgb_array(pixels: PixelInput, fill_color: str) -> np.ndarray:
    """Normalize input to float64 (H, W, 3) RGB, compositing alpha over the fill colour."""
    if isinstance(pixels, Image.Image):
        img = pixels
        mode = "RGBA" if ("A" in img.getbands() or img.mode == "P") else "RGB"
        arr = np.asarray(img.convert(mode), dtype=np.float64)
    else:
        arr = np.asarray(pixels)
        if arr.dtype == bool:
            arr = arr.astype(np.float64) * 255.0
        arr = arr.astype(np.float64, copy=False)

    if arr.ndim == 2:
        arr = np.repeat(arr[:, :, None], 3, axis=2)
    if arr.ndim != 3 or arr.shape[2] not in (1, 3, 4):
        raise ImageProcessingError(f"Unsupported pixel buffer shape: {arr.shape}")
    if arr.shape[0] < 1 or arr.shape[1] < 1:
        raise ImageProcessingError("Image has no pixels")
    if not np.isfinite(arr).all():
        raise ImageProcessingError("Pixel buffer contains non-finite values")

    if arr.shape[2] == 1:
        arr = np.repeat(arr, 3, axis=2)
    elif arr.shape[2] == 4:
        alpha = np.clip(arr[:, :, 3:4], 0.0, 255.0) / 255.0
        fill = np.asarray(_fill_rgb(fill_color), dtype=np.float64)
        arr = arr[:, :, :3] * alpha + fill * (1.0 - alpha)
    return np.clip(arr, 0.0, 255.0)


def to_grayscale(rgb: np.ndarray, method: str = "luminance") -> np.ndarray:
    rgb = np.asarray(rgb, dtype=np.float64)
    r, g, b = rgb[..., 0], rgb[..., 1], rgb[..., 2]
    if method == "luminance":
        gray = 0.299 * r + 0.587 * g + 0.114 * b
    elif method == "average":
        gray = (r + g + b) / 3.0
    elif method == "desaturation":
        gray = (np.maximum(np.maximum(r, g), b) + np.minimum(np.minimum(r, g), b)) / 2.0
    else:
        raise ImageProcessingError(f"Unknown grayscale method: {method!r}")
    return np.clip(np.round(gray), 0.0, 255.0)


def apply_blur(gray: np.ndarray, radius: float) -> np.ndarray:
    if radius <= 0:
        return gray
    return ndimage.gaussian_filter(np.asarray(gray, dtype=np.float64), sigma=float(radius), mode="nearest")


def apply_contrast(gray: np.ndarray, factor: float) -> np.ndarray:
    return np.clip((np.asarray(gray, dtype=np.float64) - 128.0) * float(factor) + 128.0, 0.0, 255.0)


def _fit_dimensions(src_w: int, src_h: int, target_w: int, target_h: int) -> tuple[int, int]:
    src_aspect = src_w / src_h
    if src_aspect > target_w / target_h:
        fit_w, fit_h = target_w, int(round(target_w / src_aspect))
    else:
        fit_w, fit_h = int(round(target_h * src_aspect)), target_h
    return max(1, min(fit_w, target_w)), max(1, min(fit_h, target_h))


def resize_gray(
    gray: np.ndarray,
    target_width: int,
    target_height: int,
    *,
    algorithm: str = "bilinear",
    maintain_aspect_ratio: bool = True,
    fill_value: float = 255.0,
) -> np.ndarray:
    """
    Resample a grayscale array to ``target_height x target_width``.

    With ``maintain_aspect_ratio`` the image is fitted inside the target and
    centred on a canvas of ``fill_value``.
    """
    gray = np.asarray(gray, dtype=np.float64)
    src_h, src_w = gray.shape
    if maintain_aspect_ratio:
        fit_w, fit_h = _fit_dimensions(src_w, src_h, target_width, target_height)
    else:
        fit_w, fit_h = target_width, target_height

    if (fit_w, fit_h) == (src_w, src_h):
        resized = gray
    else:
        img = Image.fromarray(gray.astype(np.float32))
        resized = np.asarray(img.resize((fit_w, fit_h), resample=_RESAMPLE[algorithm]), dtype=np.float64)
        resized = np.clip(resized, 0.0, 255.0)

    if (fit_w, fit_h) == (target_width, target_height):
        return resized

    canvas = np.full((target_height, target_width), float(fill_value), dtype=np.float64)
    off_x = (target_width - fit_w) // 2
    off_y = (target_height - fit_h) // 2
    canvas[off_y:off_y + fit_h, off_x:off_x + fit_w] = resized
    return canvas


def dither(
    gray: np.ndarray,
    method: str = "floyd-steinberg",
    threshold: float = 128.0,
    *,
    mode: str = "inclusive",
) -> np.ndarray:
    """
    Error-diffusion dithering to pure 0/255 values.

    Pixels quantize to 255 when they pass ``threshold`` under ``mode`` (the
    same comparison as ``apply_threshold``); the quantization error is
    spread to unvisited neighbours with the selected kernel.
    """
    kernel = DITHER_KERNELS.get(method)
    if kernel is None:
        raise ImageProcessingError(f"Unknown dithering method: {method!r}")

    h, w = np.asarray(gray).shape
    buf = np.asarray(gray, dtype=np.float64).tolist()
    cut = float(threshold)
    exclusive = mode == "exclusive"
    for y in range(h):
        row = buf[y]
        for x in range(w):
            old = row[x]
            on = old > cut if exclusive else old >= cut
            new = 255.0 if on else 0.0
            row[x] = new
            err = old - new
            if err == 0.0:
                continue
            for dx, dy, weight in kernel:
                nx, ny = x + dx, y + dy
                if 0 <= nx < w and ny < h:
                    target = buf[ny]
                    v = target[nx] + err * weight
                    target[nx] = 0.0 if v < 0.0 else (255.0 if v > 255.0 else v)
    return np.asarray(buf, dtype=np.float64).reshape(h, w)


def apply_threshold(gray: np.ndarray, threshold: float, *, mode: str = "inclusive") -> np.ndarray:
    gray = np.asarray(gray, dtype=np.float64)
    if mode == "exclusive":
        return gray > float(threshold)
    return gray >= float(threshold)


def convert_image(
    pixels: PixelInput,
    params: Optional[ConversionParams] = None,
    *,
    filename: Optional[str] = None,
    progress: Optional[ProgressCallback] = None,
) -> DotPattern:
    """
    Quantize a pixel buffer into a DotPattern.

    Args:
        pixels: (H, W), (H, W, 3) or (H, W, 4) array, or a PIL image.
        params: conversion settings (defaults when None).
        filename: recorded in the pattern metadata.
        progress: optional callback receiving 0-100.

    Returns:
        DotPattern of ``params.target_width x params.target_height``.

    Raises:
        ImageProcessingError: invalid params or unusable pixel data.
    """
    params = params or ConversionParams()
    errors = params.validate()
    if errors:
        raise ImageProcessingError("Invalid conversion parameters: " + "; ".join(errors))

    def _report(value: int) -> None:
        if progress is not None:
            progress(value)

    rgb = _to_rgb_array(pixels, params.fill_color)
    src_h, src_w = rgb.shape[:2]
    _report(10)

    gray = to_grayscale(rgb, params.grayscale_method)
    if params.pre_blur:
        gray = apply_blur(gray, params.blur_radius)
    if params.enhance_contrast:
        gray = apply_contrast(gray, params.contrast_factor)
    _report(40)

    fill_gray = float(to_grayscale(np.asarray([[_fill_rgb(params.fill_color)]], dtype=np.float64),
                                   params.grayscale_method)[0, 0])
    gray = resize_gray(
        gray,
        params.target_width,
        params.target_height,
        algorithm=params.algorithm,
        maintain_aspect_ratio=params.maintain_aspect_ratio,
        fill_value=fill_gray,
    )
    _report(60)

    if params.enable_dithering:
        # Dithering already made the on/off decision per pixel.
        dithered = dither(gray, params.dithering_method, threshold=params.threshold, mode=params.threshold_mode)
        active = dithered == 255.0
    else:
        active = apply_threshold(gray, params.threshold, mode=params.threshold_mode)
    _report(85)

    if params.invert:
        active = ~active

    _LOGGER.debug(
        "Converted %dx%d image to %dx%d pattern (%d active)",
        src_w,
        src_h,
        params.target_width,
        params.target_height,
        int(active.sum()),
    )
    metadata = PatternMetadata(
        source="image",
        filename=filename,
        created_at=datetime.now(timezone.utc),
        original_dimensions=(int(src_w), int(src_h)),
        conversion_params=params.to_dict(),
    )
    pattern = DotPattern.from_array(active, metadata=metadata)
    _report(100)
    return pattern


def convert_image_file(source: ImageSource, params: Optional[ConversionParams] = None) -> DotPattern:
    name = str(source) if isinstance(source, (str, Path)) else None
    return convert_image(load_image(source), params, filename=name)


def calculate_recommended_dimensions(
    image_width: int,
    image_height: int,
    max_dimension: int = 100,
) -> tuple[int, int]:
    """Largest (width, height) within ``max_dimension`` keeping the image aspect ratio."""
    if image_width <= 0 or image_height <= 0:
        raise ImageProcessingError("Image dimensions must be positive")
    aspect = image_width / image_height
    if aspect > 1:
        return max_dimension, max(1, int(round(max_dimension / aspect)))
    return max(1, int(round(max_dimension * aspect))), max_dimension

