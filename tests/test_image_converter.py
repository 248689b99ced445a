import io
import unittest

import numpy as np
from PIL import Image

from dotmesh.core.errors import ImageProcessingError
from dotmesh.core.image_converter import (
    calculate_recommended_dimensions,
    convert_image,
    dither,
    load_image,
    resize_gray,
    to_grayscale,
)
from dotmesh.core.params import ConversionParams


class TestConvertImage(unittest.TestCase):
    def test_threshold_zero_activates_every_cell(self):
        rng = np.random.default_rng(0)
        pixels = rng.integers(0, 256, size=(8, 8, 3), dtype=np.uint8)
        params = ConversionParams(threshold=0, target_width=4, target_height=4)

        pattern = convert_image(pixels, params)

        self.assertEqual((pattern.width, pattern.height), (4, 4))
        self.assertEqual(pattern.active_count, 16)

    def test_threshold_255_keeps_only_maximal_luminance(self):
        pixels = np.full((4, 4, 3), 254, dtype=np.uint8)
        pixels[2, 1] = 255
        params = ConversionParams(threshold=255, target_width=4, target_height=4)

        pattern = convert_image(pixels, params)

        self.assertEqual(pattern.active_count, 1)
        self.assertTrue(pattern.is_active(1, 2))

    def test_exclusive_threshold_mode(self):
        pixels = np.full((2, 2), 128, dtype=np.uint8)
        inclusive = convert_image(pixels, ConversionParams(target_width=2, target_height=2))
        exclusive = convert_image(
            pixels,
            ConversionParams(target_width=2, target_height=2, threshold_mode="exclusive"),
        )
        self.assertEqual(inclusive.active_count, 4)
        self.assertEqual(exclusive.active_count, 0)

    def test_dithering_honours_threshold_mode(self):
        black = np.zeros((4, 4), dtype=np.uint8)
        params = ConversionParams(
            threshold=0,
            threshold_mode="exclusive",
            enable_dithering=True,
            target_width=4,
            target_height=4,
            algorithm="nearest",
        )
        self.assertEqual(convert_image(black, params).active_count, 0)

        white = np.full((4, 4), 255, dtype=np.uint8)
        params = ConversionParams(
            threshold=255,
            enable_dithering=True,
            target_width=4,
            target_height=4,
            algorithm="nearest",
        )
        self.assertEqual(convert_image(white, params).active_count, 16)

    def test_single_pixel_image(self):
        pattern = convert_image(np.array([[255]], dtype=np.uint8), ConversionParams(target_width=1, target_height=1))
        self.assertEqual((pattern.width, pattern.height), (1, 1))
        self.assertTrue(pattern.is_active(0, 0))

    def test_invert_flips_cells(self):
        pixels = np.zeros((2, 2), dtype=np.uint8)
        pixels[0, 0] = 255
        params = ConversionParams(target_width=2, target_height=2, invert=True)
        pattern = convert_image(pixels, params)
        self.assertEqual(pattern.data, ((False, True), (True, True)))

    def test_letterbox_fills_with_fill_colour(self):
        pixels = np.zeros((2, 4, 3), dtype=np.uint8)
        params = ConversionParams(target_width=4, target_height=4, fill_color="#ffffff")

        pattern = convert_image(pixels, params)

        self.assertEqual(
            pattern.data,
            (
                (True,) * 4,
                (False,) * 4,
                (False,) * 4,
                (True,) * 4,
            ),
        )

    def test_transparent_pixels_use_fill_colour(self):
        pixels = np.zeros((3, 3, 4), dtype=np.uint8)
        pixels[..., :3] = 255
        white_fill = convert_image(pixels, ConversionParams(target_width=3, target_height=3))
        black_fill = convert_image(pixels, ConversionParams(target_width=3, target_height=3, fill_color="black"))
        self.assertEqual(white_fill.active_count, 9)
        self.assertEqual(black_fill.active_count, 0)

    def test_progress_reaches_100(self):
        seen = []
        convert_image(np.zeros((4, 4), dtype=np.uint8), ConversionParams(target_width=2, target_height=2),
                      progress=seen.append)
        self.assertEqual(seen[-1], 100)
        self.assertEqual(seen, sorted(seen))

    def test_metadata_records_source(self):
        pattern = convert_image(np.zeros((6, 3), dtype=np.uint8), ConversionParams(target_width=2, target_height=2),
                                filename="logo.png")
        self.assertEqual(pattern.metadata.source, "image")
        self.assertEqual(pattern.metadata.filename, "logo.png")
        self.assertEqual(pattern.metadata.original_dimensions, (3, 6))

    def test_invalid_params_raise(self):
        pixels = np.zeros((2, 2), dtype=np.uint8)
        for params in (
            ConversionParams(threshold=300),
            ConversionParams(target_width=0),
            ConversionParams(contrast_factor=0.0),
            ConversionParams(fill_color="not-a-colour"),
        ):
            with self.assertRaises(ImageProcessingError):
                convert_image(pixels, params)

    def test_invalid_pixel_buffers_raise(self):
        with self.assertRaises(ImageProcessingError):
            convert_image(np.zeros((2, 2, 2), dtype=np.uint8))
        with self.assertRaises(ImageProcessingError):
            convert_image(np.full((2, 2), np.nan))


class TestConversionSteps(unittest.TestCase):
    def test_grayscale_methods(self):
        rgb = np.array([[[255, 0, 0]]], dtype=np.float64)
        self.assertEqual(to_grayscale(rgb, "luminance")[0, 0], 76.0)
        self.assertEqual(to_grayscale(rgb, "average")[0, 0], 85.0)
        self.assertEqual(to_grayscale(rgb, "desaturation")[0, 0], 128.0)

    def test_dither_outputs_binary_values_preserving_tone(self):
        out = dither(np.full((16, 16), 127.0), "floyd-steinberg", threshold=128)
        self.assertTrue(np.isin(out, (0.0, 255.0)).all())
        self.assertTrue(0.3 < (out == 255.0).mean() < 0.7)

    def test_dither_threshold_modes(self):
        black = np.zeros((2, 2))
        self.assertTrue((dither(black, threshold=0, mode="exclusive") == 0.0).all())
        self.assertEqual(dither(black, threshold=0)[0, 0], 255.0)

    def test_dither_methods_are_deterministic(self):
        gray = np.linspace(0, 255, 64).reshape(8, 8)
        for method in ("floyd-steinberg", "atkinson", "sierra"):
            np.testing.assert_array_equal(dither(gray, method), dither(gray, method))

    def test_resize_without_aspect_stretches(self):
        out = resize_gray(np.zeros((2, 4)), 3, 3, maintain_aspect_ratio=False, algorithm="nearest")
        self.assertEqual(out.shape, (3, 3))
        self.assertTrue((out == 0).all())

    def test_recommended_dimensions(self):
        self.assertEqual(calculate_recommended_dimensions(200, 100, 100), (100, 50))
        self.assertEqual(calculate_recommended_dimensions(100, 200, 100), (50, 100))


class TestLoadImage(unittest.TestCase):
    def test_load_png_bytes(self):
        buf = io.BytesIO()
        Image.new("L", (5, 3), color=200).save(buf, format="PNG")

        arr = load_image(buf.getvalue())

        self.assertEqual(arr.shape, (3, 5, 3))
        self.assertEqual(arr.dtype, np.uint8)

    def test_corrupt_bytes_raise(self):
        with self.assertRaises(ImageProcessingError):
            load_image(b"not an image")

    def test_missing_file_raises(self):
        with self.assertRaises(ImageProcessingError):
            load_image("/nonexistent/dotmesh/image.png")


if __name__ == "__main__":
    unittest.main()
