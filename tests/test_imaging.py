"""Tests for cropping and reference preparation."""

from __future__ import annotations

import unittest

from sbgen.errors import NormalizationError
from sbgen.imaging import crop_box, crop_to_ratio, image_size, parse_ratio, prepare_reference, solid_png


class CropTest(unittest.TestCase):
    def test_parse_ratio(self) -> None:
        self.assertAlmostEqual(parse_ratio("16:9"), 16 / 9)
        self.assertAlmostEqual(parse_ratio("9:16"), 9 / 16)
        with self.assertRaises(ValueError):
            parse_ratio("wide")
        with self.assertRaises(ValueError):
            parse_ratio("0:9")

    def test_square_image_is_center_cropped_to_landscape(self) -> None:
        left, top, right, bottom = crop_box(1000, 1000, "16:9")
        self.assertEqual((left, right), (0, 1000))
        self.assertAlmostEqual((right - left) / (bottom - top), 16 / 9, places=2)
        self.assertAlmostEqual(top, 1000 - bottom, delta=1)

    def test_wide_image_is_cropped_to_portrait(self) -> None:
        left, top, right, bottom = crop_box(1600, 900, "9:16")
        self.assertEqual((top, bottom), (0, 900))
        self.assertAlmostEqual((right - left) / 900, 9 / 16, places=2)

    def test_matching_ratio_is_untouched(self) -> None:
        self.assertEqual(crop_box(1920, 1080, "16:9"), (0, 0, 1920, 1080))
        self.assertEqual(crop_box(1080, 1921, "9:16"), (0, 0, 1080, 1921))

    def test_crop_to_ratio_caps_width(self) -> None:
        data = crop_to_ratio(solid_png(2000, 2000, (1, 2, 3)), "16:9", max_width=1024)
        width, height = image_size(data)
        self.assertEqual(width, 1024)
        self.assertAlmostEqual(width / height, 16 / 9, places=2)

    def test_crop_is_idempotent(self) -> None:
        once = crop_to_ratio(solid_png(900, 700, (200, 10, 10)), "9:16")
        twice = crop_to_ratio(once, "9:16")
        self.assertEqual(image_size(once), image_size(twice))

    def test_undecodable_bytes_raise(self) -> None:
        with self.assertRaises(NormalizationError):
            crop_to_ratio(b"not an image", "16:9")


class ReferenceTest(unittest.TestCase):
    def test_large_reference_is_downscaled_to_jpeg(self) -> None:
        payload, ext = prepare_reference(solid_png(5000, 2500, (50, 60, 70)))
        self.assertEqual(ext, "jpg")
        self.assertEqual(max(image_size(payload)), 4096)

    def test_unknown_bytes_pass_through(self) -> None:
        payload, ext = prepare_reference(b"GIF89a-but-broken")
        self.assertEqual(payload, b"GIF89a-but-broken")
        self.assertEqual(ext, "gif")


if __name__ == "__main__":
    unittest.main()
