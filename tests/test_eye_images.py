"""
Tests for the eye image directory and eye image windowing.
"""

import numpy as np
import pytest

from conftest import EYE_IMAGES, build_dump, eye_directory
from TomeyParser import (
    EyeImageHeader,
    HeaderParser,
    MalformedValue,
    TruncatedBuffer,
    decode_eye_images,
    read_eye_image_headers,
    window_eye_image,
)
from TomeySettings import FileTagSettings


class TestReadEyeImageHeaders:
    """Test the sentinel terminated directory scan."""

    def test_stops_at_first_missing_sentinel(self, tags):
        directory = eye_directory([(10, 20), (30, 40), (50, 60)], tags)
        content = bytearray(directory + b"\x00" * 8)
        # record 2 no longer starts with the sentinel
        content[2 * tags.eye_image_header_size] = 7

        headers = read_eye_image_headers(bytes(content), 0, tags)

        assert headers == (EyeImageHeader(10, 20), EyeImageHeader(30, 40))

    def test_reads_little_endian_sizes(self, tags):
        content = eye_directory([(0x0201, 0x0403)], tags) + b"\x00"
        headers = read_eye_image_headers(content, 0, tags)
        assert headers[0].width == 0x0201
        assert headers[0].height == 0x0403
        assert headers[0].image_size == 0x0201 * 0x0403

    def test_directory_after_start_offset(self, tags):
        content = b"\x06" * 5 + eye_directory([(2, 2)], tags) + b"\x00"
        assert read_eye_image_headers(content, 5, tags) == (EyeImageHeader(2, 2),)

    def test_sample_file(self, sample_content):
        image_settings = HeaderParser(sample_content).parse()
        headers = read_eye_image_headers(sample_content, image_settings.eye_image_start_offset)
        assert headers == tuple(EyeImageHeader(w, h) for w, h, _ in EYE_IMAGES)

    def test_header_fields_past_end(self, tags):
        content = eye_directory([(2, 2)], tags)[:tags.eye_image_in_header_height_position + 2]
        with pytest.raises(TruncatedBuffer, match="eye image height"):
            read_eye_image_headers(content, 0, tags)

    def test_sentinel_probe_past_end(self, tags):
        content = eye_directory([(2, 2), (2, 2)], tags)
        with pytest.raises(TruncatedBuffer) as exc_info:
            read_eye_image_headers(content, 0, tags)
        assert exc_info.value.context["offset"] == 2 * tags.eye_image_header_size

    def test_start_offset_past_end(self, tags):
        with pytest.raises(TruncatedBuffer):
            read_eye_image_headers(b"\x06" * 10, 100, tags)

    def test_invalid_size(self, tags):
        content = eye_directory([(0, 5)], tags) + b"\x00"
        with pytest.raises(MalformedValue):
            read_eye_image_headers(content, 0, tags)

    def test_custom_layout(self):
        tags = FileTagSettings(eye_image_header_size=16, eye_image_in_header_width_position=4,
                               eye_image_in_header_height_position=8)
        content = eye_directory([(3, 4), (5, 6)], tags) + b"\x01"
        assert read_eye_image_headers(content, 0, tags) == (EyeImageHeader(3, 4), EyeImageHeader(5, 6))


class TestWindowEyeImage:
    """Test replacing sign bit bytes with the maximum."""

    def test_clips_to_signed_maximum(self):
        result = window_eye_image(bytes([0xFF, 0x64, 0x32]))
        assert result.dtype == np.uint8
        assert result.tolist() == [100, 100, 50]

    def test_every_high_byte_replaced(self):
        result = window_eye_image(np.array([0x80, 0x7F, 0xC0, 0x00], dtype=np.uint8))
        assert result.tolist() == [0x7F, 0x7F, 0x7F, 0x00]

    def test_unchanged_without_high_bytes(self):
        data = bytes([1, 2, 3])
        assert window_eye_image(data).tolist() == [1, 2, 3]

    def test_all_high_bytes_keep_largest(self):
        # the largest signed value is 0xFF (-1)
        assert window_eye_image(bytes([0x80, 0xFF])).tolist() == [0xFF, 0xFF]

    def test_empty(self):
        assert window_eye_image(b"").tolist() == []

    def test_input_is_not_modified(self):
        data = np.array([0xFF, 0x01], dtype=np.uint8)
        window_eye_image(data)
        assert data.tolist() == [0xFF, 0x01]


class TestDecodeEyeImages:
    """Test decoding eye images from a complete file."""

    def test_decodes_in_directory_order(self, sample_content, recorder):
        image_settings = HeaderParser(sample_content).parse()
        offset = image_settings.eye_image_start_offset
        headers = read_eye_image_headers(sample_content, offset)

        rasters = list(decode_eye_images(sample_content, offset, headers, observer=recorder))

        assert [raster.label for raster in rasters] == [0, 1]
        assert (rasters[0].width, rasters[0].height) == (3, 2)
        assert (rasters[1].width, rasters[1].height) == (2, 2)
        assert rasters[0].pixels.dtype == np.uint8
        np.testing.assert_array_equal(rasters[0].pixels, [[100, 100, 50], [1, 2, 100]])
        np.testing.assert_array_equal(rasters[1].pixels, [[5, 6], [7, 8]])
        assert recorder.names() == ["eye_image_decoded", "eye_image_decoded"]

    def test_content_offset(self):
        tags = FileTagSettings(eye_image_content_offset=3)
        content = build_dump(tags=tags)
        image_settings = HeaderParser(content, tags=tags).parse()
        offset = image_settings.eye_image_start_offset
        headers = read_eye_image_headers(content, offset, tags)

        rasters = list(decode_eye_images(content, offset, headers, tags))

        np.testing.assert_array_equal(rasters[1].pixels, [[5, 6], [7, 8]])

    def test_truncated_image_raises(self, sample_content):
        content = sample_content[:-1]
        image_settings = HeaderParser(content).parse()
        offset = image_settings.eye_image_start_offset
        headers = read_eye_image_headers(content, offset)

        images = decode_eye_images(content, offset, headers)
        first = next(images)
        assert first.label == 0
        with pytest.raises(TruncatedBuffer, match="eye-images"):
            next(images)
