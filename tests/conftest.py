"""
Pytest configuration and shared fixtures for TomeyParser tests.

The fixtures synthesize dump files laid out like the device writes them:
a block of "TAG:value\\r\\n" lines, the first file name followed by two NUL
bytes and the volume frames, then DLE + the second file name followed by the
eye image directory and the eye images.
"""

import logging
import struct
from pathlib import Path

import numpy as np
import pytest

from TomeyParser import LOGGER_NAME
from TomeySettings import FileTagSettings, Settings


HEADER_FIELDS = {
    "WIDTH:": "4",
    "HEIGHT:": "3",
    "FRAMES:": "2",
    "BITS PER PIXEL:": "12",
    "X SIZE MM:": "8.0",
    "Y SIZE MM:": "6.0",
    "Z MM PER PIXEL:": "0.5",
    "EXAM DATE:": "2019-03-14",
    "EXAM TIME:": "10:42:00",
    "PATIENT ID:": "P-0001",
    "FIRST NAME:": "Zoë",
    "LAST NAME:": "Müller",
    "BIRTHDAY:": "1950-01-01",
    "EYE:": "OD",
    "COMMENT:": "follow-up",
    "FILE NAME:": "scan.vaa",
    "FILE NAME 2:": "eye.img",
}

# 4 x 3 samples per frame
FRAME_SAMPLES = [
    np.arange(12, dtype=np.uint16).reshape(3, 4) * 100,
    (16383 - np.arange(12, dtype=np.uint16) * 1000).reshape(3, 4),
]

# (width, height, raw bytes)
EYE_IMAGES = [
    (3, 2, bytes([0xFF, 0x64, 0x32, 0x01, 0x02, 0x80])),
    (2, 2, bytes([5, 6, 7, 8])),
]


class Recorder:
    """Observer collecting (event, details) tuples."""

    def __init__(self):
        self.events = []

    def __call__(self, event, **details):
        self.events.append((event, details))

    def names(self):
        return [event for event, _ in self.events]


def make_header(fields=None, drop=()):
    values = dict(HEADER_FIELDS)
    values.update(fields or {})
    return b"".join(
        f"{tag}{value}\r\n".encode("cp1252") for tag, value in values.items() if tag not in drop
    )


def pack_frame(samples, bytes_per_pixel=2):
    """Store samples with 7 bits per byte, least significant byte first."""
    out = bytearray()
    for sample in np.asarray(samples).ravel():
        for y in range(bytes_per_pixel):
            out.append((int(sample) >> (7 * y)) & 0x7F)
    return bytes(out)


def eye_directory(sizes, tags=None, sentinel=6):
    tags = tags or FileTagSettings()
    out = bytearray()
    for width, height in sizes:
        record = bytearray(tags.eye_image_header_size)
        record[0] = sentinel
        struct.pack_into("<i", record, tags.eye_image_in_header_height_position, height)
        struct.pack_into("<i", record, tags.eye_image_in_header_width_position, width)
        out += record
    return bytes(out)


def build_dump(header=None, frames=None, eye_images=None, file_name="scan.vaa",
               file_name2="eye.img", tags=None):
    tags = tags or FileTagSettings()
    header = make_header() if header is None else header
    frames = FRAME_SAMPLES if frames is None else frames
    eye_images = EYE_IMAGES if eye_images is None else eye_images

    content = bytearray(header)
    content += b"\x00" * 8
    content += file_name.encode("cp1252") + b"\x00\x00"
    for frame in frames:
        content += frame if isinstance(frame, bytes) else pack_frame(frame)
    content += b"\x10" + file_name2.encode("cp1252")
    content += eye_directory([(w, h) for w, h, _ in eye_images], tags)
    for _, _, data in eye_images:
        content += b"\x00" * tags.eye_image_content_offset
        content += data
    return bytes(content)


@pytest.fixture
def tags():
    return FileTagSettings()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(data_folder=tmp_path / "data", target_folder=tmp_path / "out")


@pytest.fixture
def recorder():
    return Recorder()


@pytest.fixture
def sample_content() -> bytes:
    return build_dump()


@pytest.fixture
def sample_file(settings: Settings, sample_content: bytes) -> Path:
    settings.data_folder.mkdir(parents=True, exist_ok=True)
    path = settings.data_folder / "patient1.vaa"
    path.write_bytes(sample_content)
    return path


@pytest.fixture(autouse=True)
def reset_logger():
    """Drop handlers the command line tests attach to the parser logger."""
    yield
    logger = logging.getLogger(LOGGER_NAME)
    for handler in logger.handlers:
        handler.close()
    logger.handlers.clear()
