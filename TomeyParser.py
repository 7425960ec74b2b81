import json
import logging
import math
import struct
from dataclasses import asdict, dataclass, field
from pathlib import Path

import numpy as np
from PIL import Image

from TomeySettings import NO_OVERRIDE, FileTagSettings, Settings


LOGGER_NAME = "tomey_parser"

# All tag text is written in the Windows western code page
CODE_PAGE = "cp1252"
NOT_FOUND = -1
# First byte of every eye image header record after the first one
EYE_IMAGE_SENTINEL = 6


### Errors ###


class TomeyParserError(Exception):
    """Base exception for reading Tomey dump files.

    Attributes:
        message: Human-readable error description
        context: Field, tag or offset the error refers to
    """

    def __init__(self, message, context=None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


class TagNotFound(TomeyParserError):
    """A tag prefix is missing from the file."""


class IncompleteTag(TomeyParserError):
    """A tag was found but its value is not followed by the line break."""


class MalformedValue(TomeyParserError):
    """A tag value does not parse as the expected type."""


class MarkerNotFound(TomeyParserError):
    """The marker locating the volume or eye image data is missing."""


class TruncatedBuffer(TomeyParserError):
    """The file ends before a header, frame or eye image is complete."""


class OutputTargetInvalid(TomeyParserError):
    """The output path exists but is not a folder."""


### Observers ###


def null_observer(event, **details):
    pass


class LoggingObserver:
    """Forwards parser events to the `tomey_parser` logger."""

    levels = {
        "field_parsed": logging.DEBUG,
        "frame_decoded": logging.DEBUG,
        "eye_image_decoded": logging.DEBUG,
        "volume_truncated": logging.WARNING,
        "no_files_found": logging.ERROR,
        "file_failed": logging.ERROR,
    }

    def __init__(self, logger=None):
        self.logger = logger or logging.getLogger(LOGGER_NAME)

    def __call__(self, event, **details):
        level = self.levels.get(event, logging.INFO)
        if not self.logger.isEnabledFor(level):
            return
        text = ", ".join(f"{key}={value}" for key, value in details.items())
        self.logger.log(level, f"{event}: {text}" if text else event)


### Records ###


@dataclass(frozen=True)
class Patient:
    id: str = ""
    first_name: str = ""
    last_name: str = ""
    birthday: str = ""
    eye: str = ""
    commentary: str = ""


@dataclass(frozen=True)
class ImageSettings:
    """Metadata of one dump file, only created once every field was read."""

    x_resolution: int
    y_resolution: int
    image_count: int
    bytes_per_pixel: int
    # mm per pixel; y is unused by the device and also scaled by x_resolution
    x_mm_per_pixel: float
    y_mm_per_pixel: float
    z_mm_per_pixel: float
    examination_date: str
    examination_time: str
    patient: Patient
    file_name1: str
    file_name2: str
    start_offset: int
    eye_image_start_offset: int

    @property
    def image_size(self):
        """Bytes of one volume frame."""
        return self.x_resolution * self.y_resolution * self.bytes_per_pixel

    def to_dict(self):
        result = asdict(self)
        result["image_size"] = self.image_size
        return result


@dataclass(frozen=True)
class EyeImageHeader:
    width: int
    height: int

    @property
    def image_size(self):
        # one byte per pixel
        return self.width * self.height


@dataclass(frozen=True)
class DecodedRaster:
    """One decoded image: uint16 for volume frames, uint8 for eye images."""

    label: int
    pixels: np.ndarray = field(repr=False)

    @property
    def width(self):
        return self.pixels.shape[1]

    @property
    def height(self):
        return self.pixels.shape[0]

    def to_image(self):
        # uint16 -> "I;16", uint8 -> "L"
        return Image.fromarray(self.pixels.copy())


### Tag scanning ###


def _as_bytes(pattern):
    if isinstance(pattern, str):
        pattern = pattern.encode(CODE_PAGE)
    pattern = bytes(pattern)
    if not pattern:
        raise ValueError("Search pattern must not be empty")
    return pattern


def _decode(content):
    # bytes undefined in the code page become U+FFFD
    return bytes(content).decode(CODE_PAGE, errors="replace")


def find_offset(pattern, content, start_offset=0):
    """Return the index of the last byte of the first match of `pattern`.

    A mismatch resets the match without testing the mismatching byte against
    the start of the pattern again, so "AB" is not found in "XAAB".
    Returns NOT_FOUND if the pattern does not occur after `start_offset`.
    """
    pattern = _as_bytes(pattern)
    last = len(pattern) - 1
    count = 0
    i = max(start_offset, 0)

    while i < len(content):
        if count == 0:
            # skip to the next byte that can start a match
            i = content.find(pattern[:1], i)
            if i == -1:
                return NOT_FOUND
        if content[i] == pattern[count]:
            if count == last:
                return i
            count += 1
        else:
            count = 0
        i += 1

    return NOT_FOUND


def find_tag(prefix, terminator, content, start_offset=0):
    """Read the text between `prefix` and `terminator`.

    Returns (index of the terminator's last byte, decoded text). Bytes of a
    partial terminator match are dropped from the text.
    """
    tag_index = find_offset(prefix, content, start_offset)
    if tag_index == NOT_FOUND:
        raise TagNotFound(f"Tag not found: {prefix!r}", {"tag": prefix})

    terminator = _as_bytes(terminator)
    last = len(terminator) - 1
    text = bytearray()
    count = 0
    i = tag_index + 1

    while i < len(content):
        if count == 0:
            next_index = content.find(terminator[:1], i)
            if next_index == -1:
                text += content[i:]
                break
            text += content[i:next_index]
            i = next_index
        if content[i] == terminator[count]:
            if count == last:
                return i, _decode(text)
            count += 1
        else:
            count = 0
            text.append(content[i])
        i += 1

    raise IncompleteTag(
        f"Tag {prefix!r} is not terminated",
        {"tag": prefix, "text": _decode(text)},
    )


def bytes_per_pixel(bits_per_pixel):
    return int(math.ceil(bits_per_pixel / 8))


### Header ###


class HeaderParser:
    """Builds ImageSettings from the tags of a dump file.

    Overrides in `settings` other than NO_OVERRIDE replace the scanned value.
    Any missing or malformed field raises and no record is returned.
    """

    def __init__(self, content, settings=None, tags=None, observer=None):
        self.content = content
        self.settings = settings or Settings()
        self.tags = tags or FileTagSettings()
        self.observer = observer or null_observer

    def text(self, name, prefix):
        _, value = find_tag(prefix, self.tags.line_break, self.content)
        self.observer("field_parsed", field=name, value=value)
        return value

    def integer(self, name, prefix, override=NO_OVERRIDE):
        if override != NO_OVERRIDE:
            return int(override)
        value = self.text(name, prefix)
        # no padding or digit separators
        if value.strip() != value or "_" in value:
            raise MalformedValue(f"{name} is not an integer: {value!r}", {"field": name, "tag": prefix})
        try:
            return int(value)
        except ValueError:
            raise MalformedValue(f"{name} is not an integer: {value!r}", {"field": name, "tag": prefix}) from None

    def number(self, name, prefix, override=NO_OVERRIDE):
        if override != NO_OVERRIDE:
            return float(override)
        value = self.text(name, prefix)
        try:
            number = float(value)
        except ValueError:
            raise MalformedValue(f"{name} is not a number: {value!r}", {"field": name, "tag": prefix}) from None
        if not math.isfinite(number):
            raise MalformedValue(f"{name} is not a finite number: {value!r}", {"field": name, "tag": prefix})
        return number

    def parse(self):
        settings, tags = self.settings, self.tags

        x_resolution = self.integer("x_resolution", tags.width, settings.x_resolution)
        y_resolution = self.integer("y_resolution", tags.height, settings.y_resolution)
        image_count = self.integer("image_count", tags.image_count, settings.image_count)
        if settings.bytes_per_pixel != NO_OVERRIDE:
            pixel_bytes = int(settings.bytes_per_pixel)
        else:
            pixel_bytes = bytes_per_pixel(self.number("bits_per_pixel", tags.bits_per_pixel))

        for name, value in (("x_resolution", x_resolution), ("y_resolution", y_resolution),
                            ("image_count", image_count), ("bytes_per_pixel", pixel_bytes)):
            if value <= 0:
                raise MalformedValue(f"{name} must be positive, got {value}", {"field": name})

        if settings.x_mm_per_pixel != NO_OVERRIDE:
            x_mm_per_pixel = float(settings.x_mm_per_pixel)
        else:
            x_mm_per_pixel = self.number("x_size_in_mm", tags.x_size_in_mm) / x_resolution
        if settings.y_mm_per_pixel != NO_OVERRIDE:
            y_mm_per_pixel = float(settings.y_mm_per_pixel)
        else:
            # if images is 90° rotated
            y_mm_per_pixel = self.number("y_size_in_mm", tags.y_size_in_mm) / x_resolution
        z_mm_per_pixel = self.number("z_mm_per_pixel", tags.z_size_per_pixel, settings.z_mm_per_pixel)

        examination_date = self.text("examination_date", tags.examination_date)
        examination_time = self.text("examination_time", tags.examination_time)

        patient = Patient(
            id=self.text("patient.id", tags.patient.id),
            first_name=self.text("patient.first_name", tags.patient.first_name),
            last_name=self.text("patient.last_name", tags.patient.last_name),
            birthday=self.text("patient.birthday", tags.patient.birthday),
            eye=self.text("patient.eye", tags.patient.eye),
            commentary=self.text("patient.commentary", tags.patient.commentary),
        )

        file_name1 = self.text("file_name1", tags.file_name)
        file_name2 = self.text("file_name2", tags.file_name2)

        if settings.start_offset != NO_OVERRIDE:
            start_offset = int(settings.start_offset)
        else:
            start_offset = find_image_start(self.content, file_name1, tags)
        if settings.eye_image_start_offset != NO_OVERRIDE:
            eye_image_start_offset = int(settings.eye_image_start_offset)
        else:
            eye_image_start_offset = find_eye_image_start(self.content, file_name2, tags, start_offset)

        return ImageSettings(
            x_resolution=x_resolution,
            y_resolution=y_resolution,
            image_count=image_count,
            bytes_per_pixel=pixel_bytes,
            x_mm_per_pixel=x_mm_per_pixel,
            y_mm_per_pixel=y_mm_per_pixel,
            z_mm_per_pixel=z_mm_per_pixel,
            examination_date=examination_date,
            examination_time=examination_time,
            patient=patient,
            file_name1=file_name1,
            file_name2=file_name2,
            start_offset=start_offset,
            eye_image_start_offset=eye_image_start_offset,
        )


### Image locations ###


def find_image_start(content, file_name, tags=None):
    """Volume frames follow the first file name and two NUL bytes."""
    tags = tags or FileTagSettings()
    offset = find_offset(file_name + tags.null_char + tags.null_char, content)
    if offset == NOT_FOUND:
        raise MarkerNotFound("Image offset not found", {"marker": "volume start", "file_name": file_name})
    return offset + tags.image_offset - 1


def find_eye_image_start(content, file_name, tags=None, start_offset=0):
    """The eye image directory follows the escape byte and the second file name."""
    tags = tags or FileTagSettings()
    offset = find_offset(tags.esc_char + file_name, content, start_offset)
    if offset == NOT_FOUND:
        raise MarkerNotFound("Eye-image offset not found", {"marker": "eye image start", "file_name": file_name})
    return offset + tags.eye_image_first_header_offset


### Volume frames ###


def unpack_samples(staging, bytes_per_pixel, sample_count):
    """Unpack samples stored as 7 bits per byte, least significant byte first.

    Samples past the end of `staging` stay zero; a sample cut short keeps the
    bits read before the data ran out.
    """
    data = np.frombuffer(bytes(staging), dtype=np.uint8)
    samples = np.zeros(sample_count, dtype=np.uint32)

    full = min(sample_count, len(data) // bytes_per_pixel)
    packed = data[:full * bytes_per_pixel].reshape(full, bytes_per_pixel).astype(np.uint32)
    # bytes from the fourth on only reach bits above 16
    for y in range(min(bytes_per_pixel, 3)):
        samples[:full] |= packed[:, y] << (7 * y)

    rest = data[full * bytes_per_pixel:]
    if full < sample_count and len(rest):
        value = 0
        for y, byte in enumerate(rest[:3]):
            value |= int(byte) << (7 * y)
        samples[full] = value

    return (samples & 0xFFFF).astype(np.uint16)


def decode_volume_images(content, image_settings, observer=None):
    """Yield one uint16 raster per volume frame, in file order."""
    observer = observer or null_observer
    frame_size = image_settings.image_size
    sample_count = image_settings.x_resolution * image_settings.y_resolution
    offset = image_settings.start_offset

    for index in range(image_settings.image_count):
        if offset < 0 or offset + frame_size > len(content):
            if index == 0:
                raise TruncatedBuffer(
                    f"No complete frame at offset {offset}, file has {len(content)} bytes",
                    {"offset": offset, "frame_size": frame_size},
                )
            observer("volume_truncated", decoded=index, expected=image_settings.image_count)
            return

        samples = unpack_samples(content[offset:offset + frame_size], image_settings.bytes_per_pixel, sample_count)
        pixels = samples.reshape(image_settings.y_resolution, image_settings.x_resolution)
        pixels.flags.writeable = False
        observer("frame_decoded", index=index, of=image_settings.image_count, offset=offset)
        yield DecodedRaster(index, pixels)

        offset += frame_size


### Eye images ###


def _read_int32(content, position, name):
    if position < 0 or position + 4 > len(content):
        raise TruncatedBuffer(
            f"Cannot read {name} at offset {position}, file has {len(content)} bytes",
            {"field": name, "offset": position},
        )
    return struct.unpack_from("<i", content, position)[0]


def read_eye_image_headers(content, start_offset, tags=None):
    """Read the eye image directory.

    Another header follows as long as the byte at the start of the next
    record is EYE_IMAGE_SENTINEL.
    """
    tags = tags or FileTagSettings()
    headers = []

    while True:
        record = start_offset + tags.eye_image_header_size * len(headers)
        height = _read_int32(content, record + tags.eye_image_in_header_height_position, "eye image height")
        width = _read_int32(content, record + tags.eye_image_in_header_width_position, "eye image width")
        if width <= 0 or height <= 0:
            raise MalformedValue(
                f"Eye image {len(headers)} has invalid size {width}x{height}",
                {"field": "eye image size", "offset": record},
            )
        headers.append(EyeImageHeader(width=width, height=height))

        probe = start_offset + tags.eye_image_header_size * len(headers)
        if probe < 0 or probe >= len(content):
            raise TruncatedBuffer(
                f"Eye image directory runs past the end of the file at offset {probe}",
                {"field": "eye image sentinel", "offset": probe},
            )
        if content[probe] != EYE_IMAGE_SENTINEL:
            return tuple(headers)


def window_eye_image(data):
    """Replace bytes with the sign bit set by the largest signed value."""
    if isinstance(data, (bytes, bytearray, memoryview)):
        data = np.frombuffer(data, dtype=np.uint8)
    signed = np.asarray(data, dtype=np.uint8).view(np.int8)
    if signed.size == 0:
        return signed.view(np.uint8).copy()
    maximum = signed.max()
    return np.where(signed < 0, maximum, signed).astype(np.int8).view(np.uint8)


def decode_eye_images(content, start_offset, headers, tags=None, observer=None):
    """Yield one uint8 raster per directory entry, in directory order."""
    tags = tags or FileTagSettings()
    observer = observer or null_observer
    offset = start_offset + tags.eye_image_header_size * len(headers)

    for index, header in enumerate(headers):
        begin = offset + tags.eye_image_content_offset
        end = begin + header.image_size
        if end > len(content):
            raise TruncatedBuffer(
                "Could not read all eye-images, file size to small",
                {"field": f"eye image {index}", "offset": begin, "size": header.image_size},
            )

        data = np.frombuffer(content, dtype=np.uint8, count=header.image_size, offset=begin)
        pixels = window_eye_image(data).reshape(header.height, header.width)
        pixels.flags.writeable = False
        observer("eye_image_decoded", index=index, width=header.width, height=header.height)
        yield DecodedRaster(index, pixels)

        offset = end


### Files ###


def get_target_file(file_name, source, target_folder, create_new_dir_for_file=False, extension="png"):
    stem = Path(source).stem
    folder = Path(target_folder)
    if create_new_dir_for_file:
        folder = folder / stem
    folder.mkdir(parents=True, exist_ok=True)
    return folder / f"{stem}-{file_name}.{extension}"


class TomeyParser:
    """Parser for one Tomey dump file.

    The whole file is read on construction. `parse` returns the metadata,
    `volume_images` and `eye_images` decode lazily and `preview` writes the
    outputs selected by the export mode.
    """

    def __init__(self, file_path, settings=None, tags=None, observer=None, content=None):
        self.file_path = Path(file_path)
        self.settings = settings or Settings()
        self.tags = tags or FileTagSettings()
        self.observer = observer or LoggingObserver()
        self.content = self.file_path.read_bytes() if content is None else bytes(content)
        self._image_settings = None

    def parse(self):
        if self._image_settings is None:
            image_settings = HeaderParser(self.content, self.settings, self.tags, self.observer).parse()
            self.observer(
                "header_parsed",
                file=self.file_path,
                x_resolution=image_settings.x_resolution,
                y_resolution=image_settings.y_resolution,
                image_count=image_settings.image_count,
                bytes_per_pixel=image_settings.bytes_per_pixel,
                start_offset=image_settings.start_offset,
                eye_image_start_offset=image_settings.eye_image_start_offset,
            )
            self._image_settings = image_settings
        return self._image_settings

    def volume_images(self):
        return decode_volume_images(self.content, self.parse(), self.observer)

    def eye_image_headers(self):
        return read_eye_image_headers(self.content, self.parse().eye_image_start_offset, self.tags)

    def eye_images(self, headers=None):
        if headers is None:
            headers = self.eye_image_headers()
        return decode_eye_images(self.content, self.parse().eye_image_start_offset, headers, self.tags, self.observer)

    def _target_file(self, file_name, output_path):
        return get_target_file(file_name, self.file_path, output_path,
                               self.settings.create_new_dir_for_file, self.tags.target_image_format)

    def preview(self, output_path=None, post_processor=None):
        """Write volume frames, metadata and eye images; returns the written paths."""
        output_path = Path(output_path) if output_path is not None else self.settings.absolute_target_folder
        mode = self.settings.mode
        image_settings = self.parse()
        written = []

        # oct images
        if mode.exports_volume:
            volume_files = []
            for raster in self.volume_images():
                target = self._target_file(str(raster.label), output_path)
                raster.to_image().save(target)
                volume_files.append(target)
            if post_processor is not None:
                post_processor(volume_files, self.file_path)
            written += volume_files

        # patient infos
        if mode.exports_metadata:
            output_path.mkdir(parents=True, exist_ok=True)
            info_file = output_path / f"{self.file_path.stem}.json"
            with open(info_file, "w", encoding="utf-8") as file:
                file.write(json.dumps(image_settings.to_dict(), indent=4, ensure_ascii=False))
            written.append(info_file)

        # eye images
        if mode.exports_eye_images:
            headers = self.eye_image_headers()
            self.observer("eye_images_found", file=self.file_path, count=len(headers))
            for raster in self.eye_images(headers):
                target = self._target_file(f"eye-image-{raster.label}", output_path)
                raster.to_image().save(target)
                written.append(target)

        return written


### Batch ###


def get_files(base_folder, file_extension):
    base_folder = Path(base_folder)
    if not base_folder.is_dir():
        return []
    return sorted(p for p in base_folder.iterdir() if p.is_file() and p.name.endswith(file_extension))


def validate_input_output(files, target, observer=None):
    """Check there is work to do and create the target folder."""
    observer = observer or null_observer
    observer("files_found", count=len(files))
    if not files:
        observer("no_files_found")
        return False

    target = Path(target)
    if not target.exists():
        target.mkdir(parents=True)
    elif not target.is_dir():
        raise OutputTargetInvalid(f"Target ({target}) is no folder", {"target": str(target)})
    return True


def process_file(file, settings, tags=None, observer=None, post_processor=None):
    """Export one file; returns False if it failed."""
    observer = observer or null_observer
    observer("file_started", file=file)
    try:
        parser = TomeyParser(file, settings, tags, observer)
        written = parser.preview(settings.absolute_target_folder, post_processor)
    except (TomeyParserError, OSError) as e:
        observer("file_failed", file=file, error=f"{type(e).__name__}: {e}")
        return False
    observer("file_done", file=file, outputs=len(written))
    return True


def run(settings, tags=None, observer=None, post_processor=None):
    """Export every matching file of the data folder.

    Returns 0 if every file was exported, 1 otherwise. Raises
    OutputTargetInvalid if the target is not a folder.
    """
    observer = observer or LoggingObserver()
    data_folder = settings.absolute_data_folder
    observer("run_started", folder=data_folder, extension=settings.file_extension)

    files = get_files(data_folder, settings.file_extension)
    if not validate_input_output(files, settings.absolute_target_folder, observer):
        return 1

    failed = [file for file in files if not process_file(file, settings, tags, observer, post_processor)]
    observer("run_finished", files=len(files), failed=len(failed))
    return 1 if failed else 0
