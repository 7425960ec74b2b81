"""Settings for reading Tomey dump files.

`FileTagSettings` describes the file layout (tag prefixes, markers and
structural offsets of the device firmware), `Settings` describes a run
(folders, export mode and per-field overrides). Both can be loaded from a
YAML file:

    settings:
      data_folder: data
      target_folder: out
      mode: ALL
    tomey:
      width: "WIDTH:"
      patient:
        id: "PATIENT ID:"
"""
from __future__ import annotations

from dataclasses import dataclass, field, fields, replace
from enum import Enum
from pathlib import Path
from typing import Any

import yaml


# Override sentinel: derive the value from the file
NO_OVERRIDE = -1


class ExportMode(Enum):
    """Which outputs are written for every file."""

    METADATA = 0
    EYE_IMAGES = 1
    VOLUME = 2
    ALL = 3

    @property
    def exports_volume(self):
        return self in (ExportMode.VOLUME, ExportMode.ALL)

    @property
    def exports_metadata(self):
        return self in (ExportMode.METADATA, ExportMode.ALL)

    @property
    def exports_eye_images(self):
        return self in (ExportMode.EYE_IMAGES, ExportMode.ALL)

    @classmethod
    def parse(cls, value):
        """Accept a member, its name ("all") or its number (3)."""
        if isinstance(value, cls):
            return value
        if isinstance(value, int) or (isinstance(value, str) and value.isdigit()):
            return cls(int(value))
        try:
            return cls[str(value).upper()]
        except KeyError:
            raise ValueError(f"Unknown export mode: {value!r}") from None


@dataclass(frozen=True)
class PatientTags:
    id: str = "PATIENT ID:"
    first_name: str = "FIRST NAME:"
    last_name: str = "LAST NAME:"
    birthday: str = "BIRTHDAY:"
    eye: str = "EYE:"
    commentary: str = "COMMENT:"


@dataclass(frozen=True)
class FileTagSettings:
    """Tag prefixes and layout constants of the device files."""

    width: str = "WIDTH:"
    height: str = "HEIGHT:"
    image_count: str = "FRAMES:"
    bits_per_pixel: str = "BITS PER PIXEL:"
    x_size_in_mm: str = "X SIZE MM:"
    y_size_in_mm: str = "Y SIZE MM:"
    z_size_per_pixel: str = "Z MM PER PIXEL:"
    examination_date: str = "EXAM DATE:"
    examination_time: str = "EXAM TIME:"
    file_name: str = "FILE NAME:"
    file_name2: str = "FILE NAME 2:"
    patient: PatientTags = field(default_factory=PatientTags)

    # markers
    line_break: str = "\r\n"
    null_char: str = "\x00"
    esc_char: str = "\x10"

    # volume frames start at <file name><NUL><NUL> + image_offset - 1
    image_offset: int = 2
    # eye image directory starts at <ESC><file name 2> + eye_image_first_header_offset
    eye_image_first_header_offset: int = 1
    eye_image_header_size: int = 32
    eye_image_in_header_height_position: int = 12
    eye_image_in_header_width_position: int = 8
    eye_image_content_offset: int = 16

    target_image_format: str = "png"

    def __post_init__(self):
        if not self.line_break:
            raise ValueError("line_break must not be empty")
        if not self.esc_char:
            raise ValueError("esc_char must not be empty")
        # the directory scan advances by the header size
        if self.eye_image_header_size <= 0:
            raise ValueError("eye_image_header_size must be positive")


@dataclass(frozen=True)
class Settings:
    """Run settings. Numeric overrides left at NO_OVERRIDE are read from the file."""

    data_folder: Path = Path(".")
    target_folder: Path = Path("output")
    file_extension: str = ".vaa"
    mode: ExportMode = ExportMode.ALL
    create_new_dir_for_file: bool = False

    x_resolution: int = NO_OVERRIDE
    y_resolution: int = NO_OVERRIDE
    image_count: int = NO_OVERRIDE
    bytes_per_pixel: int = NO_OVERRIDE
    start_offset: int = NO_OVERRIDE
    eye_image_start_offset: int = NO_OVERRIDE
    x_mm_per_pixel: float = NO_OVERRIDE
    y_mm_per_pixel: float = NO_OVERRIDE
    z_mm_per_pixel: float = NO_OVERRIDE

    @property
    def absolute_data_folder(self):
        return Path(self.data_folder).expanduser().resolve()

    @property
    def absolute_target_folder(self):
        return Path(self.target_folder).expanduser().resolve()


def _build(cls, values, where):
    known = {f.name for f in fields(cls)}
    unknown = set(values) - known
    if unknown:
        raise ValueError(f"Unknown keys in {where}: {', '.join(sorted(unknown))}")
    return cls(**values)


def tag_settings_from_dict(values):
    values = dict(values or {})
    patient = _build(PatientTags, values.pop("patient", None) or {}, "tomey.patient")
    return _build(FileTagSettings, {**values, "patient": patient}, "tomey")


def settings_from_dict(values):
    values = dict(values or {})
    for key in ("data_folder", "target_folder"):
        if key in values:
            values[key] = Path(values[key])
    if "mode" in values:
        values["mode"] = ExportMode.parse(values["mode"])
    return _build(Settings, values, "settings")


def read_yaml(path: Path) -> dict[str, Any]:
    obj = yaml.safe_load(Path(path).read_text(encoding="utf-8"))
    if obj is None:
        return {}
    if not isinstance(obj, dict):
        raise ValueError(f"Config must be a YAML mapping, got {type(obj).__name__}: {path}")
    return obj


def load_config(path=None, **overrides):
    """Load (Settings, FileTagSettings) from a YAML file.

    Keyword overrides that are not None replace the matching run settings,
    so command line values win over the file.
    """
    cfg = read_yaml(path) if path is not None else {}
    settings = settings_from_dict(cfg.get("settings"))
    tags = tag_settings_from_dict(cfg.get("tomey"))

    overrides = {k: v for k, v in overrides.items() if v is not None}
    if overrides:
        parsed = settings_from_dict(overrides)
        settings = replace(settings, **{k: getattr(parsed, k) for k in overrides})
    return settings, tags
