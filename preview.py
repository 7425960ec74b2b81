from TomeyParser import LOGGER_NAME, LoggingObserver, TomeyParserError, run
from TomeySettings import load_config
import argparse
import logging
import sys
from pathlib import Path


def parse_args(argv=None):
    """Parse command line arguments for input folder, output folder and overrides."""
    parser = argparse.ArgumentParser(description='Export volume images, eye images and patient infos from Tomey files.')

    parser.add_argument('--input_folder', '-i',
                        help='Folder with the files to read')
    parser.add_argument('--output_folder', '-o',
                        help='Path to the output folder')
    parser.add_argument('--config', '-c',
                        help='YAML file with settings and tag definitions')
    parser.add_argument('--extension', '-e',
                        help='Extension of the files to read, e.g. .vaa')
    parser.add_argument('--mode', '-m',
                        help='metadata (0), eye_images (1), volume (2) or all (3)')
    parser.add_argument('--new_dir_per_file', action='store_true', default=None,
                        help='Write the images of every file into its own folder')

    # Values read from the file unless given here
    overrides = parser.add_argument_group('overrides')
    for name in ('x_resolution', 'y_resolution', 'image_count', 'bytes_per_pixel',
                 'start_offset', 'eye_image_start_offset'):
        overrides.add_argument(f'--{name}', type=int)
    for name in ('x_mm_per_pixel', 'y_mm_per_pixel', 'z_mm_per_pixel'):
        overrides.add_argument(f'--{name}', type=float)

    parser.add_argument('--log_level', default='INFO',
                        help='DEBUG, INFO, WARNING or ERROR')
    parser.add_argument('--log_file',
                        help='Also write the log to this file')

    return parser.parse_args(argv)


def setup_logging(log_level="INFO", log_file=None, log_format=None):
    """Configure the tomey_parser logger with a console and an optional file handler."""
    if log_format is None:
        log_format = '[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s'

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, log_level.upper()))
    logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(logging.Formatter(log_format))
    logger.addHandler(console_handler)

    if log_file is not None:
        log_file = Path(log_file)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter(log_format))
        logger.addHandler(file_handler)

    return logger


def main(argv=None):
    # Parse command line arguments
    args = parse_args(argv)
    logger = setup_logging(args.log_level, args.log_file)

    settings, tags = load_config(
        args.config,
        data_folder=args.input_folder,
        target_folder=args.output_folder,
        file_extension=args.extension,
        mode=args.mode,
        create_new_dir_for_file=args.new_dir_per_file,
        x_resolution=args.x_resolution,
        y_resolution=args.y_resolution,
        image_count=args.image_count,
        bytes_per_pixel=args.bytes_per_pixel,
        start_offset=args.start_offset,
        eye_image_start_offset=args.eye_image_start_offset,
        x_mm_per_pixel=args.x_mm_per_pixel,
        y_mm_per_pixel=args.y_mm_per_pixel,
        z_mm_per_pixel=args.z_mm_per_pixel,
    )

    # Print the folder names
    print(f"Input folder: {settings.absolute_data_folder}")
    print(f"Output folder: {settings.absolute_target_folder}")
    try:
        status = run(settings, tags, LoggingObserver(logger))
    except TomeyParserError as e:
        logger.error(e.message)
        return 1
    print('Done')
    return status


if __name__ == "__main__":
    sys.exit(main())
