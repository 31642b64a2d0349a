import argparse
import sys

from sdflash.__version__ import __version__
from sdflash.config import settings
from sdflash.config.settings import FlashConfig
from sdflash.logging import LoggerFactory, setup_logging
from sdflash.session import FlashSession
from sdflash.storage.exceptions import InvalidSizeError
from sdflash.storage.partition import parse_size_expression


EPILOG = """\
examples:
  sdflash /dev/sdb                    Flash to /dev/sdb
  sdflash --verbose /dev/mmcblk0      Flash with every command echoed
  sdflash --size +128M /dev/sdc       Flash with a 128M partition

safety:
  This will DESTROY all data on the target device!
  Make sure you specify the correct SD card device.

prerequisites:
  Built bootloader images in the build directory (default ./build/images/)
  Root privileges (sudo)
"""


class ArgumentParser(argparse.ArgumentParser):
    """argparse, but usage errors exit with status 1 like every other failure."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def _size(value):
    try:
        parse_size_expression(value)
    except InvalidSizeError as error:
        raise argparse.ArgumentTypeError(str(error)) from None
    return value


def build_parser():
    parser = ArgumentParser(
        prog="sdflash",
        description=(
            "Flash a bootloader to an SD card: repartition the device, create a "
            "bootable FAT32 partition and copy the first-stage and main images."
        ),
        epilog=EPILOG,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "device", help="Target SD card device (e.g., /dev/sdb, /dev/mmcblk0)"
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Echo every external command"
    )
    parser.add_argument(
        "-s",
        "--size",
        type=_size,
        default=None,
        metavar="SIZE",
        help=f"Partition size (default: {settings.DEFAULT_PARTITION_SIZE})",
    )
    parser.add_argument(
        "-b",
        "--build-dir",
        default=None,
        metavar="DIR",
        help=f"Directory holding the built images (default: {settings.DEFAULT_BUILD_DIR})",
    )
    parser.add_argument(
        "-d", "--debug", action="store_true", help="Enable verbose debug output"
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    setup_logging(debug=args.debug)
    log = LoggerFactory.for_system()
    log.debug("Settings loaded from {}", settings.SETTINGS_PATH)

    try:
        config = FlashConfig.from_settings(
            args.device,
            partition_size=args.size,
            build_dir=args.build_dir,
            verbose=args.verbose,
        )
    except ValueError as error:
        log.error("Invalid configuration: {}", error)
        return 1

    result = FlashSession(config).run()
    log.debug(
        "Session ended in {} (success={}, cancelled={})",
        result.state.name,
        result.success,
        result.cancelled,
    )
    return result.exit_code


if __name__ == "__main__":
    sys.exit(main())
