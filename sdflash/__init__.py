"""Flash a bootloader onto removable media."""

from sdflash.__version__ import __version__

__all__ = ["__version__"]
