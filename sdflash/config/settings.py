"""Settings storage and per-session configuration."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any


SETTINGS_PATH = Path(
    os.environ.get(
        "SDFLASH_SETTINGS_PATH",
        Path.home() / ".config" / "sdflash" / "settings.json",
    )
)

# Board profile defaults (BeagleBone Black, barebox)
DEFAULT_BUILD_DIR = "./build/images"
DEFAULT_FIRST_STAGE_IMAGE = "barebox-am33xx-beaglebone-mlo.mmc.img"
DEFAULT_MAIN_IMAGE = "barebox-am33xx-beaglebone.img"
DEFAULT_FIRST_STAGE_NAME = "MLO"
DEFAULT_MAIN_IMAGE_NAME = "barebox.bin"

DEFAULT_PARTITION_SIZE = "+64M"
DEFAULT_PARTITION_TYPE = "e"
DEFAULT_VOLUME_LABEL = "boot"
DEFAULT_SETTLE_TIMEOUT = 10.0
DEFAULT_SENSITIVE_DEVICES = ["/dev/sda", "/dev/nvme0n1", "/dev/hda"]

PARTITION_TOOLS = ("sfdisk", "fdisk")

DEFAULT_SETTINGS: dict[str, Any] = {
    "build_dir": DEFAULT_BUILD_DIR,
    "first_stage_image": DEFAULT_FIRST_STAGE_IMAGE,
    "main_image": DEFAULT_MAIN_IMAGE,
    "first_stage_name": DEFAULT_FIRST_STAGE_NAME,
    "main_image_name": DEFAULT_MAIN_IMAGE_NAME,
    "partition_size": DEFAULT_PARTITION_SIZE,
    "partition_type": DEFAULT_PARTITION_TYPE,
    "partition_tool": "sfdisk",
    "volume_label": DEFAULT_VOLUME_LABEL,
    "sensitive_devices": list(DEFAULT_SENSITIVE_DEVICES),
    "settle_timeout_seconds": DEFAULT_SETTLE_TIMEOUT,
    "use_sudo": True,
    "verify_payload": True,
}


@dataclass
class SettingsStore:
    values: dict[str, Any] = field(default_factory=dict)


settings_store = SettingsStore()


def load_settings() -> None:
    settings_store.values = dict(DEFAULT_SETTINGS)
    if not SETTINGS_PATH.exists():
        return
    try:
        data = json.loads(SETTINGS_PATH.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return
    if isinstance(data, dict):
        settings_store.values.update(data)


def get_setting(key: str, default: Any | None = None) -> Any:
    return settings_store.values.get(key, default)


def _require_str(key: str, value: Any) -> str:
    if not isinstance(value, str) or not value:
        raise ValueError(f"{key} must be a non-empty string, got {value!r}")
    return value


def _require_bool(key: str, value: Any) -> bool:
    # JSON true/false only; "false" is a truthy string
    if not isinstance(value, bool):
        raise ValueError(f"{key} must be true or false, got {value!r}")
    return value


def _require_patterns(key: str, value: Any) -> tuple[str, ...]:
    if not isinstance(value, (list, tuple)) or not all(
        isinstance(item, str) and item for item in value
    ):
        raise ValueError(f"{key} must be a list of device patterns, got {value!r}")
    return tuple(value)


def _require_timeout(key: str, value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ValueError(f"{key} must be a positive number of seconds, got {value!r}")
    return float(value)


@dataclass(frozen=True)
class FlashConfig:
    """Everything one session needs, frozen at startup.

    CLI flags are passed as overrides; anything not overridden comes from the
    settings file or DEFAULT_SETTINGS.
    """

    device: str
    build_dir: Path = Path(DEFAULT_BUILD_DIR)
    first_stage_image: str = DEFAULT_FIRST_STAGE_IMAGE
    main_image: str = DEFAULT_MAIN_IMAGE
    first_stage_name: str = DEFAULT_FIRST_STAGE_NAME
    main_image_name: str = DEFAULT_MAIN_IMAGE_NAME
    partition_size: str = DEFAULT_PARTITION_SIZE
    partition_type: str = DEFAULT_PARTITION_TYPE
    partition_tool: str = "sfdisk"
    volume_label: str = DEFAULT_VOLUME_LABEL
    sensitive_devices: tuple[str, ...] = tuple(DEFAULT_SENSITIVE_DEVICES)
    settle_timeout_seconds: float = DEFAULT_SETTLE_TIMEOUT
    use_sudo: bool = True
    verify_payload: bool = True
    verbose: bool = False

    def __post_init__(self) -> None:
        if self.partition_tool not in PARTITION_TOOLS:
            raise ValueError(
                f"partition_tool must be one of {', '.join(PARTITION_TOOLS)}, "
                f"got {self.partition_tool!r}"
            )

    @classmethod
    def from_settings(cls, device: str, **overrides: Any) -> FlashConfig:
        """Build a config from the loaded settings plus explicit overrides.

        Overrides whose value is None are ignored so argparse defaults can be
        passed straight through.

        Raises:
            ValueError: If a setting has the wrong type, e.g. a single string
                for sensitive_devices or "false" instead of false
        """
        values = dict(DEFAULT_SETTINGS)
        values.update(settings_store.values)
        values.update({k: v for k, v in overrides.items() if v is not None})

        build_dir = values["build_dir"]
        if not isinstance(build_dir, os.PathLike):
            build_dir = _require_str("build_dir", build_dir)
        strings = {
            key: _require_str(key, values[key])
            for key in (
                "first_stage_image",
                "main_image",
                "first_stage_name",
                "main_image_name",
                "partition_size",
                "partition_type",
                "partition_tool",
                "volume_label",
            )
        }
        return cls(
            device=device,
            build_dir=Path(build_dir),
            sensitive_devices=_require_patterns(
                "sensitive_devices", values["sensitive_devices"]
            ),
            settle_timeout_seconds=_require_timeout(
                "settle_timeout_seconds", values["settle_timeout_seconds"]
            ),
            use_sudo=_require_bool("use_sudo", values["use_sudo"]),
            verify_payload=_require_bool("verify_payload", values["verify_payload"]),
            verbose=_require_bool("verbose", values.get("verbose", False)),
            **strings,
        )


load_settings()
