"""Temperature sources for the NAS fan daemon.

Each source implements get() -> dict[str, int], mapping a sensor label to a
whole-degree Celsius reading. Sensors that are absent or fail to read are
simply left out of the result.
"""

from __future__ import annotations

import logging
import pathlib
import subprocess
from typing import Protocol

log = logging.getLogger("fan-daemon.sensors")

HWMON_ROOT = pathlib.Path("/sys/class/hwmon")

# smartctl exit bits 2-7 (SMART or self-test status) are not read failures
SMARTCTL_OK_MASK = 0xFC

# Type alias for sensor return values
SensorResult = dict[str, int]


class Sensor(Protocol):
    """Protocol for temperature sources."""

    def get(self) -> SensorResult:
        """Read temperatures. Returns {label: celsius}."""
        ...


def find_hwmon(pattern: str, root: pathlib.Path = HWMON_ROOT) -> list[pathlib.Path]:
    """Find hwmon directories whose device matches pattern.

    The pattern is matched case-insensitively against the hwmonN link text
    (e.g. "../../devices/platform/it87.2608/hwmon/hwmon5") and against the
    device name file.
    """
    if not root.exists():
        return []
    pattern = pattern.lower()
    found: list[pathlib.Path] = []
    for hwmon in root.iterdir():
        try:
            target = str(hwmon.readlink()).lower()
        except OSError:
            target = ""
        name = ""
        try:
            name = (hwmon / "name").read_text().strip().lower()
        except OSError:
            pass
        if pattern in target or pattern in name:
            found.append(hwmon)
    return sorted(found)


def millidegrees_to_celsius(raw: int) -> int:
    """Round and scale a hwmon millidegree value to whole degrees."""
    return (raw + 500) // 1000


class Hwmon:
    """hwmon temperature sensors under one device directory."""

    path: pathlib.Path
    label: str
    first_only: bool

    def __init__(
        self, path: pathlib.Path, label: str, first_only: bool = False
    ) -> None:
        """Initialize with a hwmon directory.

        Args:
            path: e.g. /sys/class/hwmon/hwmon3
            label: Prefix for result keys, e.g. "nvme1" gives "nvme1/temp2".
            first_only: Only read temp1_input (ACPI board sensor).
        """
        self.path = path
        self.label = label
        self.first_only = first_only

    def get(self) -> SensorResult:
        """Read every tempN_input of this device."""
        if self.first_only:
            inputs = [self.path / "temp1_input"]
        else:
            inputs = sorted(self.path.glob("temp[0-9]*_input"))

        temps: SensorResult = {}
        for temp_input in inputs:
            key = "%s/%s" % (self.label, temp_input.name.removesuffix("_input"))
            try:
                raw = int(temp_input.read_text().strip())
            except FileNotFoundError:
                continue
            except (ValueError, OSError) as e:
                log.info("Failed to read %s: %s", temp_input, e)
                continue
            log.debug("%s raw=%d file=%s", key, raw, temp_input)
            temp = _valid_temp(millidegrees_to_celsius(raw))
            if temp is not None:
                temps[key] = temp
        return temps


class Smartctl:
    """HDD temperature via SMART attribute 194.

    smartctl exits with a bitmask. Only bits 0-1 (bad command line, device
    open failed) mean there is no output; the rest report drive health and
    still come with a full attribute table.
    """

    _devices: tuple[str, ...]
    _timeout: float

    def __init__(self, devices: tuple[str, ...], timeout: float = 10.0) -> None:
        self._devices = devices
        self._timeout = timeout

    def get(self) -> SensorResult:
        """Query each drive with smartctl. Empty bays are skipped."""
        temps: SensorResult = {}
        for dev in self._devices:
            out = run_cmd(
                ["smartctl", "-A", dev],
                timeout=self._timeout,
                ok_mask=SMARTCTL_OK_MASK,
            )
            if out is None:
                log.info("No SMART data from %s - drive absent or busy", dev)
                continue
            temp = _parse_smart_temp(out)
            if temp is None:
                log.info("No temperature attribute on %s", dev)
                continue
            name = dev.rsplit("/", 1)[-1]
            log.debug("drive=%s temp=%d", name, temp)
            temps[name] = temp
        return temps


def _parse_smart_temp(output: str) -> int | None:
    """Return the raw value of attribute 194 (Temperature_Celsius)."""
    for line in output.splitlines():
        parts = line.split()
        if len(parts) < 10 or parts[0] != "194":
            continue
        try:
            return _valid_temp(int(parts[9]))
        except ValueError:
            return None
    return None


def detect_hdds(root: pathlib.Path = pathlib.Path("/sys/block")) -> tuple[str, ...]:
    """Auto-detect HDDs (rotational disks)."""
    hdds: list[str] = []
    if not root.exists():
        return ()
    for block in root.iterdir():
        if not block.name.startswith("sd"):
            continue
        rotational = block / "queue" / "rotational"
        if rotational.exists() and rotational.read_text().strip() == "1":
            hdds.append(f"/dev/{block.name}")
    return tuple(sorted(hdds))


def run_cmd(
    cmd: list[str],
    timeout: float = 5.0,
    stdin: str | None = None,
    ok_mask: int = 0,
) -> str | None:
    """Run command with timeout. Returns stdout on success, None on failure.

    Exit status bits set in ok_mask still count as success.
    """
    try:
        r = subprocess.run(
            cmd, capture_output=True, text=True, timeout=timeout, input=stdin
        )
        return r.stdout if r.returncode & ~ok_mask == 0 else None
    except (subprocess.TimeoutExpired, OSError):
        return None


def _valid_temp(value: int) -> int | None:
    """Return value if in valid range (0-120C), else None."""
    if 0 <= value <= 120:
        return value
    return None
