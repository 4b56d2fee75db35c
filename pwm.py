#!/usr/bin/env python3
"""it87 fan PWM access via /sys/class/hwmon.

The asustor-it87 platform driver exposes the single chassis fan as pwm1
(0 = stopped, 255 = full speed) and its tachometer as fan1_input.

Run directly to inspect or set the fan by hand:
    setfan          # print current pwm and rpm
    setfan 180      # set pwm to 180
"""

from __future__ import annotations

import argparse
import logging
import pathlib
import sys

import sensors

log = logging.getLogger("fan-daemon")

PWM_MIN = 0
PWM_MAX = 255


class It87Pwm:
    """Fan actuator for the it87 Super I/O chip."""

    path: pathlib.Path

    def __init__(self, path: pathlib.Path) -> None:
        self.path = path

    @classmethod
    def find(cls, root: pathlib.Path = sensors.HWMON_ROOT) -> It87Pwm | None:
        """Locate the it87 hwmon device. Returns None if not present."""
        for hwmon in sensors.find_hwmon("it87", root):
            if (hwmon / "pwm1").exists():
                return cls(hwmon)
        return None

    def write(self, duty_cycle: int) -> bool:
        """Set pwm1. Returns False (and logs) on failure."""
        if not PWM_MIN <= duty_cycle <= PWM_MAX:
            log.error("Refusing out-of-range pwm %d", duty_cycle)
            return False
        try:
            _ = (self.path / "pwm1").write_text("%d\n" % duty_cycle)
        except OSError as e:
            log.error("Failed to set pwm=%d on %s: %s", duty_cycle, self.path, e)
            return False
        return True

    def read_duty_cycle(self) -> int | None:
        """Read back the current pwm1 value."""
        return self._read_int("pwm1")

    def read_fan_rpm(self) -> int | None:
        """Read fan1_input. Diagnostic only."""
        return self._read_int("fan1_input")

    def _read_int(self, name: str) -> int | None:
        try:
            return int((self.path / name).read_text().strip())
        except (ValueError, OSError):
            return None


def main(argv: list[str] | None = None) -> None:
    p = argparse.ArgumentParser(description="Show or set the it87 fan pwm")
    _ = p.add_argument(
        "pwm",
        type=int,
        nargs="?",
        help="New pwm value (%d-%d)." % (PWM_MIN, PWM_MAX),
    )
    args = p.parse_args(argv)
    if args.pwm is not None and not PWM_MIN <= args.pwm <= PWM_MAX:
        p.error("pwm must be %d-%d, got %d" % (PWM_MIN, PWM_MAX, args.pwm))

    fan = It87Pwm.find()
    if fan is None:
        print("it87 hwmon device not found", file=sys.stderr)
        sys.exit(1)
    print(f"fan={fan.path}")
    print(f"current pwm={fan.read_duty_cycle()} rpm={fan.read_fan_rpm()}")

    if args.pwm is not None:
        print(f"setting pwm={args.pwm}")
        if not fan.write(args.pwm):
            sys.exit(1)


if __name__ == "__main__":
    main()
