#!/usr/bin/env python3
"""
Fan daemon for Asustor Flashstor NAS units (one it87 fan, three thermal zones).

Each zone (system, NVMe, HDD) maps its hottest sensor to a pwm duty cycle with
a quadratic curve that stays flat near the zone's target temperature and
rises steeply towards its maximum:

    pwm = min_pwm + ((temp - target) * 10 / scale) ** 2

The fan follows whichever zone asks for the most airflow. Increases are
applied immediately; decreases wait until some zone has cooled by more than
its delta threshold, which keeps the fan from hunting.

HDD temperatures come from SMART queries, which disrupt disk I/O, so they are
refreshed far less often than the hwmon sensors (--hdd-interval).

Fail-safe: any unexpected error -> full speed (pwm 255)

Run with --help for configuration options.

Monitor logs:
    journalctl -u fan-daemon -f

Dependencies:
    asustor-it87 kmod - fan pwm/rpm (it87 branch of asustor-platform-driver)
    smartmontools     - HDD temperature monitoring (optional)
    mailutils         - fan change alerts (optional)
"""

from __future__ import annotations

import argparse
import dataclasses
import enum
import logging
import signal
import sys
import time
import types
from collections.abc import Callable, Iterable, Mapping
from typing import Protocol, cast

import pwm
import sensors

logging.basicConfig(
    level=logging.INFO,
    format="%(levelname)s: %(message)s",
)
log = logging.getLogger("fan-daemon")

# Worst-case temperature of a zone with no responding sensors. Lower than any
# valid target temperature, so such a zone always maps to the floor duty.
UNKNOWN_TEMP = -273

DEFAULT_MIN_DUTY = 70  # ~1000 rpm on an AS5404T
DEFAULT_MAX_DUTY = 255


class ZoneKind(enum.Enum):
    """Thermal zones, in arbitration tie-break order."""

    SYSTEM = "sys"
    NVME = "nvme"
    HDD = "hdd"


@dataclasses.dataclass(frozen=True, slots=True, kw_only=True)
class ZoneConfig:
    """Response curve and hysteresis for one thermal zone."""

    target_temp: int
    max_temp: int
    scale_factor: int
    delta_threshold: int

    def __post_init__(self) -> None:
        if not 0 < self.target_temp < self.max_temp:
            raise ValueError(
                "Need 0 < target < max, got target=%d max=%d"
                % (self.target_temp, self.max_temp)
            )
        if self.scale_factor <= 0:
            raise ValueError("Scale factor must be > 0, got %d" % self.scale_factor)
        if self.delta_threshold < 0:
            raise ValueError(
                "Delta threshold must be >= 0, got %d" % self.delta_threshold
            )

    @classmethod
    def parse_spec(cls, spec: str) -> tuple[ZoneKind, ZoneConfig]:
        """Parse 'nvme=35:60:18:2' into (zone, config)."""
        if "=" not in spec:
            raise ValueError("Invalid zone spec (missing '='): %s" % spec)
        key, value = spec.split("=", 1)
        try:
            kind = ZoneKind(key.strip().lower())
        except ValueError:
            raise ValueError(
                "Unknown zone: %s (expected sys, nvme or hdd)" % key
            ) from None
        pieces = value.split(":")
        if len(pieces) != 4:
            raise ValueError(
                "Invalid zone format: %s (expected target:max:scale:delta)" % value
            )
        try:
            target, max_temp, scale, delta = (int(p) for p in pieces)
        except ValueError:
            raise ValueError("Zone values must be integers: %s" % value) from None
        return kind, cls(
            target_temp=target,
            max_temp=max_temp,
            scale_factor=scale,
            delta_threshold=delta,
        )


# Tuned for a Flashstor 6/12 Pro. A scale of 18 puts NVMe at full speed by
# 60C; the system curve only saturates near its max.
DEFAULT_ZONES: dict[ZoneKind, ZoneConfig] = {
    ZoneKind.SYSTEM: ZoneConfig(
        target_temp=50, max_temp=92, scale_factor=30, delta_threshold=4
    ),
    ZoneKind.NVME: ZoneConfig(
        target_temp=35, max_temp=60, scale_factor=18, delta_threshold=2
    ),
    ZoneKind.HDD: ZoneConfig(
        target_temp=38, max_temp=60, scale_factor=18, delta_threshold=2
    ),
}


def compute_duty_cycle(
    zone: ZoneConfig,
    temp: int,
    min_duty: int = DEFAULT_MIN_DUTY,
    max_duty: int = DEFAULT_MAX_DUTY,
) -> int:
    """Map a zone temperature to a desired duty cycle.

    Flat at min_duty up to target_temp, saturated at max_duty from max_temp,
    and min_duty + excess**2 in between, where
    excess = (temp - target_temp) * 10 // scale_factor.
    """
    if temp <= zone.target_temp:
        return min_duty
    if temp >= zone.max_temp:
        return max_duty
    excess = (temp - zone.target_temp) * 10 // zone.scale_factor
    return min(max_duty, min_duty + excess * excess)


def aggregate(temps: Iterable[int]) -> int:
    """Worst-case (maximum) temperature, UNKNOWN_TEMP if there are none."""
    return max(temps, default=UNKNOWN_TEMP)


@dataclasses.dataclass(frozen=True, slots=True, kw_only=True)
class ZoneReading:
    """One zone's temperature for one sampling cycle."""

    kind: ZoneKind
    temp: int
    details: tuple[tuple[str, int], ...] = ()

    @classmethod
    def from_result(cls, kind: ZoneKind, result: sensors.SensorResult) -> ZoneReading:
        details = tuple(sorted(result.items()))
        return cls(kind=kind, temp=aggregate(result.values()), details=details)

    def describe(self) -> str:
        """e.g. 'nvme=45 ( nvme1/temp1=41 nvme1/temp2=45 )'."""
        raw = " ".join("%s=%d" % d for d in self.details) or "no sensors"
        return "%s=%d ( %s )" % (self.kind.value, self.temp, raw)


def select(system: int, nvme: int, hdd: int) -> tuple[int, ZoneKind]:
    """Arbitrate zone duty cycles. Returns (target, winning zone).

    The highest duty wins. On a tie the earliest zone in ZoneKind order
    (system, then NVMe, then HDD) is reported as the winner.
    """
    target = max(system, nvme, hdd)
    candidates = (
        (ZoneKind.SYSTEM, system),
        (ZoneKind.NVME, nvme),
        (ZoneKind.HDD, hdd),
    )
    winner = next(kind for kind, duty in candidates if duty == target)
    return target, winner


@dataclasses.dataclass(frozen=True, slots=True, kw_only=True)
class ControllerState:
    """The applied duty cycle and the zone temps it was committed at."""

    duty_cycle: int
    temps: Mapping[ZoneKind, int]

    @classmethod
    def create(cls, duty_cycle: int, temps: Mapping[ZoneKind, int]) -> ControllerState:
        return cls(
            duty_cycle=duty_cycle,
            temps=types.MappingProxyType(
                {k: temps.get(k, UNKNOWN_TEMP) for k in ZoneKind}
            ),
        )


class Action(enum.Enum):
    """Outcome of one hysteresis decision."""

    INITIAL = "initial"
    INCREASE = "INCREASE"
    DECREASE = "DECREASE"
    PENDING = "PENDING"
    HOLD = "hold"

    @property
    def committed(self) -> bool:
        return self in (Action.INITIAL, Action.INCREASE, Action.DECREASE)


class HysteresisController:
    """Decides whether an arbitrated target is applied to the fan.

    Increases commit at once. A decrease commits only when at least one zone
    has cooled by more than its delta_threshold since the last commit;
    otherwise it stays pending and the previous duty cycle remains in force.
    """

    zones: Mapping[ZoneKind, ZoneConfig]

    def __init__(self, zones: Mapping[ZoneKind, ZoneConfig]) -> None:
        self.zones = zones

    @staticmethod
    def initial(target: int, temps: Mapping[ZoneKind, int]) -> ControllerState:
        """First commit at startup, bypassing hysteresis."""
        return ControllerState.create(target, temps)

    def deltas(
        self, state: ControllerState, temps: Mapping[ZoneKind, int]
    ) -> dict[ZoneKind, int]:
        """Cooling since the last commit (last - current) per zone.

        Positive means the zone got cooler. Zones without a known temperature
        now or at the last commit are left out.
        """
        deltas: dict[ZoneKind, int] = {}
        for kind in ZoneKind:
            last = state.temps.get(kind, UNKNOWN_TEMP)
            current = temps.get(kind, UNKNOWN_TEMP)
            if last == UNKNOWN_TEMP or current == UNKNOWN_TEMP:
                # a vanished sensor must not count as cooling
                continue
            deltas[kind] = last - current
        return deltas

    def decide(
        self,
        state: ControllerState,
        target: int,
        temps: Mapping[ZoneKind, int],
    ) -> tuple[ControllerState, Action]:
        """Returns (new state, action). State is unchanged unless committed."""
        if target > state.duty_cycle:
            return ControllerState.create(target, temps), Action.INCREASE
        if target == state.duty_cycle:
            return state, Action.HOLD
        deltas = self.deltas(state, temps)
        if any(d > self.zones[k].delta_threshold for k, d in deltas.items()):
            return ControllerState.create(target, temps), Action.DECREASE
        return state, Action.PENDING


class DriveCheckSchedule:
    """Limits how often the HDD zone is queried.

    SMART queries stall disk I/O and drive temperatures move slowly, so the
    HDD zone is re-sampled at most once per interval_seconds. The first
    check is always due.
    """

    interval_seconds: float
    _clock: Callable[[], float]
    _last: float | None

    def __init__(
        self,
        interval_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.interval_seconds = interval_seconds
        self._clock = clock
        self._last = None

    def due(self) -> bool:
        if self._last is None:
            return True
        return self._clock() - self._last >= self.interval_seconds

    def mark(self) -> None:
        self._last = self._clock()


class Notifier(Protocol):
    """Receives a message for every committed fan change."""

    def notify(self, message: str) -> None: ...


class MailNotifier:
    """Sends fan change alerts with mail(1)."""

    address: str
    hostname: str
    timeout: float

    def __init__(self, address: str, hostname: str, timeout: float = 10.0) -> None:
        self.address = address
        self.hostname = hostname
        self.timeout = timeout

    def notify(self, message: str) -> None:
        out = sensors.run_cmd(
            ["mail", "-s", "%s - temperature alert" % self.hostname, self.address],
            self.timeout,
            stdin=message + "\n",
        )
        if out is None:
            log.warning("Failed to send alert mail to %s", self.address)


@dataclasses.dataclass(slots=True, kw_only=True)
class Config:
    """Daemon configuration."""

    zones: dict[ZoneKind, ZoneConfig] = dataclasses.field(
        default_factory=lambda: dict(DEFAULT_ZONES)
    )
    min_duty: int = DEFAULT_MIN_DUTY
    max_duty: int = DEFAULT_MAX_DUTY
    interval_seconds: float = 10.0
    hdd_interval_seconds: float = 120.0
    hdd_devices: tuple[str, ...] | None = None  # None = auto-detect
    cmd_timeout_seconds: float = 10.0
    mail_to: str | None = None
    mail_hostname: str = "truenas.local"
    verbosity: int = 2

    @classmethod
    def from_args(cls, argv: list[str] | None = None) -> Config:
        """Parse command-line arguments and return Config."""
        p = argparse.ArgumentParser(
            description="Fan daemon for Asustor Flashstor NAS units",
            formatter_class=argparse.RawDescriptionHelpFormatter,
            epilog="""
Zone format: ZONE=TARGET:MAX:SCALE:DELTA
  ZONE    sys, nvme or hdd
  TARGET  fan stays at --min-duty at or below this temp (C)
  MAX     fan goes to --max-duty at or above this temp (C)
  SCALE   curve steepness divisor: pwm = min + ((temp-TARGET)*10/SCALE)^2
  DELTA   cooling (C) required before this zone allows a slow-down

  Examples:
    --zone nvme=35:60:18:2      Defaults for NVMe
    --zone sys=45:85:25:3       Cooler system zone

Verbosity:
  0 warnings only, 1 fan changes, 2 every cycle, 3 every sensor value
""",
        )
        dc = cls()
        _ = p.add_argument(
            "--zone",
            action="append",
            metavar="SPEC",
            help="Zone curve spec. Repeatable.",
        )
        _ = p.add_argument(
            "--min-duty",
            type=int,
            default=dc.min_duty,
            help="Floor pwm (0-255).",
        )
        _ = p.add_argument(
            "--max-duty",
            type=int,
            default=dc.max_duty,
            help="Full speed pwm (0-255).",
        )
        _ = p.add_argument(
            "--interval",
            type=float,
            default=dc.interval_seconds,
            help="Poll interval (seconds).",
        )
        _ = p.add_argument(
            "--hdd-interval",
            type=float,
            default=dc.hdd_interval_seconds,
            help="Minimum seconds between SMART queries.",
        )
        _ = p.add_argument(
            "--hdd-devices",
            type=str,
            default="",
            help="Comma-separated HDD paths (default: auto-detect).",
        )
        _ = p.add_argument(
            "--cmd-timeout",
            type=float,
            default=dc.cmd_timeout_seconds,
            help="Timeout for external commands (seconds).",
        )
        _ = p.add_argument(
            "--mail-to",
            type=str,
            default=None,
            help="Send fan change alerts to this address.",
        )
        _ = p.add_argument(
            "--mail-hostname",
            type=str,
            default=dc.mail_hostname,
            help="Hostname used in alert subjects.",
        )
        _ = p.add_argument(
            "--verbosity",
            type=int,
            choices=range(4),
            default=dc.verbosity,
            help="Log detail 0-3.",
        )
        args = p.parse_args(argv)
        min_duty = cast(int, args.min_duty)
        max_duty = cast(int, args.max_duty)
        if not 0 <= min_duty < max_duty <= pwm.PWM_MAX:
            p.error("Need 0 <= --min-duty < --max-duty <= %d" % pwm.PWM_MAX)
        interval = cast(float, args.interval)
        hdd_interval = cast(float, args.hdd_interval)
        if interval <= 0 or hdd_interval < 0:
            p.error("--interval must be > 0 and --hdd-interval >= 0")
        zones = dict(DEFAULT_ZONES)
        for spec in cast(list[str], args.zone or []):
            try:
                kind, zone = ZoneConfig.parse_spec(spec)
            except ValueError as e:
                p.error(str(e))
            zones[kind] = zone
        hdd_str = cast(str, args.hdd_devices)
        hdd: tuple[str, ...] | None = None  # auto-detect
        if hdd_str:
            hdd = tuple(x.strip() for x in hdd_str.split(",") if x.strip())
        return cls(
            zones=zones,
            min_duty=min_duty,
            max_duty=max_duty,
            interval_seconds=interval,
            hdd_interval_seconds=hdd_interval,
            hdd_devices=hdd,
            cmd_timeout_seconds=cast(float, args.cmd_timeout),
            mail_to=cast("str | None", args.mail_to),
            mail_hostname=cast(str, args.mail_hostname),
            verbosity=cast(int, args.verbosity),
        )


class Fan(Protocol):
    """Fan actuator protocol."""

    def write(self, duty_cycle: int) -> bool: ...
    def read_duty_cycle(self) -> int | None: ...
    def read_fan_rpm(self) -> int | None: ...


Sources = Mapping[ZoneKind, tuple[sensors.Sensor, ...]]


def discover_sources(config: Config) -> dict[ZoneKind, tuple[sensors.Sensor, ...]]:
    """Enumerate temperature sources once at startup."""
    system = [
        sensors.Hwmon(path, "cpu%d" % i)
        for i, path in enumerate(sensors.find_hwmon("coretemp"))
    ]
    system.extend(
        sensors.Hwmon(path, "acpi", first_only=True)
        for path in sensors.find_hwmon("thermal_zone0")
    )
    nvme = [
        sensors.Hwmon(path, "nvme%d" % i)
        for i, path in enumerate(sensors.find_hwmon("nvme"), start=1)
    ]
    for hwmon in system + nvme:
        log.info("%s: %s", hwmon.label, hwmon.path)
    if not system:
        log.warning("No coretemp or ACPI sensors found")
    hdd_devices = (
        config.hdd_devices
        if config.hdd_devices is not None
        else sensors.detect_hdds()
    )
    if hdd_devices:
        log.info("HDDs: %s", ", ".join(hdd_devices))
    else:
        log.warning("No HDDs found")
    hdd: tuple[sensors.Sensor, ...] = ()
    if hdd_devices:
        hdd = (sensors.Smartctl(hdd_devices, config.cmd_timeout_seconds),)
    return {
        ZoneKind.SYSTEM: tuple(system),
        ZoneKind.NVME: tuple(nvme),
        ZoneKind.HDD: hdd,
    }


class FanDaemon:
    """Main fan control daemon."""

    config: Config
    fan: Fan
    sources: Sources
    notifier: Notifier | None
    controller: HysteresisController
    schedule: DriveCheckSchedule
    state: ControllerState | None
    readings: dict[ZoneKind, ZoneReading]
    running: bool

    def __init__(
        self,
        config: Config,
        fan: Fan,
        sources: Sources,
        notifier: Notifier | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.fan = fan
        self.sources = sources
        self.notifier = notifier
        self.controller = HysteresisController(config.zones)
        self.schedule = DriveCheckSchedule(config.hdd_interval_seconds, clock)
        self.state = None
        self.readings = {}
        self.running = False

    def sample(self, kind: ZoneKind) -> ZoneReading:
        """Read every source of one zone and reduce to its worst case."""
        result: sensors.SensorResult = {}
        for source in self.sources.get(kind, ()):
            result.update(source.get())
        reading = ZoneReading.from_result(kind, result)
        log.debug("%s", reading.describe())
        return reading

    def sample_all(self) -> dict[ZoneKind, ZoneReading]:
        """Sample all zones, reusing the last HDD reading until it is due."""
        readings = dict(self.readings)
        for kind in ZoneKind:
            if kind is ZoneKind.HDD and not self.schedule.due():
                log.debug("hdd=%d ( skipped update )", readings[kind].temp)
                continue
            readings[kind] = self.sample(kind)
            if kind is ZoneKind.HDD:
                self.schedule.mark()
        self.readings = readings
        return readings

    def compute_zone_duties(
        self, readings: Mapping[ZoneKind, ZoneReading]
    ) -> dict[ZoneKind, int]:
        """Desired duty cycle per zone."""
        cfg = self.config
        duties: dict[ZoneKind, int] = {}
        for kind in ZoneKind:
            zone = cfg.zones[kind]
            temp = readings[kind].temp
            if temp >= zone.max_temp:
                log.warning(
                    "%s at %dC >= max %dC, fan to full speed",
                    kind.value,
                    temp,
                    zone.max_temp,
                )
            duties[kind] = compute_duty_cycle(zone, temp, cfg.min_duty, cfg.max_duty)
        return duties

    def control_loop(self) -> None:
        """Main control loop iteration: sample, decide, maybe actuate."""
        rpm = self.fan.read_fan_rpm()
        readings = self.sample_all()
        duties = self.compute_zone_duties(readings)
        target, winner = select(
            duties[ZoneKind.SYSTEM], duties[ZoneKind.NVME], duties[ZoneKind.HDD]
        )
        temps = {k: r.temp for k, r in readings.items()}

        if self.state is None:
            new_state = HysteresisController.initial(target, temps)
            action = Action.INITIAL
        else:
            new_state, action = self.controller.decide(self.state, target, temps)

        temps_str = " ".join("%s=%d" % (k.value, t) for k, t in temps.items())
        old_duty = self.state.duty_cycle if self.state is not None else None

        if action is Action.PENDING and self.state is not None:
            deltas = self.controller.deltas(self.state, temps)
            log.info(
                "fan PENDING pwm=%d (%s rpm=%s) - not enough delta ( %s ) yet",
                target,
                temps_str,
                rpm,
                " ".join("%s=%d" % (k.value, d) for k, d in deltas.items()),
            )

        if action.committed:
            if not self.fan.write(new_state.duty_cycle):
                log.error(
                    "Failed to apply pwm=%d, retrying next cycle", new_state.duty_cycle
                )
            else:
                self.state = new_state
                change = "%d" % new_state.duty_cycle
                if old_duty is not None:
                    change = "%d->%s" % (old_duty, change)
                message = "fan %s pwm=%s (%s rpm=%s) [%s]" % (
                    action.value,
                    change,
                    temps_str,
                    rpm,
                    winner.value,
                )
                log.info("%s", message)
                if self.notifier is not None and action is not Action.INITIAL:
                    self.notifier.notify(message)

        if self.state is None:
            return
        log.debug(
            "cycle pwm=%d target=%d %s rpm=%s winner=%s duties=%s",
            self.state.duty_cycle,
            target,
            temps_str,
            rpm,
            winner.value,
            ",".join("%s:%d" % (k.value, d) for k, d in duties.items()),
        )

    def fail_safe(self) -> None:
        """Full speed; the next cycle recommits from scratch."""
        _ = self.fan.write(self.config.max_duty)
        self.state = None

    def shutdown(
        self,
        signum: int | None = None,
        _frame: object = None,
    ) -> None:
        """Clean shutdown - set fan to full."""
        log.info("Shutting down (signal %d)", signum or 0)
        self.running = False
        self.fail_safe()
        sys.exit(0)

    def run(self) -> None:
        """Main daemon loop."""
        _ = signal.signal(signal.SIGTERM, self.shutdown)
        _ = signal.signal(signal.SIGINT, self.shutdown)

        cfg = self.config
        log.info(
            "Starting: interval=%ss hdd_interval=%ss pwm=%d-%d zones=%s",
            cfg.interval_seconds,
            cfg.hdd_interval_seconds,
            cfg.min_duty,
            cfg.max_duty,
            " ".join(
                "%s=%d:%d:%d:%d"
                % (
                    k.value,
                    z.target_temp,
                    z.max_temp,
                    z.scale_factor,
                    z.delta_threshold,
                )
                for k, z in cfg.zones.items()
            ),
        )

        self.running = True
        while self.running:
            try:
                self.control_loop()
            except Exception:
                log.exception("Control loop error")
                self.fail_safe()

            time.sleep(cfg.interval_seconds)

        self.fail_safe()


def configure_logging(verbosity: int) -> None:
    """0 warnings, 1 fan changes, 2 every cycle, 3 every sensor value.

    Sensor read failures are INFO on fan-daemon.sensors, so they show from 2.
    """
    level = {0: logging.WARNING, 1: logging.INFO}.get(verbosity, logging.DEBUG)
    log.setLevel(level)
    sensor_level = {0: logging.WARNING, 1: logging.WARNING, 2: logging.INFO}
    logging.getLogger("fan-daemon.sensors").setLevel(
        sensor_level.get(verbosity, logging.DEBUG)
    )


def main(argv: list[str] | None = None) -> None:
    config = Config.from_args(argv)
    configure_logging(config.verbosity)
    fan = pwm.It87Pwm.find()
    if fan is None:
        log.error("it87 fan pwm not found - is the asustor-it87 module loaded?")
        sys.exit(1)
    log.info("fan: %s", fan.path)
    notifier = (
        MailNotifier(config.mail_to, config.mail_hostname, config.cmd_timeout_seconds)
        if config.mail_to
        else None
    )
    daemon = FanDaemon(config, fan, discover_sources(config), notifier)
    daemon.run()


if __name__ == "__main__":
    main()
