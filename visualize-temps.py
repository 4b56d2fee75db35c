#!/usr/bin/env python3
# pyright: basic
"""
Plot fan-daemon zone temperatures and pwm from journalctl.

Needs the daemon running with --verbosity 2 or higher, which logs one
"cycle pwm=..." line per control loop iteration. Samples are kept in an npz
history so repeated runs accumulate data across journal rotation.

Usage:
    ./visualize-temps.py                    # scrape since fan-daemon last started
    ./visualize-temps.py --all              # scrape all history
    ./visualize-temps.py --since "2 hours"  # scrape last 2 hours
    ./visualize-temps.py --since "2026-01-04 10:30:00"
    ./visualize-temps.py --npz data.npz     # plot an existing npz only
"""

from __future__ import annotations

import argparse
import re
import subprocess
import sys
import time
from datetime import datetime
from pathlib import Path

import numpy as np

RESULTS_DIR = Path("results")
DEFAULT_NPZ = RESULTS_DIR / "temps.npz"
DEFAULT_PNG = RESULTS_DIR / "temps.png"

ZONES = ("sys", "nvme", "hdd")
UNITS = {"s": 1, "m": 60, "h": 3600, "d": 86400}

# "2026-01-04T10:08:06-08:00 nas fan-daemon[123]: DEBUG: cycle pwm=140 ..."
LINE_RE = re.compile(
    r"^(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}[+-]\d{2}:?\d{2})\s+\S+\s+"
    r"fan-daemon\[\d+\]:\s*(?:\w+:\s*)?cycle\s+(.*)$"
)
PWM_RE = re.compile(r"\bpwm=(\d+)")
TEMP_RE = re.compile(r"\b(sys|nvme|hdd)=(-?\d+)\b")


def parse_since(s: str) -> float:
    """Parse '2 hours' / '30m' / '1d' or an absolute 'YYYY-MM-DD HH:MM:SS'."""
    s = s.strip().lower()
    m = re.match(r"^(\d+)\s*([smhd])[a-z]*$", s)
    if m:
        return time.time() - int(m.group(1)) * UNITS[m.group(2)]
    try:
        return datetime.fromisoformat(s).timestamp()
    except ValueError:
        raise ValueError(
            f"Expected relative time (e.g. '2 hours') or 'YYYY-MM-DD HH:MM:SS', got: {s}"
        ) from None


def get_service_start_time() -> float | None:
    """Timestamp when the fan-daemon unit last started."""
    result = subprocess.run(
        ["systemctl", "show", "fan-daemon", "--property=ActiveEnterTimestamp"],
        capture_output=True,
        text=True,
        check=False,
    )
    if result.returncode != 0 or "=" not in result.stdout:
        return None
    # "ActiveEnterTimestamp=Sat 2026-01-04 08:30:00 PST"
    value = result.stdout.strip().split("=", 1)[1].strip()
    try:
        return datetime.strptime(value, "%a %Y-%m-%d %H:%M:%S %Z").timestamp()
    except ValueError:
        return None


def scrape_journal(since: float | None = None) -> str | None:
    """Return fan-daemon journal text, or None if journalctl fails."""
    cmd = ["journalctl", "-u", "fan-daemon", "--no-pager", "--output=short-iso"]
    if since is not None and since > 0:
        cmd.extend(["--since", f"@{int(since)}"])
    result = subprocess.run(cmd, capture_output=True, text=True, check=False)
    if result.returncode != 0:
        print(f"journalctl failed: {result.stderr}", file=sys.stderr)
        return None
    return result.stdout


def parse_logs(log_text: str) -> dict[str, np.ndarray]:
    """Parse cycle lines into arrays keyed 'timestamps', 'pwm' and zone names.

    Zones without sensors (logged as -273) become NaN.
    """
    rows: list[tuple[float, float, float, float, float]] = []
    for line in log_text.splitlines():
        m = LINE_RE.match(line)
        if not m:
            continue
        stamp, msg = m.groups()
        pwm = PWM_RE.search(msg)
        if pwm is None:
            continue
        try:
            ts = datetime.fromisoformat(stamp).timestamp()
        except ValueError:
            continue
        temps = {z: float("nan") for z in ZONES}
        for zone, value in TEMP_RE.findall(msg):
            t = int(value)
            temps[zone] = float(t) if t > -273 else float("nan")
        rows.append((ts, float(pwm.group(1)), *(temps[z] for z in ZONES)))

    if not rows:
        return {}
    table = np.array(rows, dtype=np.float64)
    data = {"timestamps": table[:, 0], "pwm": table[:, 1]}
    for i, zone in enumerate(ZONES):
        data[zone] = table[:, 2 + i]
    return data


def load_npz(path: Path) -> dict[str, np.ndarray]:
    if not path.exists():
        return {}
    with np.load(path) as npz:
        return {k: npz[k] for k in npz.files}


def save_npz(data: dict[str, np.ndarray], path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    np.savez(path, **data)
    print(f"Saved {path} ({len(data.get('timestamps', []))} samples)")


def merge_data(
    old: dict[str, np.ndarray],
    new: dict[str, np.ndarray],
) -> dict[str, np.ndarray]:
    """Append samples from new whose timestamps are not already in old."""
    if not old:
        return new
    if not new:
        return old
    mask = ~np.isin(new["timestamps"], old["timestamps"])
    if not mask.any():
        return old
    merged = {
        key: np.concatenate([old[key], new[key][mask]])
        for key in old
        if key in new
    }
    order = np.argsort(merged["timestamps"], kind="stable")
    return {key: values[order] for key, values in merged.items()}


def plot_data(
    data: dict[str, np.ndarray], path: Path, since: float | None = None
) -> None:
    """Temperatures on the left axis, pwm on the right."""
    try:
        import matplotlib.dates as mdates
        import matplotlib.pyplot as plt
    except ImportError:
        print("matplotlib not installed, skipping plot", file=sys.stderr)
        return

    if not data or len(data.get("timestamps", [])) == 0:
        print("No samples to plot", file=sys.stderr)
        return

    if since is not None:
        keep = data["timestamps"] >= since
        data = {k: v[keep] for k, v in data.items()}
        if not keep.any():
            print("No samples in range", file=sys.stderr)
            return

    dates = [datetime.fromtimestamp(t) for t in data["timestamps"]]
    marker_every = max(1, len(dates) // 200)

    fig, ax1 = plt.subplots(figsize=(14, 7))
    for zone, color in zip(ZONES, ("tab:blue", "tab:green", "tab:orange")):
        ax1.plot(
            dates,  # pyright: ignore[reportArgumentType]
            data[zone],
            label=zone,
            color=color,
            linewidth=0.8,
            marker=".",
            markersize=2,
            markevery=marker_every,
        )
    ax1.set_xlabel("Time")
    ax1.set_ylabel("Temperature (C)")
    ax1.set_ylim(0, 100)
    ax1.grid(True, alpha=0.3)

    ax2 = ax1.twinx()
    ax2.step(
        dates,  # pyright: ignore[reportArgumentType]
        data["pwm"],
        where="post",
        label="pwm",
        color="red",
        linestyle="--",
        linewidth=1,
    )
    ax2.set_ylabel("Fan pwm")
    ax2.set_ylim(0, 260)

    ax1.xaxis.set_major_formatter(mdates.DateFormatter("%m-%d %H:%M"))
    fig.autofmt_xdate()
    lines1, labels1 = ax1.get_legend_handles_labels()
    lines2, labels2 = ax2.get_legend_handles_labels()
    ax1.legend(lines1 + lines2, labels1 + labels2, loc="upper left", fontsize=8)

    plt.title("Fan Daemon: Zone Temperatures and pwm")
    plt.tight_layout()
    path.parent.mkdir(parents=True, exist_ok=True)
    plt.savefig(path, dpi=150)
    plt.close(fig)
    print(f"Saved {path}")


def main() -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--since",
        type=str,
        default=None,
        help="Scrape logs since time: relative ('2 hours', '30m') or absolute.",
    )
    parser.add_argument(
        "--all",
        action="store_true",
        help="Scrape all history (default: since service start).",
    )
    parser.add_argument(
        "--npz",
        type=Path,
        default=None,
        help="Plot this npz file instead of scraping.",
    )
    parser.add_argument("--output", type=Path, default=DEFAULT_NPZ)
    parser.add_argument("--png", type=Path, default=DEFAULT_PNG)
    args = parser.parse_args()

    since_ts: float | None = None
    if args.since is not None:
        try:
            since_ts = parse_since(args.since)
        except ValueError as e:
            parser.error(str(e))

    if args.npz:
        data = load_npz(args.npz)
        if not data:
            print(f"Failed to load {args.npz}", file=sys.stderr)
            sys.exit(1)
    else:
        if args.all:
            scrape_from = None
        elif since_ts is not None:
            scrape_from = since_ts
        else:
            scrape_from = get_service_start_time()
        text = scrape_journal(since=scrape_from)
        new_data = parse_logs(text) if text else {}
        data = merge_data(load_npz(args.output), new_data)
        if not data:
            print("No data found", file=sys.stderr)
            sys.exit(1)
        if new_data:
            save_npz(data, args.output)

    plot_data(data, args.png, since=since_ts)


if __name__ == "__main__":
    main()
