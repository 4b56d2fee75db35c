"""Unit tests for visualize-temps.py."""
# pyright: reportUnknownMemberType=false, reportUnknownVariableType=false
# pyright: reportUnknownArgumentType=false, reportAny=false

from __future__ import annotations

import math
import pathlib
import time
from datetime import datetime
from importlib.machinery import SourceFileLoader
from importlib.util import module_from_spec, spec_from_loader

import numpy as np
import pytest

_path = pathlib.Path(__file__).with_name("visualize-temps.py")
_spec = spec_from_loader("visualize_temps", SourceFileLoader("visualize_temps", str(_path)))
assert _spec is not None
_module = module_from_spec(_spec)
assert _spec.loader is not None
_spec.loader.exec_module(_module)

parse_logs = _module.parse_logs
parse_since = _module.parse_since
merge_data = _module.merge_data
load_npz = _module.load_npz
save_npz = _module.save_npz

JOURNAL = """\
-- Journal begins at Sat 2026-01-03 08:00:00 PST. --
2026-01-04T10:08:06-08:00 nas fan-daemon[812]: INFO: fan initial pwm=70 (sys=45 nvme=30 hdd=35 rpm=1012) [sys]
2026-01-04T10:08:06-08:00 nas fan-daemon[812]: DEBUG: cycle pwm=70 target=70 sys=45 nvme=30 hdd=35 rpm=1012 winner=sys duties=sys:70,nvme:70,hdd:70
2026-01-04T10:08:16-08:00 nas fan-daemon[812]: DEBUG: cycle pwm=134 target=134 sys=46 nvme=50 hdd=-273 rpm=1650 winner=nvme duties=sys:70,nvme:134,hdd:70
2026-01-04T10:08:26-08:00 nas kernel: nvme nvme0: cycle pwm=99 sys=1
"""


def _ts(stamp: str) -> float:
    return datetime.fromisoformat(stamp).timestamp()


class TestParseLogs:
    def test_cycle_lines(self) -> None:
        data = parse_logs(JOURNAL)
        assert list(data["timestamps"]) == [
            _ts("2026-01-04T10:08:06-08:00"),
            _ts("2026-01-04T10:08:16-08:00"),
        ]
        assert list(data["pwm"]) == [70.0, 134.0]
        assert list(data["sys"]) == [45.0, 46.0]
        assert list(data["nvme"]) == [30.0, 50.0]

    def test_unknown_zone_is_nan(self) -> None:
        data = parse_logs(JOURNAL)
        assert data["hdd"][0] == 35.0
        assert math.isnan(data["hdd"][1])

    def test_no_cycle_lines(self) -> None:
        assert parse_logs("2026-01-04T10:08:06-08:00 nas fan-daemon[1]: INFO: Starting\n") == {}
        assert parse_logs("") == {}


class TestParseSince:
    def test_relative(self) -> None:
        now = time.time()
        assert parse_since("2 hours") == pytest.approx(now - 7200, abs=5)
        assert parse_since("30m") == pytest.approx(now - 1800, abs=5)
        assert parse_since("1d") == pytest.approx(now - 86400, abs=5)

    def test_absolute(self) -> None:
        assert parse_since("2026-01-04 10:30:00") == datetime(
            2026, 1, 4, 10, 30
        ).timestamp()

    def test_invalid(self) -> None:
        with pytest.raises(ValueError, match="Expected relative time"):
            _ = parse_since("yesterday-ish")


class TestMergeData:
    @staticmethod
    def _data(ts: list[float], pwm: list[float]) -> dict[str, np.ndarray]:
        n = len(ts)
        return {
            "timestamps": np.array(ts),
            "pwm": np.array(pwm),
            "sys": np.full(n, 40.0),
            "nvme": np.full(n, 30.0),
            "hdd": np.full(n, np.nan),
        }

    def test_empty_sides(self) -> None:
        data = self._data([1.0], [70.0])
        assert merge_data({}, data) is data
        assert merge_data(data, {}) is data

    def test_dedup_and_sort(self) -> None:
        old = self._data([10.0, 20.0], [70.0, 80.0])
        new = self._data([5.0, 20.0, 30.0], [60.0, 99.0, 90.0])
        merged = merge_data(old, new)
        assert list(merged["timestamps"]) == [5.0, 10.0, 20.0, 30.0]
        # the old sample wins for a duplicate timestamp
        assert list(merged["pwm"]) == [60.0, 70.0, 80.0, 90.0]
        assert len(merged["hdd"]) == 4

    def test_nothing_new(self) -> None:
        old = self._data([10.0, 20.0], [70.0, 80.0])
        assert merge_data(old, self._data([20.0], [1.0])) is old


class TestNpz:
    def test_missing(self, tmp_path: pathlib.Path) -> None:
        assert load_npz(tmp_path / "missing.npz") == {}

    def test_save_and_load(self, tmp_path: pathlib.Path) -> None:
        data = parse_logs(JOURNAL)
        path = tmp_path / "results" / "temps.npz"
        save_npz(data, path)
        loaded = load_npz(path)
        assert sorted(loaded) == sorted(data)
        np.testing.assert_array_equal(loaded["pwm"], data["pwm"])
