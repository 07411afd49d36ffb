"""Integration tests for the autotune-prep CLI tool.

Tests the CLI by actually invoking it via subprocess, simulating real usage.
Inputs are synthetic JSON files written to a temporary directory.
"""

import json
import subprocess
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, List

import polars as pl
import pytest

BASE_TIME = datetime(2024, 1, 1, 0, 0, 0, tzinfo=timezone.utc)


def run_cli_command(args: List[str]) -> subprocess.CompletedProcess:
    """Run CLI command via subprocess.

    Args:
        args: Command arguments (without 'autotune-prep')

    Returns:
        CompletedProcess with stdout/stderr/returncode
    """
    # Run as module to avoid installation requirement
    cmd = [sys.executable, "-m", "autotune_prep.autotune_cli"] + args
    result = subprocess.run(
        cmd,
        capture_output=True,
        text=True,
        cwd=Path(__file__).parent.parent,
    )
    return result


def write_json(path: Path, payload: Any) -> Path:
    path.write_text(json.dumps(payload), encoding="utf-8")
    return path


@pytest.fixture
def inputs(tmp_path: Path):
    """Glucose with an announced meal and an unannounced rise, plus treatments and profile."""
    values = [120] * 40 + [130 + 10 * i for i in range(8)] + [200] * 40
    glucose = [
        {"dateString": (BASE_TIME + timedelta(minutes=5 * i)).isoformat(), "sgv": v}
        for i, v in enumerate(values)
    ]
    treatments = [
        {"created_at": (BASE_TIME + timedelta(minutes=61)).isoformat(), "carbs": 40},
        {"created_at": (BASE_TIME + timedelta(minutes=66)).isoformat(), "insulin": 4},
    ]
    profile = {
        "carb_ratio": 10,
        "isfProfile": {"sensitivities": [{"offset": 0, "sensitivity": 50}]},
        "basalprofile": [{"minutes": 0, "rate": 1.0}],
        "dia": 5,
        "curve": "rapid-acting",
        "min_5m_carbimpact": 8,
        "maxBasal": 3,
    }
    return {
        "glucose": write_json(tmp_path / "glucose.json", glucose),
        "treatments": write_json(tmp_path / "treatments.json", treatments),
        "profile": write_json(tmp_path / "profile.json", profile),
        "dir": tmp_path,
    }


class TestCLICategorize:
    """Test CLI categorize command."""

    def test_categorize_summary(self, inputs) -> None:
        result = run_cli_command([
            "categorize", str(inputs["glucose"]), str(inputs["treatments"]), str(inputs["profile"]),
        ])
        assert result.returncode == 0, result.stdout + result.stderr
        assert "Categorized" in result.stdout
        assert "CR windows" in result.stdout
        assert "Max Daily Basal" in result.stdout
        assert "3 U/hr" in result.stdout

    def test_categorize_writes_csvs(self, inputs) -> None:
        output_dir = inputs["dir"] / "out"
        result = run_cli_command([
            "categorize", str(inputs["glucose"]), str(inputs["treatments"]), str(inputs["profile"]),
            "--output-dir", str(output_dir), "--tz", "UTC",
        ])
        assert result.returncode == 0, result.stdout + result.stderr
        for name in ["csf.csv", "isf.csv", "uam.csv", "basal.csv", "cr.csv"]:
            assert (output_dir / name).exists()

        basal = pl.read_csv(output_dir / "basal.csv")
        assert "deviation" in basal.columns
        assert set(basal["category"].to_list()) == {"basal"}

        cr = pl.read_csv(output_dir / "cr.csv")
        assert len(cr) == 1
        assert cr["carbs"][0] == 40

    def test_categorize_uam_as_basal(self, inputs) -> None:
        output_dir = inputs["dir"] / "out_uam"
        result = run_cli_command([
            "categorize", str(inputs["glucose"]), str(inputs["treatments"]), str(inputs["profile"]),
            "--categorize-uam-as-basal", "--output-dir", str(output_dir),
        ])
        assert result.returncode == 0, result.stdout + result.stderr
        assert pl.read_csv(output_dir / "uam.csv").is_empty()
        assert "UAM_AS_BASAL" in result.stdout

    def test_too_little_data(self, inputs) -> None:
        short = write_json(inputs["dir"] / "short.json", [{"dateString": BASE_TIME.isoformat(), "sgv": 100}])
        result = run_cli_command([
            "categorize", str(short), str(inputs["treatments"]), str(inputs["profile"]),
        ])
        assert result.returncode == 1
        assert "Input error" in result.stdout

    def test_bad_profile(self, inputs) -> None:
        bad = write_json(inputs["dir"] / "bad_profile.json", {"carb_ratio": 10, "isfProfile": []})
        result = run_cli_command([
            "categorize", str(inputs["glucose"]), str(inputs["treatments"]), str(bad),
        ])
        assert result.returncode == 1
        assert "Input error" in result.stdout

    def test_unknown_timezone(self, inputs) -> None:
        result = run_cli_command([
            "categorize", str(inputs["glucose"]), str(inputs["treatments"]), str(inputs["profile"]),
            "--tz", "Not/AZone",
        ])
        assert result.returncode == 1


class TestCLIBuckets:
    """Test CLI buckets command."""

    def test_buckets(self, inputs) -> None:
        result = run_cli_command(["buckets", str(inputs["glucose"]), "--preview", "3"])
        assert result.returncode == 0, result.stdout + result.stderr
        assert "Buckets" in result.stdout
        assert "Newest Buckets" in result.stdout

    def test_no_valid_readings(self, inputs) -> None:
        empty = write_json(inputs["dir"] / "empty.json", [])
        result = run_cli_command(["buckets", str(empty)])
        assert result.returncode == 1


class TestCLIIob:
    """Test CLI iob command."""

    def test_iob_after_bolus(self, inputs) -> None:
        at = (BASE_TIME + timedelta(minutes=96)).isoformat()
        result = run_cli_command(["iob", str(inputs["treatments"]), str(inputs["profile"]), "--at", at])
        assert result.returncode == 0, result.stdout + result.stderr
        assert "IOB" in result.stdout
        assert "rapid-acting" in result.stdout

    def test_bad_time(self, inputs) -> None:
        result = run_cli_command(["iob", str(inputs["treatments"]), str(inputs["profile"]), "--at", "yesterday"])
        assert result.returncode == 1


class TestCLIErrors:
    """Test CLI error handling."""

    def test_nonexistent_file(self, inputs) -> None:
        result = run_cli_command([
            "categorize", "nonexistent.json", str(inputs["treatments"]), str(inputs["profile"]),
        ])
        assert result.returncode == 1
        assert "Input error" in result.stdout

    def test_invalid_command(self) -> None:
        result = run_cli_command(["invalid_command"])
        assert result.returncode != 0


class TestCLIHelp:
    """Test CLI help output."""

    def test_main_help(self) -> None:
        result = run_cli_command(["--help"])
        assert result.returncode == 0
        assert "categorize" in result.stdout
        assert "buckets" in result.stdout

    def test_command_help(self) -> None:
        result = run_cli_command(["categorize", "--help"])
        assert result.returncode == 0
        assert "--output-dir" in result.stdout
