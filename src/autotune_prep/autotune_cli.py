#!/usr/bin/env python3
"""Autotune Prep CLI - Command-line interface for retrospective categorization.

This tool provides access to the bucketing, categorization and IOB features:
- Glucose bucketing preview
- Full categorization with rebalancing and CSV export
- IOB / activity breakdown at a point in time

Can be used as:
- Installed command: autotune-prep <command>
- Python module: python -m autotune_prep.autotune_cli <command>
- Direct script: python scripts/autotune_cli.py <command>
"""

import json
import logging
from datetime import timezone, tzinfo
from pathlib import Path
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import typer
import polars as pl
from rich.console import Console
from rich.table import Table

from autotune_prep.categorize import Categorizer
from autotune_prep.dataset import CategorizedDataset
from autotune_prep.glucose import bucketize
from autotune_prep.interface.autotune_interface import (
    Category,
    CategorizationWarning,
    MalformedDataError,
    MalformedScheduleError,
    ZeroValidInputError,
    to_datetime,
)
from autotune_prep.iob import InsulinHistory, insulin_doses, iob_total, resolve_insulin_action
from autotune_prep.log_config import configure_logging
from autotune_prep.profile import Profile, basal_lookup, max_basal_lookup, max_daily_basal
from autotune_prep.treatments import to_treatments

app = typer.Typer(
    name="autotune-prep",
    help="Autotune Prep CLI - Categorize glucose history for basal, ISF and carb ratio tuning",
    add_completion=False,
)
console = Console()
logger = logging.getLogger(__name__)

OUTPUT_FILES = {
    Category.CSF: "csf.csv",
    Category.ISF: "isf.csv",
    Category.UAM: "uam.csv",
    Category.BASAL: "basal.csv",
}


# ===== Categorization Commands =====

@app.command()
def categorize(
    glucose_file: Path = typer.Argument(..., help="Glucose entries JSON"),
    treatments_file: Path = typer.Argument(..., help="Treatments (carbs) JSON"),
    profile_file: Path = typer.Argument(..., help="Profile JSON being tuned"),
    pump_history_file: Optional[Path] = typer.Option(
        None, "--pump-history", help="Pump history JSON for IOB (defaults to treatments)"
    ),
    pump_profile_file: Optional[Path] = typer.Option(
        None, "--pump-profile", help="Profile JSON the pump actually ran (defaults to profile)"
    ),
    tz_name: Optional[str] = typer.Option(
        None, "--tz", help="Time zone for schedule lookups (defaults to profile timezone or UTC)"
    ),
    uam_as_basal: bool = typer.Option(
        False, "--categorize-uam-as-basal", help="Categorize all unannounced meals as basal"
    ),
    output_dir: Optional[Path] = typer.Option(None, "--output-dir", "-o", help="Write per-category CSVs here"),
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Logging level (default from AUTOTUNE_LOG_LEVEL)"),
) -> None:
    """Bucket, categorize and rebalance a glucose history."""
    configure_logging(log_level)
    try:
        glucose = _load_json(glucose_file)
        treatments = _load_json(treatments_file)
        profile_data = _load_json(profile_file)
        pump_history = _load_json(pump_history_file) if pump_history_file else None
        pump_basal = None
        if pump_profile_file:
            pump_basal = _load_json(pump_profile_file).get("basalprofile")
        profile = Profile.from_dict(profile_data, pump_basal_records=pump_basal)
        tz = _resolve_tz(tz_name or profile.extra.get("timezone"))

        categorizer = Categorizer(categorize_uam_as_basal=uam_as_basal, tz=tz)
        with console.status("[bold green]Categorizing..."):
            dataset = categorizer.run(glucose, treatments, profile, pump_history)

        if dataset.is_empty:
            raise ZeroValidInputError("Not enough glucose or treatment data to categorize")

        console.print(f"\n[green]✓[/green] Categorized {sum(dataset.counts().values())} buckets")
        _print_profile_summary(profile)
        _print_dataset_summary(dataset)

        if output_dir:
            _write_outputs(dataset, output_dir)

    except (MalformedDataError, MalformedScheduleError, ZeroValidInputError) as e:
        console.print(f"[red]✗ Input error: {e}[/red]")
        raise typer.Exit(1)
    except typer.Exit:
        raise
    except Exception as e:
        console.print(f"[red]✗ Error: {e}[/red]")
        raise typer.Exit(1)


@app.command()
def buckets(
    glucose_file: Path = typer.Argument(..., help="Glucose entries JSON"),
    preview: int = typer.Option(0, "--preview", "-p", help="Show the N newest buckets"),
) -> None:
    """Bucket glucose readings into ~5 minute buckets."""
    try:
        glucose = _load_json(glucose_file)
        with console.status(f"[bold green]Bucketing {glucose_file.name}..."):
            result = bucketize(glucose)
        if not result:
            raise ZeroValidInputError("No valid glucose readings")

        merged = sum(1 for b in result if b.sample_count > 1)
        table = Table(show_header=False, box=None)
        table.add_column("Metric", style="cyan")
        table.add_column("Value", style="white")
        table.add_row("Readings", f"{len(glucose):,}")
        table.add_row("Buckets", f"{len(result):,}")
        table.add_row("Merged Buckets", f"{merged:,}")
        table.add_row("Time Range", f"{result[-1].timestamp} to {result[0].timestamp}")
        console.print(table)

        if preview:
            frame = pl.DataFrame(
                [{"datetime": b.timestamp, "glucose": b.glucose, "readings": b.sample_count}
                 for b in result[:preview]]
            )
            console.print("\n[bold]Newest Buckets:[/bold]")
            console.print(frame)

    except (MalformedDataError, ZeroValidInputError) as e:
        console.print(f"[red]✗ Input error: {e}[/red]")
        raise typer.Exit(1)
    except typer.Exit:
        raise
    except Exception as e:
        console.print(f"[red]✗ Error: {e}[/red]")
        raise typer.Exit(1)


@app.command()
def iob(
    pump_history_file: Path = typer.Argument(..., help="Pump history JSON"),
    profile_file: Path = typer.Argument(..., help="Profile JSON"),
    at: str = typer.Option(..., "--at", help="ISO-8601 time to evaluate IOB at"),
    tz_name: Optional[str] = typer.Option(None, "--tz", help="Time zone for basal lookups"),
) -> None:
    """Show insulin on board and activity at a point in time."""
    try:
        time = to_datetime(at)
        if time is None:
            raise MalformedDataError(f"Unreadable time: {at}")
        history = InsulinHistory(to_treatments(_load_json(pump_history_file)))
        profile = Profile.from_dict(_load_json(profile_file))
        tz = _resolve_tz(tz_name or profile.extra.get("timezone"))
        action = resolve_insulin_action(
            profile.curve, profile.dia, profile.use_custom_peak_time, profile.insulin_peak_time
        )
        doses = insulin_doses(
            history.treatments,
            lambda t: basal_lookup(profile.pump_basal_profile, t.astimezone(tz)),
        )
        result = iob_total(doses, time, action)

        table = Table(show_header=False, box=None)
        table.add_column("Metric", style="cyan")
        table.add_column("Value", style="white")
        table.add_row("Time", str(result.time))
        table.add_row("Curve", f"{action.curve.value} (DIA {action.dia:g}h, peak {action.peak:g}m)")
        table.add_row("IOB", f"{result.iob:.3f} U")
        table.add_row("  Basal IOB", f"{result.basal_iob:.3f} U")
        table.add_row("  Bolus IOB", f"{result.bolus_iob:.3f} U")
        table.add_row("Activity", f"{result.activity:.4f} U/min")
        table.add_row("Net Basal Insulin", f"{result.net_basal_insulin:.3f} U")
        table.add_row("Bolus Insulin", f"{result.bolus_insulin:.3f} U")
        console.print(table)

    except (MalformedDataError, MalformedScheduleError) as e:
        console.print(f"[red]✗ Input error: {e}[/red]")
        raise typer.Exit(1)
    except Exception as e:
        console.print(f"[red]✗ Error: {e}[/red]")
        raise typer.Exit(1)


# ===== Helper Functions =====

def _load_json(path: Path) -> Any:
    if not path.exists():
        raise MalformedDataError(f"File not found: {path}")
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        raise MalformedDataError(f"{path} is not valid JSON: {e}") from e


def _resolve_tz(name: Optional[str]) -> tzinfo:
    if not name:
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise MalformedDataError(f"Unknown time zone: {name}") from e


def _print_profile_summary(profile: Profile) -> None:
    """Print the pump limits the tuning works within."""
    max_basal = max_basal_lookup(profile.extra)
    table = Table(show_header=False, box=None)
    table.add_column("Setting", style="cyan")
    table.add_column("Value", style="white")
    table.add_row("Max Daily Basal", f"{max_daily_basal(profile.basal_profile):g} U/hr")
    table.add_row("Max Basal", f"{max_basal:g} U/hr" if max_basal is not None else "not set")
    table.add_row("Max COB", f"{profile.max_cob:g} g")
    console.print(table)


def _print_dataset_summary(dataset: CategorizedDataset) -> None:
    """Print category counts, CR windows and warnings."""
    console.print("\n[bold]Categories:[/bold]")
    table = Table(show_header=False, box=None)
    table.add_column("Category", style="cyan")
    table.add_column("Buckets", style="white")
    for category, count in dataset.counts().items():
        table.add_row(str(category), f"{count:,}")
    table.add_row("CR windows", f"{len(dataset.cr_data):,}")
    console.print(table)

    if dataset.cr_data:
        cr_table = Table()
        cr_table.add_column("Start", style="cyan")
        cr_table.add_column("Minutes", style="yellow")
        cr_table.add_column("Carbs", style="green")
        cr_table.add_column("Insulin", style="green")
        cr_table.add_column("BG", style="white")
        for datum in dataset.cr_data:
            cr_table.add_row(
                str(datum.initial_carb_time),
                str(datum.elapsed_minutes),
                f"{datum.carbs:g}",
                f"{datum.insulin:.3f}",
                f"{datum.initial_bg:g} → {datum.end_bg:g}",
            )
        console.print(cr_table)

    if dataset.warnings:
        console.print("\n[yellow]Warnings:[/yellow]")
        for warning in CategorizationWarning:
            if dataset.warnings & warning:
                console.print(f"  [yellow]⚠[/yellow] {warning.name}")


def _write_outputs(dataset: CategorizedDataset, output_dir: Path) -> None:
    output_dir.mkdir(parents=True, exist_ok=True)
    for category, filename in OUTPUT_FILES.items():
        dataset.to_frame(category).write_csv(output_dir / filename)
    dataset.cr_frame().write_csv(output_dir / "cr.csv")
    console.print(f"\n[green]✓[/green] Saved to: {output_dir}")


# ===== Main Entry Point =====

def main() -> None:
    """Main entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
