#!/usr/bin/env python3
"""
Synthetic data generator for the agricultural sensor quality pipeline.

- Creates one raw Parquet file per date in data/raw/ with hourly readings for
  every sensor and reading type.
- Injects the cases the pipeline flags: out-of-range values, statistical
  spikes, missing values, a sensor that goes silent mid-day, duplicates and
  out-of-range battery levels.
- Optionally writes schema edge-case files (missing column, extra column,
  wrong type, empty file) to exercise file-scoped failures.

Usage:
  python scripts/generate_synthetic_raw.py \
    --dates 2023-06-02 2023-06-03 2023-06-04 \
    --sensors 5 \
    --include-edge-cases
"""

import argparse
from pathlib import Path
from typing import Dict, List, Tuple

import numpy as np
import pandas as pd
import yaml


COLUMNS = ["sensor_id", "timestamp", "reading_type", "value", "battery_level"]

# (mean, standard deviation) of a healthy reading per type
PROFILES: Dict[str, Tuple[float, float]] = {
    "temperature": (24.0, 4.0),
    "humidity": (55.0, 10.0),
    "soil_moisture": (35.0, 6.0),
    "light_intensity": (30000.0, 8000.0),
}


def load_config(project_root: Path) -> Tuple[Path, Dict[str, Dict[str, float]]]:
    """Load config/default.yaml and return the data_raw path and value ranges."""
    cfg_path = project_root / "config/default.yaml"
    with open(cfg_path, "r") as f:
        cfg = yaml.safe_load(f)

    data_raw_path = Path(cfg["paths"]["data_raw"])
    if not data_raw_path.is_absolute():
        data_raw_path = (project_root / data_raw_path).resolve()

    return data_raw_path, cfg.get("ranges", {})


def synth_valid_df(date_str: str, sensors: int, ranges: Dict[str, Dict[str, float]],
                   seed: int = 42) -> pd.DataFrame:
    """Hourly readings for one day with injected anomalies, missing values and duplicates."""
    rng = np.random.default_rng(seed)
    sensor_ids = [f"sensor_{i}" for i in range(1, sensors + 1)]
    timestamps = pd.date_range(f"{date_str} 00:00:00", periods=24, freq="h")

    rows: List[dict] = []
    for sensor_id in sensor_ids:
        # The last sensor goes silent after the morning
        sensor_times = timestamps[:8] if sensor_id == sensor_ids[-1] else timestamps
        battery = float(rng.uniform(40, 100))

        for ts in sensor_times:
            battery = max(battery - float(rng.uniform(0, 0.5)), 0.0)
            for reading_type, (mean, sd) in PROFILES.items():
                value = float(rng.normal(mean, sd))
                roll = rng.random()
                if roll < 0.03:
                    value = np.nan
                elif roll < 0.05:
                    type_range = ranges.get(reading_type, {})
                    value = float(type_range.get("max", mean + 10 * sd)) + abs(value)
                elif roll < 0.06:
                    value = mean + 8 * sd

                rows.append({
                    "sensor_id": sensor_id,
                    "timestamp": ts,
                    "reading_type": reading_type,
                    "value": value,
                    "battery_level": battery,
                })

    df = pd.DataFrame(rows, columns=COLUMNS)

    # A few invalid battery readings, logged but not flagged by the pipeline
    bad_battery = rng.choice(df.index, size=min(3, len(df)), replace=False)
    df.loc[bad_battery, "battery_level"] = 125.0

    # Duplicate rows to exercise de-duplication
    dup_indices = rng.choice(df.index, size=min(4, len(df)), replace=False)
    df = pd.concat([df, df.loc[dup_indices]], ignore_index=True)

    return df[COLUMNS]


def write_parquet(df: pd.DataFrame, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    df.to_parquet(path, index=False)
    print(f"Wrote {len(df)} rows to {path}")


def synth_missing_columns_df(date_str: str, sensors: int, ranges, seed: int = 43) -> pd.DataFrame:
    """DataFrame without the 'battery_level' column."""
    return synth_valid_df(date_str, sensors, ranges, seed).drop(columns=["battery_level"])


def synth_extra_columns_df(date_str: str, sensors: int, ranges, seed: int = 44) -> pd.DataFrame:
    """DataFrame with an extra 'location' column, which ingestion drops."""
    base = synth_valid_df(date_str, sensors, ranges, seed)
    base["location"] = np.random.default_rng(seed).choice(["field_a", "field_b", "greenhouse"], size=len(base))
    return base


def synth_wrong_types_df(date_str: str, sensors: int, ranges, seed: int = 45) -> pd.DataFrame:
    """DataFrame whose 'value' column is string-typed."""
    base = synth_valid_df(date_str, sensors, ranges, seed)
    base["value"] = base["value"].astype(str)
    return base


def synth_empty_df(date_str: str, sensors: int, ranges, seed: int = 46) -> pd.DataFrame:
    """Correct schema, zero rows."""
    return synth_valid_df(date_str, sensors, ranges, seed).iloc[0:0]


def main():
    parser = argparse.ArgumentParser(description="Generate synthetic raw Parquet files with edge cases")
    parser.add_argument("--dates", nargs="*", default=["2023-06-02", "2023-06-03", "2023-06-04"],
                        help="List of YYYY-MM-DD dates for valid files")
    parser.add_argument("--sensors", type=int, default=5, help="Sensors per file")
    parser.add_argument("--include-edge-cases", action="store_true", help="Also write invalid edge-case files")
    args = parser.parse_args()

    project_root = Path(__file__).resolve().parent.parent
    data_raw_path, ranges = load_config(project_root)

    for i, date_str in enumerate(args.dates):
        df = synth_valid_df(date_str, args.sensors, ranges, seed=42 + i)
        write_parquet(df, data_raw_path / f"{date_str}.parquet")

    if args.include_edge_cases:
        ec_specs = [
            (synth_missing_columns_df, "_missing_columns"),
            (synth_extra_columns_df, "_extra_columns"),
            (synth_wrong_types_df, "_wrong_types"),
            (synth_empty_df, "_empty"),
        ]
        last_date = pd.to_datetime(args.dates[-1]) if args.dates else pd.to_datetime("2023-06-04")
        for j, (fn, suffix) in enumerate(ec_specs, start=1):
            date_str = (last_date + pd.Timedelta(days=j)).strftime("%Y-%m-%d")
            df_ec = fn(date_str, args.sensors, ranges, seed=101 + j)
            write_parquet(df_ec, data_raw_path / f"{date_str}{suffix}.parquet")

    print("\nAll synthetic files generated in:", data_raw_path)


if __name__ == "__main__":
    main()
