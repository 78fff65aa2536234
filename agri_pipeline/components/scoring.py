"""
Quality scoring component for the agricultural sensor quality pipeline.

Turns detection flags into percentages, a weighted score and a category, and
writes the resulting reports. Scoring is a pure function of the batch, so
scoring the same batch twice always gives the same result.
"""

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Union

import pandas as pd

from agri_pipeline import __version__
from agri_pipeline.components.base import ScoringComponent
from agri_pipeline.config import PipelineConfig, ScoringSettings, ScoringWeights
from agri_pipeline.models import QualityReport, TypeQualityMetrics
from agri_pipeline.utils import get_logger, atomic_write_text, ComputationError, PersistenceError


REPORT_FILENAME = "data_quality_report.csv"


def percentage(count: int, total: int) -> float:
    """``count / total * 100``, or 0 for an empty batch."""
    if total <= 0:
        return 0.0
    return count / total * 100.0


def quality_score(missing_pct: float, anomaly_pct: float, outlier_pct: float,
                  temporal_pct: float, weights: ScoringWeights) -> float:
    """
    Weighted quality score, floored at 0 and rounded to 2 decimals.

    Args:
        missing_pct: Percentage of readings with a missing value
        anomaly_pct: Percentage of composite anomalies
        outlier_pct: Percentage of statistical outliers
        temporal_pct: Percentage of temporal gap anomalies
        weights: Penalty weight per percentage

    Returns:
        Score between 0 and 100
    """
    score = 100.0 - (
        weights.missing * missing_pct
        + weights.anomaly * anomaly_pct
        + weights.outlier * outlier_pct
        + weights.temporal * temporal_pct
    )
    return round(max(0.0, score), 2)


def categorize(score: float, settings: ScoringSettings) -> str:
    """Name of the highest band whose inclusive lower bound the score reaches."""
    for band in settings.categories:
        if score >= band.min_score:
            return band.name
    return settings.categories[-1].name


def describe_bands(settings: ScoringSettings) -> str:
    """Human readable band legend built from the configured bands."""
    return ", ".join(f">={band.min_score:g} {band.name}" for band in settings.categories)


def build_report(source: str, total: int, missing: int, anomaly: int, outlier: int, temporal: int,
                 settings: ScoringSettings, metrics_by_type: Dict[str, TypeQualityMetrics] = None,
                 generated_at: datetime = None) -> QualityReport:
    """
    Score a batch from its flag counts.

    An empty batch scores 0 with the configured "no data" category.
    """
    generated_at = generated_at or datetime.now(timezone.utc)
    metrics_by_type = metrics_by_type or {}

    if total == 0:
        return QualityReport(
            source=source,
            total_records=0,
            quality_score=0.0,
            category=settings.no_data_category,
            metrics_by_type=metrics_by_type,
            generated_at=generated_at
        )

    missing_pct = percentage(missing, total)
    anomaly_pct = percentage(anomaly, total)
    outlier_pct = percentage(outlier, total)
    temporal_pct = percentage(temporal, total)

    score = quality_score(missing_pct, anomaly_pct, outlier_pct, temporal_pct, settings.weights)

    return QualityReport(
        source=source,
        total_records=total,
        missing_count=missing,
        anomaly_count=anomaly,
        outlier_count=outlier,
        temporal_count=temporal,
        missing_pct=round(missing_pct, 2),
        anomaly_pct=round(anomaly_pct, 2),
        outlier_pct=round(outlier_pct, 2),
        temporal_pct=round(temporal_pct, 2),
        quality_score=score,
        category=categorize(score, settings),
        metrics_by_type=metrics_by_type,
        generated_at=generated_at
    )


class QualityScorer(ScoringComponent):
    """Scores flagged batches and writes quality reports."""

    def __init__(self, config: PipelineConfig):
        """
        Initialize quality scorer.

        Args:
            config: Pipeline configuration with scoring weights and bands
        """
        super().__init__(config)
        self.logger = get_logger(__name__)
        self.settings = config.scoring

    def execute(self, flagged: pd.DataFrame, source: str) -> QualityReport:
        """
        Score a completed batch.

        Args:
            flagged: Readings carrying detection flags
            source: File name the batch came from

        Returns:
            Quality report for the batch
        """
        counts = self._count_flags(flagged)
        report = build_report(
            source=source,
            settings=self.settings,
            metrics_by_type=self._metrics_by_type(flagged),
            **counts
        )

        self.logger.info(
            f"   {source}: quality score {report.quality_score:.2f} ({report.category}), "
            f"{report.total_records} records"
        )
        return report

    def merge(self, reports: Iterable[QualityReport], source: str = "run") -> QualityReport:
        """Combine per-file reports into one report over all of their readings."""
        totals = {"total": 0, "missing": 0, "anomaly": 0, "outlier": 0, "temporal": 0}
        by_type: Dict[str, Dict[str, int]] = {}

        for report in reports:
            totals["total"] += report.total_records
            totals["missing"] += report.missing_count
            totals["anomaly"] += report.anomaly_count
            totals["outlier"] += report.outlier_count
            totals["temporal"] += report.temporal_count

            for reading_type, metrics in report.metrics_by_type.items():
                acc = by_type.setdefault(reading_type, {
                    "total_records": 0, "missing_count": 0, "anomaly_count": 0,
                    "outlier_count": 0, "temporal_count": 0
                })
                acc["total_records"] += metrics.total_records
                acc["missing_count"] += metrics.missing_count
                acc["anomaly_count"] += metrics.anomaly_count
                acc["outlier_count"] += metrics.outlier_count
                acc["temporal_count"] += metrics.temporal_count

        metrics_by_type = {
            reading_type: self._type_metrics(**acc) for reading_type, acc in sorted(by_type.items())
        }
        return build_report(source=source, settings=self.settings, metrics_by_type=metrics_by_type, **totals)

    def _count_flags(self, flagged: pd.DataFrame) -> Dict[str, int]:
        if flagged.empty:
            return {"total": 0, "missing": 0, "anomaly": 0, "outlier": 0, "temporal": 0}

        try:
            return {
                "total": len(flagged),
                "missing": int(flagged['has_missing_value'].sum()),
                "anomaly": int(flagged['anomalous_reading'].sum()),
                "outlier": int(flagged['is_statistical_outlier'].sum()),
                "temporal": int(flagged['is_temporal_anomaly'].sum())
            }
        except KeyError as e:
            raise ComputationError(f"Batch is missing detection flag column {e}") from e

    def _metrics_by_type(self, flagged: pd.DataFrame) -> Dict[str, TypeQualityMetrics]:
        if flagged.empty:
            return {}

        metrics = {}
        for reading_type, group in flagged.groupby('reading_type', sort=True):
            metrics[str(reading_type)] = self._type_metrics(
                total_records=len(group),
                missing_count=int(group['has_missing_value'].sum()),
                anomaly_count=int(group['anomalous_reading'].sum()),
                outlier_count=int(group['is_statistical_outlier'].sum()),
                temporal_count=int(group['is_temporal_anomaly'].sum())
            )
        return metrics

    @staticmethod
    def _type_metrics(total_records: int, missing_count: int, anomaly_count: int,
                      outlier_count: int, temporal_count: int) -> TypeQualityMetrics:
        return TypeQualityMetrics(
            total_records=total_records,
            missing_count=missing_count,
            anomaly_count=anomaly_count,
            outlier_count=outlier_count,
            temporal_count=temporal_count,
            missing_percentage=round(percentage(missing_count, total_records), 2),
            anomaly_percentage=round(percentage(anomaly_count, total_records), 2)
        )

    def write_json_report(self, report: QualityReport, path: Union[str, Path]) -> Path:
        """
        Atomically write a report as JSON.

        Raises:
            PersistenceError: If the report cannot be written
        """
        path = Path(path)
        try:
            atomic_write_text(path, report.model_dump_json(indent=2))
        except OSError as e:
            raise PersistenceError(f"Failed to write quality report {path}: {e}") from e
        return path

    def write_csv_report(self, report: QualityReport, path: Union[str, Path] = None) -> Path:
        """
        Atomically write ``data_quality_report.csv``, one row per metric.

        Raises:
            PersistenceError: If the report cannot be written
        """
        path = Path(path) if path else Path(self.config.paths.reports_dir) / REPORT_FILENAME

        report_df = pd.DataFrame(self.report_rows(report))
        report_df["report_timestamp"] = report.generated_at.isoformat()
        report_df["pipeline_version"] = __version__

        try:
            atomic_write_text(path, report_df.to_csv(index=False))
        except OSError as e:
            raise PersistenceError(f"Failed to write quality report {path}: {e}") from e

        self.logger.info(f"   Generated quality report: {path}")
        return path

    def report_rows(self, report: QualityReport) -> List[Dict[str, Any]]:
        """Flatten a report into ``category/metric/value/threshold/status/details`` rows."""
        rows = [
            {
                "category": "overall",
                "metric": "total_records",
                "value": report.total_records,
                "threshold": None,
                "status": "info",
                "details": f"Total records scored: {report.total_records}"
            },
            {
                "category": "overall",
                "metric": "quality_score",
                "value": report.quality_score,
                "threshold": None,
                "status": "info",
                "details": f"Category: {report.category} ({describe_bands(self.settings)})"
            }
        ]

        flag_rows = [
            ("missing_values", "missing_percentage", report.missing_pct, report.missing_count, self.settings.weights.missing),
            ("anomalies", "anomaly_percentage", report.anomaly_pct, report.anomaly_count, self.settings.weights.anomaly),
            ("outliers", "outlier_percentage", report.outlier_pct, report.outlier_count, self.settings.weights.outlier),
            ("time_gaps", "temporal_percentage", report.temporal_pct, report.temporal_count, self.settings.weights.temporal),
        ]
        for category, metric, pct, count, weight in flag_rows:
            rows.append({
                "category": category,
                "metric": metric,
                "value": pct,
                "threshold": None,
                "status": "pass" if count == 0 else "warning",
                "details": f"{count} out of {report.total_records} records, weight {weight}"
            })

        for reading_type, metrics in report.metrics_by_type.items():
            rows.append({
                "category": "missing_values",
                "metric": f"{reading_type}_missing_percentage",
                "value": metrics.missing_percentage,
                "threshold": None,
                "status": "pass" if metrics.missing_count == 0 else "warning",
                "details": f"{metrics.missing_count} out of {metrics.total_records} records"
            })
            rows.append({
                "category": "anomalies",
                "metric": f"{reading_type}_anomaly_percentage",
                "value": metrics.anomaly_percentage,
                "threshold": None,
                "status": "pass" if metrics.anomaly_count == 0 else "warning",
                "details": f"{metrics.anomaly_count} out of {metrics.total_records} records"
            })

        return rows

    def log_report(self, report: QualityReport) -> None:
        """Log a report in summary form."""
        self.logger.info("=== Quality Summary ===")
        self.logger.info(f"Source: {report.source}")
        self.logger.info(f"Total Records: {report.total_records}")
        self.logger.info(f"Missing: {report.missing_count} ({report.missing_pct:.2f}%)")
        self.logger.info(f"Anomalies: {report.anomaly_count} ({report.anomaly_pct:.2f}%)")
        self.logger.info(f"Outliers: {report.outlier_count} ({report.outlier_pct:.2f}%)")
        self.logger.info(f"Temporal Gaps: {report.temporal_count} ({report.temporal_pct:.2f}%)")
        self.logger.info(f"Quality Score: {report.quality_score:.2f} ({report.category})")


def load_json_report(path: Union[str, Path]) -> QualityReport:
    """Read a report previously written by ``write_json_report``."""
    with open(path, 'r') as f:
        return QualityReport.model_validate(json.load(f))
