"""
Main pipeline orchestrator for agricultural sensor quality processing.

Each raw file moves through
validate -> normalize -> calibrate -> aggregate -> detect -> score -> persist,
on a pool of worker threads. A file is checkpointed only after its output, its
quality report and the rolling state that includes it are on disk, so a crash
at any point leaves it eligible for reprocessing on the next run.
"""

import argparse
import shutil
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor, wait
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import pandas as pd

from agri_pipeline.config import PipelineConfig
from agri_pipeline.models import (
    CheckpointSummary,
    ExportResult,
    FileResult,
    FileStatus,
    PipelineStage,
    QualityReport,
    RunResult,
    RunState
)
from agri_pipeline.components import (
    ParquetIngestionComponent,
    CalibrationEngine,
    RollingAggregator,
    AnomalyDetector,
    QualityScorer,
    CheckpointStore,
    ParquetLoadingComponent,
    ProcessedDataStore,
    DataExporter,
    SummaryTableGenerator
)
from agri_pipeline.utils import (
    setup_logging,
    get_logger,
    PipelineError,
    ConfigurationError,
    PersistenceError,
    PipelineTimeoutError
)


RUN_REPORT_JSON = "run_quality_report.json"


def format_error(source: str, error: BaseException) -> str:
    """``<file>: <ErrorType>: <message>``"""
    return f"{source}: {type(error).__name__}: {error}"


class SensorDataPipeline:
    """Main pipeline orchestrator that coordinates all components."""

    def __init__(self, config: PipelineConfig):
        """
        Initialize pipeline with configuration and default components.

        Args:
            config: Pipeline configuration loaded from YAML
        """
        self.config = config
        self.logger = get_logger(__name__)
        self.state = RunState.IDLE
        self._run_lock = threading.Lock()

        self.ingestion = ParquetIngestionComponent(config)
        self.calibration = CalibrationEngine(config)
        self.aggregator = RollingAggregator(config)
        self.detector = AnomalyDetector(config)
        self.scorer = QualityScorer(config)
        self.loading = ParquetLoadingComponent(config)
        self.checkpoints = CheckpointStore(config)
        self.store = ProcessedDataStore(config)
        self.exporter = DataExporter(config, self.store)
        self.summaries = SummaryTableGenerator(config, self.store)

    def set_components(self, **components) -> None:
        """
        Replace pipeline components (dependency injection).

        Accepts any of ``ingestion``, ``calibration``, ``aggregator``,
        ``detector``, ``scorer``, ``loading``, ``checkpoints``, ``store``,
        ``exporter`` and ``summaries``.
        """
        allowed = {"ingestion", "calibration", "aggregator", "detector", "scorer",
                   "loading", "checkpoints", "store", "exporter", "summaries"}
        unknown = set(components) - allowed
        if unknown:
            raise ValueError(f"Unknown pipeline components: {sorted(unknown)}")
        for name, component in components.items():
            setattr(self, name, component)

    @property
    def reports_dir(self) -> Path:
        return Path(self.config.paths.reports_dir)

    def process_files(self, force_reprocess: bool = False, generate_report: bool = True,
                      timeout: Optional[float] = None) -> RunResult:
        """
        Process every raw file that is not yet checkpointed.

        Args:
            force_reprocess: Ignore checkpoints and process every file
            generate_report: Build and write the run-level quality report
            timeout: Seconds before pending files are cancelled; defaults to
                ``processing.timeout_seconds``. Files already running finish
                their current stage and stop before persisting, so the call
                returns once the slowest running stage has finished.
                A stage that never returns blocks the call.

        Returns:
            Run result with one entry per discovered file

        Raises:
            ConfigurationError: If the run cannot start; no file is touched
            PipelineError: If another run is in progress
        """
        if not self._run_lock.acquire(blocking=False):
            raise PipelineError("A pipeline run is already in progress")

        try:
            files = self.ingestion.discover_files()
            self.state = RunState.RUNNING
            result = self._run(files, force_reprocess, generate_report, timeout)
            self.state = result.state
            return result
        except Exception:
            self.state = RunState.FAILED
            raise
        finally:
            self._run_lock.release()

    def _run(self, files: List[Path], force_reprocess: bool, generate_report: bool,
             timeout: Optional[float]) -> RunResult:
        start_time = time.time()
        timeout = timeout if timeout is not None else self.config.processing.timeout_seconds
        skip_checkpointed = self.config.checkpoint.incremental_mode and not force_reprocess

        self.logger.info(f"Starting pipeline: {self.config.pipeline.name} ({len(files)} files discovered)")

        file_results: Dict[str, FileResult] = {}
        pending: List[Tuple[Path, Dict[str, Any]]] = []
        for path in files:
            try:
                fingerprint = self.ingestion.fingerprint(path)
            except OSError as e:
                self.logger.error(f"Cannot read {path.name}: {e}")
                file_results[path.name] = FileResult(
                    file=path.name, status=FileStatus.FAILED, stage=PipelineStage.VALIDATING,
                    error=str(e), error_type=type(e).__name__
                )
                continue

            if skip_checkpointed and self.checkpoints.is_processed(path.name, fingerprint):
                self.logger.info(f"Skipping {path.name}: already processed")
                file_results[path.name] = FileResult(
                    file=path.name, status=FileStatus.SKIPPED, stage=PipelineStage.COMPLETED
                )
            else:
                pending.append((path, fingerprint))

        cancel = threading.Event()
        timed_out = False
        errors: List[str] = []

        if pending:
            executor = ThreadPoolExecutor(
                max_workers=self.config.processing.max_workers,
                thread_name_prefix="pipeline-worker"
            )
            futures = {
                executor.submit(self._process_file, path, fingerprint, cancel): path
                for path, fingerprint in pending
            }
            _, not_done = wait(futures, timeout=timeout)

            if not_done:
                timed_out = True
                cancel.set()
                self.logger.error(f"Run exceeded timeout of {timeout}s, cancelling {len(not_done)} files")
            executor.shutdown(wait=True, cancel_futures=True)

            for future, path in futures.items():
                if future.cancelled():
                    file_results[path.name] = FileResult(
                        file=path.name,
                        status=FileStatus.FAILED,
                        stage=PipelineStage.PENDING,
                        error="Cancelled before start: run timed out",
                        error_type=PipelineTimeoutError.__name__
                    )
                else:
                    file_results[path.name] = future.result()

        ordered = [file_results[path.name] for path in files]
        for fr in ordered:
            if fr.status == FileStatus.FAILED:
                errors.append(f"{fr.file}: {fr.error_type}: {fr.error}")

        if timed_out:
            unfinished = sum(1 for fr in ordered if fr.error_type == PipelineTimeoutError.__name__)
            errors.append(format_error(
                "run", PipelineTimeoutError(f"Run exceeded timeout of {timeout}s; {unfinished} files did not complete")
            ))

        processed = [fr for fr in ordered if fr.status == FileStatus.PROCESSED]
        run_report = None
        if generate_report:
            run_report = self._generate_run_report(processed, errors)

        result = RunResult(
            files_processed=len(processed),
            files_skipped=sum(1 for fr in ordered if fr.status == FileStatus.SKIPPED),
            files_failed=sum(1 for fr in ordered if fr.status == FileStatus.FAILED),
            records_ingested=sum(fr.records_ingested for fr in processed),
            processing_time_ms=(time.time() - start_time) * 1000,
            errors=errors,
            file_results=ordered,
            quality_report=run_report,
            timed_out=timed_out,
            completed=not timed_out,
            state=RunState.FAILED if timed_out else RunState.IDLE
        )

        self._log_run_summary(result)
        return result

    def _process_file(self, path: Path, fingerprint: Dict[str, Any], cancel: threading.Event) -> FileResult:
        """Run one file through every stage. Never raises; failures become a FileResult."""
        file_start = time.time()
        stage = PipelineStage.VALIDATING
        records_ingested = 0

        try:
            self._check_cancel(cancel, path.name)
            raw = self.ingestion.validate(path)

            stage = PipelineStage.NORMALIZING
            self._check_cancel(cancel, path.name)
            normalized = self.ingestion.normalize(raw, path.name)
            records_ingested = len(normalized)

            stage = PipelineStage.CALIBRATING
            self._check_cancel(cancel, path.name)
            calibrated = self.calibration.execute(normalized)

            stage = PipelineStage.AGGREGATING
            self._check_cancel(cancel, path.name)
            aggregated = self.aggregator.execute(calibrated)

            stage = PipelineStage.DETECTING
            self._check_cancel(cancel, path.name)
            flagged = self.detector.execute(aggregated)

            stage = PipelineStage.SCORING
            self._check_cancel(cancel, path.name)
            report = self.scorer.execute(flagged, path.name)

            stage = PipelineStage.PERSISTING
            self._check_cancel(cancel, path.name)
            stored = self.loading.execute(flagged, path.name)
            self.scorer.write_json_report(report, self.reports_dir / f"{path.stem}_quality_report.json")
            self.aggregator.commit(aggregated)
            self.aggregator.save_state()
            self.checkpoints.mark_processed(path.name, {**fingerprint, "record_count": stored})

        except Exception as e:
            if isinstance(e, PipelineError):
                self.logger.error(f"{path.name} failed at {stage.value}: {e}")
            else:
                self.logger.exception(f"{path.name} failed at {stage.value} with an unexpected error")
            return FileResult(
                file=path.name,
                status=FileStatus.FAILED,
                stage=stage,
                records_ingested=records_ingested,
                error=str(e),
                error_type=type(e).__name__,
                processing_time_ms=(time.time() - file_start) * 1000
            )

        self.logger.info(f"Completed {path.name}: {stored} records stored, quality {report.quality_score:.2f}")
        return FileResult(
            file=path.name,
            status=FileStatus.PROCESSED,
            stage=PipelineStage.COMPLETED,
            records_ingested=records_ingested,
            records_stored=stored,
            quality_report=report,
            processing_time_ms=(time.time() - file_start) * 1000
        )

    @staticmethod
    def _check_cancel(cancel: threading.Event, file_name: str) -> None:
        if cancel.is_set():
            raise PipelineTimeoutError(f"Run timed out before {file_name} was persisted")

    def _generate_run_report(self, processed: List[FileResult], errors: List[str]) -> Optional[QualityReport]:
        """Merge the per-file reports of this run, write the CSV and JSON reports and refresh the summary tables."""
        if not processed:
            self.logger.info("No files processed in this run, quality report not regenerated")
            return None

        report = self.scorer.merge(fr.quality_report for fr in processed)
        try:
            self.scorer.write_csv_report(report)
            self.scorer.write_json_report(report, self.reports_dir / RUN_REPORT_JSON)
        except PersistenceError as e:
            self.logger.error(f"Failed to write run quality report: {e}")
            errors.append(format_error("run", e))

        try:
            self.summaries.write_all()
        except PipelineError as e:
            self.logger.error(f"Failed to write summary tables: {e}")
            errors.append(format_error("run", e))

        self.scorer.log_report(report)
        return report

    def get_checkpoints(self) -> CheckpointSummary:
        """Summary of checkpointed files."""
        return self.checkpoints.summary()

    def clear_checkpoints(self) -> None:
        """Make every file eligible for reprocessing. Processed output is kept."""
        self.checkpoints.clear()

    def reset_pipeline(self) -> None:
        """
        Delete checkpoints, processed output, reports and rolling state.

        This cannot be undone.

        Raises:
            PipelineError: If a run is in progress
        """
        if not self._run_lock.acquire(blocking=False):
            raise PipelineError("Cannot reset while a pipeline run is in progress")

        try:
            self.checkpoints.clear()
            self.aggregator.reset()
            for directory in (Path(self.config.paths.data_processed), self.reports_dir):
                if directory.exists():
                    shutil.rmtree(directory)
                    self.logger.info(f"Deleted {directory}")
            self.state = RunState.IDLE
        finally:
            self._run_lock.release()

        self.logger.warning("Pipeline reset: checkpoints, processed data, reports and rolling state deleted")

    def query(self, **filters) -> pd.DataFrame:
        """Filtered processed readings, newest first."""
        return self.store.query(**filters)

    def summary(self, **filters) -> Dict[str, Any]:
        """Aggregate view of processed readings."""
        return self.store.summary(**filters)

    def sensor_ids(self) -> List[str]:
        return self.store.sensor_ids()

    def reading_types(self) -> List[str]:
        return self.store.reading_types()

    def export(self, filters: Optional[Dict[str, Any]] = None, **options) -> ExportResult:
        """Export processed readings; see ``DataExporter.export`` for options."""
        return self.exporter.export(filters, **options)

    def summary_tables(self, **filters) -> Dict[str, pd.DataFrame]:
        """Daily, sensor, reading type, hourly, battery and anomaly summary tables."""
        return self.summaries.tables(**filters)

    def gap_periods(self, **filters) -> pd.DataFrame:
        return self.summaries.gap_periods(**filters)

    def gap_summary(self, **filters) -> Dict[str, Any]:
        """Hourly coverage and gap totals across sensors and reading types."""
        return self.summaries.gap_summary(**filters)

    def _log_run_summary(self, result: RunResult) -> None:
        """Log run statistics and component summaries."""
        self.ingestion.log_summary()
        self.detector.log_summary()
        self.loading.log_summary()

        self.logger.info("=== Pipeline Run Summary ===")
        self.logger.info(f"Files Processed: {result.files_processed}")
        self.logger.info(f"Files Skipped: {result.files_skipped}")
        self.logger.info(f"Files Failed: {result.files_failed}")
        self.logger.info(f"Records Ingested: {result.records_ingested}")
        self.logger.info(f"Processing Time: {result.processing_time_ms:.0f} ms")
        if result.timed_out:
            self.logger.warning("Run timed out before all files completed")
        for error in result.errors[:5]:
            self.logger.info(f"  - {error}")
        if len(result.errors) > 5:
            self.logger.info(f"  ... and {len(result.errors) - 5} more errors")


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for pipeline execution."""
    parser = argparse.ArgumentParser(description="Agricultural sensor quality pipeline")
    parser.add_argument("--config", default="config/default.yaml", help="Path to the YAML configuration")
    parser.add_argument("--force", action="store_true", help="Reprocess files that are already checkpointed")
    parser.add_argument("--no-report", action="store_true", help="Skip the run-level quality report")
    parser.add_argument("--timeout", type=float, default=None, help="Run timeout in seconds")
    parser.add_argument("--log-level", default="INFO", help="Logging level")
    parser.add_argument("--log-file", default=None, help="Optional log file")
    args = parser.parse_args(argv)

    setup_logging(level=args.log_level, log_file=args.log_file)

    try:
        config = PipelineConfig.from_yaml(Path(args.config))
        pipeline = SensorDataPipeline(config)
        result = pipeline.process_files(
            force_reprocess=args.force,
            generate_report=not args.no_report,
            timeout=args.timeout
        )
    except ConfigurationError as e:
        print(f"Failed to initialize pipeline: {e}")
        return 2

    print(f"\n📊 Pipeline Execution Summary:")
    print(f"   Files processed: {result.files_processed}")
    print(f"   Files skipped: {result.files_skipped}")
    print(f"   Files failed: {result.files_failed}")
    print(f"   Records ingested: {result.records_ingested}")
    print(f"   Execution time: {result.processing_time_ms / 1000:.2f} seconds")

    if result.quality_report:
        print(f"   Quality score: {result.quality_report.quality_score:.2f} ({result.quality_report.category})")

    if result.errors:
        print(f"   Errors: {'; '.join(result.errors)}")

    return 0 if result.files_failed == 0 and not result.timed_out else 1


if __name__ == "__main__":
    sys.exit(main())
