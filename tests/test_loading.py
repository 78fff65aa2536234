"""
Tests for the loading component.

Tests cover partitioned Parquet storage, lineage columns, wholesale
replacement per source file and storage statistics.
"""

import pytest
from pathlib import Path
from unittest.mock import patch

import pyarrow.dataset as ds
import pyarrow.parquet as pq

from agri_pipeline.components.loading import ParquetLoadingComponent
from agri_pipeline.utils import PersistenceError


def stored_rows(path) -> int:
    return ds.dataset(str(path), format="parquet", partitioning="hive").count_rows()


class TestParquetLoadingComponent:
    """Test suite for ParquetLoadingComponent."""

    def test_init(self, sample_config):
        """Test component initialization."""
        component = ParquetLoadingComponent(sample_config)

        assert component.config == sample_config
        assert component.logger is not None
        assert component.stats["records_stored"] == 0
        assert component.output_path == Path(sample_config.paths.data_processed)
        assert component.compression == sample_config.write.compression
        assert component.partition_columns == sample_config.write.partition_by

    def test_execute_with_valid_data(self, sample_config, processed_frame):
        """Test successful loading of a processed batch."""
        component = ParquetLoadingComponent(sample_config)

        stored = component.execute(processed_frame, "2023-06-01.parquet")

        assert stored == 5
        assert component.stats["records_stored"] == 5
        assert stored_rows(component.output_path) == 5

    def test_partitioned_storage_structure(self, sample_config, processed_frame):
        """Test hive partition directories by date and sensor."""
        component = ParquetLoadingComponent(sample_config)

        component.execute(processed_frame, "2023-06-01.parquet")

        date_dir = component.output_path / "date=2023-06-01"
        assert date_dir.is_dir()
        sensor_dirs = sorted(p.name for p in date_dir.iterdir())
        assert sensor_dirs == ["sensor_id=sensor_1", "sensor_id=sensor_2", "sensor_id=sensor_3"]
        files = list(component.output_path.rglob("*.parquet"))
        assert all(f.name.startswith("2023-06-01-") for f in files)

    def test_lineage_columns(self, sample_config, processed_frame):
        """Test stored files carry derived fields and lineage, not partition columns."""
        component = ParquetLoadingComponent(sample_config)
        component.execute(processed_frame, "2023-06-01.parquet")

        stored_file = next(component.output_path.rglob("*.parquet"))
        columns = pq.read_table(stored_file).column_names

        for col in ("calibrated_value", "daily_average", "anomalous_reading", "z_score",
                    "source_file", "pipeline_version"):
            assert col in columns
        assert "date" not in columns
        assert "sensor_id" not in columns

    def test_compression(self, sample_config, processed_frame):
        """Test files are written with the configured codec."""
        component = ParquetLoadingComponent(sample_config)
        component.execute(processed_frame, "2023-06-01.parquet")

        stored_file = next(component.output_path.rglob("*.parquet"))
        metadata = pq.ParquetFile(stored_file).metadata

        assert metadata.row_group(0).column(0).compression == "SNAPPY"

    def test_rewrite_replaces_output(self, sample_config, processed_frame):
        """Test storing a source file again replaces its files instead of appending."""
        component = ParquetLoadingComponent(sample_config)
        component.execute(processed_frame, "2023-06-01.parquet")
        first_files = sorted(p.relative_to(component.output_path) for p in component.output_path.rglob("*.parquet"))

        component.execute(processed_frame, "2023-06-01.parquet")
        second_files = sorted(p.relative_to(component.output_path) for p in component.output_path.rglob("*.parquet"))

        assert stored_rows(component.output_path) == 5
        assert first_files == second_files
        assert component.stats["files_replaced"] == 3

    def test_sources_do_not_clobber_each_other(self, sample_config, processed_frame):
        """Test output of one source survives rewriting another in the same partitions."""
        component = ParquetLoadingComponent(sample_config)
        component.execute(processed_frame, "2023-06-01.parquet")
        component.execute(processed_frame, "2023-06-01_late.parquet")

        component.execute(processed_frame, "2023-06-01.parquet")

        assert stored_rows(component.output_path) == 10
        assert len(component._source_files("2023-06-01_late")) == 3
        assert len(component._source_files("2023-06-01")) == 3

    def test_execute_with_empty_data(self, sample_config, processed_frame):
        """Test an empty batch removes the source's old output and writes nothing."""
        component = ParquetLoadingComponent(sample_config)
        component.execute(processed_frame, "2023-06-01.parquet")

        stored = component.execute(processed_frame.iloc[0:0], "2023-06-01.parquet")

        assert stored == 0
        assert list(component.output_path.rglob("*.parquet")) == []

    def test_remove_source_output(self, sample_config, processed_frame):
        """Test deleting one source's files."""
        component = ParquetLoadingComponent(sample_config)
        component.execute(processed_frame, "2023-06-01.parquet")

        removed = component.remove_source_output("2023-06-01.parquet")

        assert removed == 3
        assert component._source_files("2023-06-01") == []

    def test_prepare_data_for_storage(self, sample_config, processed_frame):
        """Test partition and lineage columns are added without touching the input."""
        component = ParquetLoadingComponent(sample_config)

        prepared = component._prepare_data_for_storage(processed_frame, "2023-06-01.parquet")

        assert (prepared["date"] == "2023-06-01").all()
        assert (prepared["source_file"] == "2023-06-01.parquet").all()
        assert (prepared["pipeline_version"] == sample_config.pipeline.version).all()
        assert "date" not in processed_frame.columns

    def test_write_failure(self, sample_config, processed_frame):
        """Test a failed write is a persistence error."""
        component = ParquetLoadingComponent(sample_config)

        with patch("agri_pipeline.components.loading.ds.write_dataset", side_effect=OSError("disk full")):
            with pytest.raises(PersistenceError, match="disk full"):
                component.execute(processed_frame, "2023-06-01.parquet")

        assert component.stats["records_stored"] == 0

    def test_get_storage_summary(self, sample_config, processed_frame):
        """Test storage summary lists partitions."""
        component = ParquetLoadingComponent(sample_config)
        component.execute(processed_frame, "2023-06-01.parquet")

        summary = component.get_storage_summary()

        assert summary["storage_path"] == str(component.output_path)
        assert summary["partition_columns"] == ["date", "sensor_id"]
        assert summary["storage_stats"]["storage_size_bytes"] > 0
        assert len(summary["partitions"]) == 3
        assert summary["partitions"][0] == {
            "date": "2023-06-01",
            "sensor_id": "sensor_1",
            "files": 1,
            "size_bytes": summary["partitions"][0]["size_bytes"]
        }

    def test_log_summary(self, sample_config, processed_frame):
        """Test loading summary logging."""
        component = ParquetLoadingComponent(sample_config)
        component.execute(processed_frame, "2023-06-01.parquet")

        with patch.object(component.logger, 'info') as mock_info:
            component.log_summary()

        messages = [call.args[0] for call in mock_info.call_args_list]
        assert messages[0] == "=== Loading Summary ==="
        assert "Partitioned By: date, sensor_id" in messages
