"""
Calibration component for the agricultural sensor quality pipeline.

Applies the per reading-type linear correction
``calibrated_value = raw_value * multiplier + offset`` and records enough
audit fields to see what was changed. Calibration is best-effort: a reading
type without parameters passes through uncalibrated.
"""

import math
import threading
from typing import Optional

import numpy as np
import pandas as pd

from agri_pipeline.components.base import CalibrationComponent
from agri_pipeline.config import PipelineConfig, CalibrationParams
from agri_pipeline.models import SensorReading
from agri_pipeline.utils import get_logger


def calibrate(reading: SensorReading, params: Optional[CalibrationParams]) -> SensorReading:
    """
    Calibrate a single reading.

    This is the per-reading API for callers holding ``SensorReading`` records.
    ``CalibrationEngine.execute`` applies the same rule column-wise to a batch.

    Null or NaN raw values pass through with ``calibration_applied=False``.
    Missing parameters leave the value as-is and also report
    ``calibration_applied=False``.

    Args:
        reading: Ingested reading
        params: Calibration parameters for the reading's type, if configured

    Returns:
        A new reading with calibration fields populated
    """
    raw = reading.raw_value
    if raw is None or math.isnan(raw):
        return reading.model_copy(update={
            "calibrated_value": None,
            "original_value": None,
            "calibration_applied": False
        })

    if params is None:
        return reading.model_copy(update={
            "calibrated_value": raw,
            "original_value": raw,
            "calibration_applied": False
        })

    return reading.model_copy(update={
        "calibrated_value": raw * params.multiplier + params.offset,
        "original_value": raw,
        "calibration_applied": True
    })


class CalibrationEngine(CalibrationComponent):
    """Vectorised calibration over a batch of normalized readings."""

    def __init__(self, config: PipelineConfig):
        """
        Initialize calibration engine.

        Args:
            config: Pipeline configuration holding per-type calibration parameters
        """
        super().__init__(config)
        self.logger = get_logger(__name__)
        self._stats_lock = threading.Lock()

        self.stats = {
            "records_received": 0,
            "records_calibrated": 0,
            "records_uncalibrated": 0,
            "missing_values": 0
        }

    def execute(self, readings: pd.DataFrame) -> pd.DataFrame:
        """
        Apply calibration per reading type.

        Args:
            readings: Normalized readings with a ``raw_value`` column

        Returns:
            Readings with ``calibrated_value``, ``original_value`` and ``calibration_applied``
        """
        calibrated = readings.copy()
        raw = calibrated['raw_value'].astype('float64')
        present = raw.notna()

        calibrated['original_value'] = raw
        calibrated['calibrated_value'] = raw
        calibrated['calibration_applied'] = False

        calibrated_count = 0
        for reading_type in calibrated['reading_type'].unique():
            params = self.config.get_calibration(reading_type)
            mask = (calibrated['reading_type'] == reading_type) & present

            if params is None:
                if mask.any():
                    self.logger.debug(f"   No calibration configured for {reading_type}, passing through")
                continue

            calibrated.loc[mask, 'calibrated_value'] = raw[mask] * params.multiplier + params.offset
            calibrated.loc[mask, 'calibration_applied'] = True
            calibrated_count += int(mask.sum())

            if params.multiplier != 1.0 or params.offset != 0.0:
                self.logger.info(
                    f"   Applied calibration to {reading_type}: "
                    f"multiplier={params.multiplier}, offset={params.offset}"
                )

        calibrated['calibration_applied'] = calibrated['calibration_applied'].astype(bool)
        calibrated.loc[~present, 'calibrated_value'] = np.nan

        with self._stats_lock:
            self.stats["records_received"] += len(calibrated)
            self.stats["records_calibrated"] += calibrated_count
            self.stats["records_uncalibrated"] += int(present.sum()) - calibrated_count
            self.stats["missing_values"] += int((~present).sum())

        return calibrated
