from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
import logging
from typing import TYPE_CHECKING, Any, Dict, List, Sequence

import numpy as np

from additivethermal.exceptions import ConfigurationError

if TYPE_CHECKING:
    import numpy.typing as npt

logger = logging.getLogger(__name__)


class SegmentType(StrEnum):
    POINT = "point"
    LINE = "line"


@dataclass
class ScanPathSegment:
    """
    One leg of a beam path.

    Attributes:
        type: ``point`` dwells at ``end_point``; ``line`` moves there at constant speed.
        start_point: Position at ``start_time``.
        end_point: Position at ``end_time``.
        power_modifier: Fraction of the beam's max power during the segment.
        start_time: Time the segment begins (s).
        end_time: Time the segment ends (s).
    """
    type: SegmentType
    start_point: npt.NDArray[np.float64]
    end_point: npt.NDArray[np.float64]
    power_modifier: float
    start_time: float
    end_time: float

    def position(self, time: float) -> npt.NDArray[np.float64]:
        if self.type == SegmentType.POINT or self.end_time <= self.start_time:
            return self.end_point.copy()
        alpha = (time - self.start_time) / (self.end_time - self.start_time)
        return self.start_point + alpha * (self.end_point - self.start_point)


class ScanPath:
    """
    Ordered list of segments followed by a beam.

    Before the first segment the beam sits at the first segment's start point;
    after the last one it stays at the last end point with zero power.
    """

    def __init__(self, segments: List[ScanPathSegment]) -> None:
        self.segments = segments

    @staticmethod
    def from_dicts(data: Sequence[Dict[str, Any]]) -> ScanPath:
        """
        Build a path from segment records.

        Each record holds ``mode`` (``point`` or ``line``), ``point`` (the end
        point), ``power_modifier`` and ``value``: the dwell time for a point
        segment, the speed for a line segment.

        Raises:
            ConfigurationError: On an unknown mode or a non-positive line speed.
        """
        segments: List[ScanPathSegment] = []
        time = 0.0
        previous_point = None
        for i, record in enumerate(data):
            try:
                mode = SegmentType(str(record["mode"]).lower())
            except ValueError:
                raise ConfigurationError(f"Unknown scan path mode '{record['mode']}' in segment {i}.") from None
            end_point = np.asarray(record["point"], dtype=np.float64)
            start_point = end_point if previous_point is None else previous_point
            value = float(record.get("value", 0.0))

            if mode == SegmentType.POINT:
                duration = value
            else:
                if value <= 0.0:
                    raise ConfigurationError(f"Scan path segment {i}: line speed must be positive.")
                duration = float(np.linalg.norm(end_point - start_point)) / value

            segments.append(ScanPathSegment(
                type=mode,
                start_point=start_point,
                end_point=end_point,
                power_modifier=float(record.get("power_modifier", 1.0)),
                start_time=time,
                end_time=time + duration,
            ))
            time += duration
            previous_point = end_point

        logger.debug(f"Scan path with {len(segments)} segment(s), ends at t={time}")
        return ScanPath(segments)

    @property
    def end_time(self) -> float:
        return self.segments[-1].end_time if self.segments else 0.0

    def _segment(self, time: float) -> ScanPathSegment | None:
        for segment in self.segments:
            if time <= segment.end_time:
                return segment
        return None

    def value(self, time: float) -> npt.NDArray[np.float64]:
        """Beam position at ``time``."""
        if not self.segments:
            raise ValueError("Empty scan path.")
        segment = self._segment(time)
        if segment is None:
            return self.segments[-1].end_point.copy()
        return segment.position(max(time, segment.start_time))

    def get_power_modifier(self, time: float) -> float:
        segment = self._segment(time)
        return 0.0 if segment is None else segment.power_modifier
