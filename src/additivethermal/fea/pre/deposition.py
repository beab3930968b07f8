"""
Material Deposition
===================
Planning of which cells are switched on, and when.

Why is this file needed?
------------------------
1. Deposition boxes: a scan path is cut into short boxes, each with the time
   it appears and the in-plane direction of the track that lays it down.
2. Activation groups: each box is turned into the group of inactive cells it
   covers, the input of the domain activation step.
"""
from __future__ import annotations

from bisect import bisect_right
from dataclasses import dataclass
import logging
from typing import TYPE_CHECKING, List

import numpy as np

from additivethermal.fea.pre.scan_path import SegmentType

if TYPE_CHECKING:
    import numpy.typing as npt
    from additivethermal.fea.pre.mesh import StructuredMesh
    from additivethermal.fea.pre.scan_path import ScanPath

logger = logging.getLogger(__name__)


@dataclass
class DepositionBox:
    """
    Oriented box of material laid down at ``time``.

    Attributes:
        center: Box centre, shape (dim,).
        size: Extent along the track, across it (3D only) and in height.
        time: Time the material appears (s).
        cos: Cosine of the in-plane track direction.
        sin: Sine of the in-plane track direction.
    """
    center: npt.NDArray[np.float64]
    size: npt.NDArray[np.float64]
    time: float
    cos: float
    sin: float

    def contains(self, points: npt.NDArray[np.float64]) -> npt.NDArray[np.bool_]:
        """Mask of the ``points`` (n, dim) inside the box."""
        d = points - self.center
        if d.shape[-1] == 2:
            local = np.stack([d[:, 0], d[:, 1]], axis=-1)
        else:
            along = d[:, 0] * self.cos + d[:, 1] * self.sin
            across = -d[:, 0] * self.sin + d[:, 1] * self.cos
            local = np.stack([along, across, d[:, 2]], axis=-1)
        return np.all(np.abs(local) <= 0.5 * self.size + 1e-12, axis=-1)


def deposition_boxes_along_scan_path(
    scan_path: ScanPath,
    dim: int,
    deposition_length: float,
    width: float,
    height: float,
    lead_time: float = 0.0,
) -> List[DepositionBox]:
    """
    Cut the powered line segments of a scan path into deposition boxes.

    The top of every box sits at the scan path height.

    Args:
        scan_path: Path of the beam laying down the material.
        dim: Spatial dimension of the mesh.
        deposition_length: Maximum box length along the track.
        width: Track width (3D only).
        height: Layer height.
        lead_time: How long before the beam arrives the material appears.

    Returns:
        Boxes sorted by time.
    """
    boxes: List[DepositionBox] = []
    for segment in scan_path.segments:
        if segment.type != SegmentType.LINE or segment.power_modifier <= 0.0:
            continue
        delta = segment.end_point - segment.start_point
        length = float(np.linalg.norm(delta))
        if length == 0.0:
            continue
        n_boxes = int(np.ceil(length / deposition_length))
        in_plane = float(np.hypot(delta[0], delta[1]))
        cos, sin = (delta[0] / in_plane, delta[1] / in_plane) if in_plane > 0.0 else (1.0, 0.0)
        duration = segment.end_time - segment.start_time

        for k in range(n_boxes):
            mid = segment.start_point + (k + 0.5) / n_boxes * delta
            if dim == 2:
                center = np.array([mid[0], mid[2] - 0.5 * height])
                size = np.array([length / n_boxes, height])
            else:
                center = np.array([mid[0], mid[1], mid[2] - 0.5 * height])
                size = np.array([length / n_boxes, width, height])
            boxes.append(DepositionBox(
                center=center,
                size=size,
                time=segment.start_time + k / n_boxes * duration - lead_time,
                cos=cos,
                sin=sin,
            ))

    boxes.sort(key=lambda box: box.time)
    logger.info(f"Planned {len(boxes)} deposition box(es)")
    return boxes


def get_elements_to_activate(mesh: StructuredMesh, boxes: List[DepositionBox]) -> List[npt.NDArray[np.int64]]:
    """
    Group the inactive cells by the first box covering their centre.

    Args:
        mesh: The mesh.
        boxes: Deposition boxes, in activation order.

    Returns:
        One array of cell ids per box (possibly empty).
    """
    centers = mesh.cell_centers
    taken = mesh.active.copy()
    groups: List[npt.NDArray[np.int64]] = []
    for box in boxes:
        mask = box.contains(centers) & ~taken
        taken |= mask
        groups.append(np.flatnonzero(mask))
    return groups


def activation_index(boxes: List[DepositionBox], time: float) -> int:
    """Number of boxes whose deposition time is not later than ``time``."""
    return bisect_right([box.time for box in boxes], time)
