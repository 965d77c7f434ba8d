# scanlink/core/coverage_planner.py

import logging
import math
import threading
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence, Tuple

import numpy as np
from PySide6.QtCore import QObject, Signal

from scanlink.core.errors import PlanningCancelled
from scanlink.core.geo_projection import GeoPoint, PlanarPoint, haversine_m, to_geo, to_planar
from scanlink.core.polygon_geometry import buffer_outward, strip_closure

ALTITUDE_MIN = 5.5
ALTITUDE_MAX = 300.0
ALTITUDE_STEP = 0.5
DEFAULT_FIELD_OF_VIEW_DEG = 23.0
DEFAULT_OVERLAP = 0.2
CLIP_SAMPLES = 20


class MissionType(Enum):
    SCAN = "scan"
    PHOTO = "photo"


@dataclass(frozen=True)
class FlightParameters:
    altitude: float
    heading: int
    field_of_view: float = DEFAULT_FIELD_OF_VIEW_DEG

    @classmethod
    def clamped(cls, altitude, heading, field_of_view=DEFAULT_FIELD_OF_VIEW_DEG):
        """Build parameters with altitude snapped to the slider grid and heading in [-180, 180]."""
        altitude = min(max(float(altitude), ALTITUDE_MIN), ALTITUDE_MAX)
        precision = 1.0 / ALTITUDE_STEP
        altitude = round(math.floor(altitude * precision + 0.5) / precision, 2)

        heading = int(math.floor(float(heading) + 0.5))
        if heading < -180 or heading > 180:
            heading = (heading + 180) % 360 - 180
        return cls(altitude, heading, float(field_of_view))


@dataclass(frozen=True)
class Waypoint:
    latitude: float
    longitude: float
    altitude: float


def footprint_width(altitude, field_of_view):
    """Ground width seen by the sensor, in metres."""
    return 2.0 * altitude * math.tan(math.radians(field_of_view / 2.0))


def point_in_polygon(x, y, poly):
    """Even-odd ray cast. poly is an (n, 2) array of open ring vertices."""
    inside = False
    n = len(poly)
    j = n - 1
    for i in range(n):
        xi, yi = poly[i]
        xj, yj = poly[j]
        if (yi > y) != (yj > y) and x < (xj - xi) * (y - yi) / (yj - yi) + xi:
            inside = not inside
        j = i
    return inside


def clip_scan_line(p1, p2, poly, samples=CLIP_SAMPLES):
    """Clip segment p1-p2 to poly by sampling; returns (entry, exit) or None."""
    entry_t = exit_t = None

    for i in range(samples + 1):
        t = i / samples
        if point_in_polygon(p1[0] + t * (p2[0] - p1[0]), p1[1] + t * (p2[1] - p1[1]), poly):
            entry_t = t
            break

    if entry_t is None:
        return None

    for i in range(samples, -1, -1):
        t = i / samples
        if point_in_polygon(p1[0] + t * (p2[0] - p1[0]), p1[1] + t * (p2[1] - p1[1]), poly):
            exit_t = t
            break

    if exit_t is None or entry_t >= exit_t:
        return None

    entry = (p1[0] + entry_t * (p2[0] - p1[0]), p1[1] + entry_t * (p2[1] - p1[1]))
    exit_ = (p1[0] + exit_t * (p2[0] - p1[0]), p1[1] + exit_t * (p2[1] - p1[1]))
    return entry, exit_


def stitch_nearest_neighbour(lines, start=(0.0, 0.0)):
    """Greedy tour over scan lines, entering each one at its nearer end."""
    visited = set()
    path = []
    current = start

    while len(visited) < len(lines):
        best_idx = -1
        best_dist = math.inf
        reverse = False

        for i, (a, b) in enumerate(lines):
            if i in visited:
                continue
            d_a = (current[0] - a[0]) ** 2 + (current[1] - a[1]) ** 2
            d_b = (current[0] - b[0]) ** 2 + (current[1] - b[1]) ** 2
            if d_a < best_dist:
                best_dist, best_idx, reverse = d_a, i, False
            if d_b < best_dist:
                best_dist, best_idx, reverse = d_b, i, True

        if best_idx < 0:
            break

        visited.add(best_idx)
        a, b = lines[best_idx]
        if reverse:
            a, b = b, a
        path.extend((a, b))
        current = b

    return path


def _rotation(angle):
    c, s = math.cos(angle), math.sin(angle)
    return np.array([[c, -s], [s, c]])


def generate_coverage_path(polygon: Sequence, home: GeoPoint, params: FlightParameters,
                           overlap: float = DEFAULT_OVERLAP,
                           cancel_event: Optional[threading.Event] = None) -> List[Waypoint]:
    """Lawn-mower coverage path over polygon.

    The polygon is any sequence of objects with latitude/longitude; a trailing
    duplicate of the first vertex is ignored. Inputs are only read, so an
    abandoned call leaves nothing behind. Raises PlanningCancelled if
    cancel_event is set while scan lines are being generated.
    """
    points = strip_closure(polygon)
    if len(points) < 3:
        return []

    angle = math.radians(90.0 - params.heading)

    planar = np.array([[q.x, q.y] for q in (to_planar(home, p) for p in points)])
    rotated = planar @ _rotation(-angle).T

    min_x, min_y = rotated.min(axis=0)
    max_x, max_y = rotated.max(axis=0)
    height = max_y - min_y

    step = footprint_width(params.altitude, params.field_of_view) * (1.0 - overlap)
    if step > height and height > 0:
        step = height / 2.0

    lines = []
    if height > 0 and step > 0:
        i = 0
        y = min_y
        while y <= max_y:
            if cancel_event is not None and cancel_event.is_set():
                raise PlanningCancelled("Coverage planning cancelled")
            clipped = clip_scan_line((min_x, y), (max_x, y), rotated)
            if clipped:
                lines.append(clipped)
            i += 1
            y = min_y + i * step

        if not lines:
            center_y = (min_y + max_y) / 2.0
            clipped = clip_scan_line((min_x, center_y), (max_x, center_y), rotated)
            if clipped:
                lines.append(clipped)

    path = stitch_nearest_neighbour(lines)
    if not path:
        return []

    restored = np.array(path) @ _rotation(angle).T
    waypoints = []
    for x, y in restored:
        geo = to_geo(home, PlanarPoint(float(x), float(y)))
        waypoints.append(Waypoint(geo.latitude, geo.longitude, params.altitude))
    return waypoints


def prepare_mission(vertices: Sequence, mission_type: MissionType, params: FlightParameters,
                    config: Optional[dict] = None) -> Tuple[list, FlightParameters]:
    """Resolve the polygon and effective parameters for a mission type."""
    mission_cfg = (config or {}).get("mission", {})
    fov = mission_cfg.get("field_of_view_deg", DEFAULT_FIELD_OF_VIEW_DEG)

    if mission_type == MissionType.PHOTO:
        buffered = buffer_outward(vertices, mission_cfg.get("photo_buffer_m", 50.0))
        effective = FlightParameters.clamped(
            mission_cfg.get("photo_altitude_m", ALTITUDE_MAX),
            mission_cfg.get("photo_heading_deg", 0),
            fov,
        )
        return strip_closure(buffered), effective

    return strip_closure(vertices), FlightParameters.clamped(params.altitude, params.heading, fov)


def path_length_m(waypoints: Sequence[Waypoint]) -> float:
    total = 0.0
    for prev, curr in zip(waypoints, waypoints[1:]):
        total += haversine_m(prev.latitude, prev.longitude, curr.latitude, curr.longitude)
    return total


def estimate_flight_time_s(waypoints: Sequence[Waypoint], speed_mps: float = 5.0) -> float:
    if speed_mps <= 0:
        return 0.0
    return path_length_m(waypoints) / speed_mps


def calculate_mission_stats(waypoints: Sequence[Waypoint], speed_mps: float = 5.0) -> dict:
    return {
        'waypoint_count': len(waypoints),
        'distance_m': path_length_m(waypoints),
        'flight_time_s': estimate_flight_time_s(waypoints, speed_mps),
    }


def save_waypoints_file(waypoints: Sequence[Waypoint], path: str, home: Optional[GeoPoint] = None):
    """Write a QGC WPL 110 file. Row 0 is home, then one NAV_WAYPOINT per point."""
    if home is None and waypoints:
        home = GeoPoint(waypoints[0].latitude, waypoints[0].longitude)

    lines = ["QGC WPL 110"]
    if home is not None:
        lines.append(f"0\t1\t0\t16\t0\t0\t0\t0\t{home.latitude:.8f}\t{home.longitude:.8f}\t0.000000\t1")
    for i, wp in enumerate(waypoints, start=1):
        lines.append(
            f"{i}\t0\t3\t16\t0\t0\t0\t0\t{wp.latitude:.8f}\t{wp.longitude:.8f}\t{wp.altitude:.6f}\t1"
        )

    with open(path, 'w') as f:
        f.write("\n".join(lines) + "\n")


class CoveragePlanner(QObject):
    """Runs coverage planning off the calling thread. Only the newest request is published."""

    path_ready = Signal(object)         # list of Waypoint
    planning_failed = Signal(str)       # message

    def __init__(self, config: dict):
        super().__init__()
        self.config = config
        self.overlap = config.get("mission", {}).get("overlap", DEFAULT_OVERLAP)
        self.logger = logging.getLogger("SCANLINK.CoveragePlanner")

        self._lock = threading.Lock()
        self._job_id = 0
        self._cancel_event = None
        self._thread = None
        self.last_path = []

    def request_path(self, vertices, home: GeoPoint, params: FlightParameters,
                     mission_type: MissionType = MissionType.SCAN) -> int:
        """Cancel any in-flight job and plan from copies of the inputs. Returns the job id."""
        polygon, effective = prepare_mission(tuple(vertices), mission_type, params, self.config)

        with self._lock:
            if self._cancel_event is not None:
                self._cancel_event.set()
            self._job_id += 1
            job_id = self._job_id
            cancel_event = threading.Event()
            self._cancel_event = cancel_event
            self._thread = threading.Thread(
                target=self._run,
                args=(job_id, cancel_event, polygon, home, effective),
                daemon=True,
                name=f"CoveragePlanner-{job_id}",
            )
            thread = self._thread

        self.logger.debug(f"Planning job {job_id}: {len(polygon)} vertices, "
                          f"alt={effective.altitude}, heading={effective.heading}")
        thread.start()
        return job_id

    def cancel(self):
        with self._lock:
            if self._cancel_event is not None:
                self._cancel_event.set()
            self._job_id += 1

    def wait(self, timeout=None):
        """Block until the latest job's thread has finished."""
        with self._lock:
            thread = self._thread
        if thread is not None:
            thread.join(timeout)
            return not thread.is_alive()
        return True

    def _is_current(self, job_id):
        with self._lock:
            return job_id == self._job_id

    def _run(self, job_id, cancel_event, polygon, home, params):
        try:
            waypoints = generate_coverage_path(polygon, home, params, self.overlap, cancel_event)
        except PlanningCancelled:
            self.logger.debug(f"Planning job {job_id} cancelled")
            return
        except Exception as e:
            if self._is_current(job_id):
                self.logger.error(f"Planning job {job_id} failed: {e}")
                self.planning_failed.emit(str(e))
            return

        if not self._is_current(job_id):
            self.logger.debug(f"Discarding stale planning result {job_id}")
            return

        self.last_path = waypoints
        self.logger.info(f"Coverage path ready: {len(waypoints)} waypoints")
        self.path_ready.emit(waypoints)
