import threading

import numpy as np
import pytest

from scanlink.core.coverage_planner import (
    CoveragePlanner,
    FlightParameters,
    MissionType,
    Waypoint,
    calculate_mission_stats,
    clip_scan_line,
    estimate_flight_time_s,
    generate_coverage_path,
    prepare_mission,
    save_waypoints_file,
    stitch_nearest_neighbour,
)
from scanlink.core.errors import PlanningCancelled
from scanlink.core.geo_projection import GeoPoint, PlanarPoint, to_geo
from scanlink.core.polygon_geometry import PolygonVertex, polygon_bounds

from conftest import wait_for

CENTER = GeoPoint(10.762622, 106.660172)


def square(center, half_side_m):
    corners = [(-half_side_m, -half_side_m), (half_side_m, -half_side_m),
               (half_side_m, half_side_m), (-half_side_m, half_side_m)]
    vertices = []
    for i, (x, y) in enumerate(corners):
        geo = to_geo(center, PlanarPoint(x, y))
        vertices.append(PolygonVertex(str(i), geo.latitude, geo.longitude))
    return vertices


def test_square_coverage_stays_inside_bounding_box():
    polygon = square(CENTER, 50.0)
    params = FlightParameters(altitude=20.0, heading=0, field_of_view=23.0)

    waypoints = generate_coverage_path(polygon, CENTER, params)

    assert len(waypoints) >= 2
    assert len(waypoints) % 2 == 0
    bounds = polygon_bounds(polygon)
    eps = 1e-9
    for wp in waypoints:
        assert bounds.min_latitude - eps <= wp.latitude <= bounds.max_latitude + eps
        assert bounds.min_longitude - eps <= wp.longitude <= bounds.max_longitude + eps
        assert wp.altitude == 20.0


def test_planner_is_deterministic():
    polygon = square(CENTER, 80.0)
    params = FlightParameters(altitude=35.0, heading=30, field_of_view=23.0)
    assert generate_coverage_path(polygon, CENTER, params) == generate_coverage_path(polygon, CENTER, params)


def test_heading_90_produces_east_west_lines():
    polygon = square(CENTER, 50.0)
    params = FlightParameters(altitude=20.0, heading=90, field_of_view=23.0)

    waypoints = generate_coverage_path(polygon, CENTER, params)

    assert len(waypoints) >= 4
    for entry, exit_ in zip(waypoints[::2], waypoints[1::2]):
        assert entry.latitude == pytest.approx(exit_.latitude, abs=1e-9)
        assert entry.longitude != pytest.approx(exit_.longitude, abs=1e-7)


def test_closing_duplicate_is_ignored():
    polygon = square(CENTER, 50.0)
    params = FlightParameters(altitude=20.0, heading=0)
    closed = polygon + [polygon[0]]
    assert generate_coverage_path(closed, CENTER, params) == generate_coverage_path(polygon, CENTER, params)


def test_high_altitude_still_yields_two_lines():
    polygon = square(CENTER, 10.0)
    params = FlightParameters(altitude=300.0, heading=0)
    waypoints = generate_coverage_path(polygon, CENTER, params)
    assert len(waypoints) >= 2


def test_degenerate_polygons_return_empty():
    params = FlightParameters(altitude=20.0, heading=0)
    # Collinear along the scan direction: zero height after rotation
    meridian = [PolygonVertex(str(i), CENTER.latitude + i * 1e-4, CENTER.longitude) for i in range(3)]
    assert generate_coverage_path(meridian, CENTER, params) == []
    assert generate_coverage_path(meridian[:2], CENTER, params) == []


def test_cancelled_planning_raises():
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(PlanningCancelled):
        generate_coverage_path(square(CENTER, 50.0), CENTER, FlightParameters(20.0, 0), cancel_event=cancel)


def test_stitch_prefers_nearest_endpoint_and_reverses():
    lines = [((5.0, 0.0), (10.0, 0.0)), ((-1.0, 1.0), (-3.0, 1.0))]
    assert stitch_nearest_neighbour(lines) == [(-1.0, 1.0), (-3.0, 1.0), (5.0, 0.0), (10.0, 0.0)]

    reversed_line = [((10.0, 0.0), (1.0, 0.0))]
    assert stitch_nearest_neighbour(reversed_line) == [(1.0, 0.0), (10.0, 0.0)]


def test_clip_scan_line():
    poly = np.array([[0.0, 0.0], [10.0, 0.0], [10.0, 10.0], [0.0, 10.0]])
    entry, exit_ = clip_scan_line((-10.0, 5.0), (30.0, 5.0), poly)
    assert entry[0] == pytest.approx(0.0)
    assert exit_[0] == pytest.approx(8.0)
    assert clip_scan_line((-10.0, 20.0), (30.0, 20.0), poly) is None


@pytest.mark.parametrize("altitude,heading,expected", [
    (3.0, 0, (5.5, 0)),
    (1000.0, -180, (300.0, -180)),
    (20.26, 45.4, (20.5, 45)),
    (20.25, 200, (20.5, -160)),
    (12.0, -190, (12.0, 170)),
])
def test_flight_parameters_clamped(altitude, heading, expected):
    params = FlightParameters.clamped(altitude, heading)
    assert (params.altitude, params.heading) == expected
    assert params.field_of_view == 23.0


def test_prepare_photo_mission(config):
    polygon = square(CENTER, 50.0)
    user = FlightParameters.clamped(20.0, 45)

    scan_polygon, scan_params = prepare_mission(polygon, MissionType.SCAN, user, config)
    photo_polygon, photo_params = prepare_mission(polygon, MissionType.PHOTO, user, config)

    assert scan_polygon == polygon
    assert (scan_params.altitude, scan_params.heading) == (20.0, 45)
    assert (photo_params.altitude, photo_params.heading) == (300.0, 0)
    assert len(photo_polygon) == 4
    assert polygon_bounds(photo_polygon).max_latitude > polygon_bounds(polygon).max_latitude


def test_mission_stats():
    waypoints = [Waypoint(10.0, 106.0, 20.0), Waypoint(11.0, 106.0, 20.0)]
    stats = calculate_mission_stats(waypoints, speed_mps=5.0)
    assert stats["waypoint_count"] == 2
    assert stats["distance_m"] == pytest.approx(111195, rel=1e-3)
    assert stats["flight_time_s"] == pytest.approx(stats["distance_m"] / 5.0)
    assert estimate_flight_time_s(waypoints, 0) == 0.0
    assert calculate_mission_stats(waypoints, speed_mps=0)["flight_time_s"] == 0.0
    assert stats["flight_time_s"] == estimate_flight_time_s(waypoints, 5.0)


def test_save_waypoints_file(tmp_path):
    path = tmp_path / "mission.waypoints"
    waypoints = [Waypoint(10.0, 106.0, 20.0), Waypoint(10.001, 106.001, 20.0)]

    save_waypoints_file(waypoints, str(path), home=CENTER)

    lines = path.read_text().splitlines()
    assert lines[0] == "QGC WPL 110"
    assert len(lines) == 4
    home_row = lines[1].split("\t")
    assert home_row[:4] == ["0", "1", "0", "16"]
    row = lines[3].split("\t")
    assert row[0] == "2"
    assert float(row[8]) == pytest.approx(10.001)
    assert float(row[10]) == pytest.approx(20.0)


def test_planner_manager_publishes_latest_result(config):
    planner = CoveragePlanner(config)
    results = []
    planner.path_ready.connect(lambda waypoints: results.append(waypoints))

    polygon = square(CENTER, 50.0)
    planner.request_path(polygon, CENTER, FlightParameters.clamped(20.0, 0))
    planner.request_path(polygon, CENTER, FlightParameters.clamped(40.0, 0))

    assert planner.wait(5.0)
    assert wait_for(lambda: results and results[-1] and results[-1][0].altitude == 40.0)
    assert planner.last_path[0].altitude == 40.0


def test_planner_manager_cancel_discards_result(config):
    planner = CoveragePlanner(config)
    results = []
    planner.path_ready.connect(lambda waypoints: results.append(waypoints))

    planner.request_path(square(CENTER, 50.0), CENTER, FlightParameters.clamped(20.0, 0))
    planner.cancel()
    planner.wait(5.0)

    # A result that finished before cancel() may already be queued; nothing newer can arrive.
    wait_for(lambda: False, timeout=0.1)
    assert len(results) <= 1
