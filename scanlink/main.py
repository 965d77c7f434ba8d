# scanlink/main.py

import argparse
import logging
import signal
import sys

import yaml
from PySide6.QtCore import QCoreApplication, QObject, QTimer, Slot

from scanlink.config import DEFAULT_CONFIG_PATH, load_config, setup_global_logging
from scanlink.core.coverage_planner import MissionType, calculate_mission_stats, save_waypoints_file
from scanlink.core.session import MissionSession


def load_polygon_file(path):
    """Read [[lat, lon], ...] (or {polygon: [...]}) from a YAML or JSON file."""
    with open(path, 'r') as f:
        data = yaml.safe_load(f)

    if isinstance(data, dict):
        data = data.get("polygon", [])
    if not isinstance(data, list):
        raise ValueError(f"{path}: expected a list of [lat, lon] pairs")

    points = []
    for item in data:
        if isinstance(item, dict):
            points.append((float(item["latitude"]), float(item["longitude"])))
        else:
            points.append((float(item[0]), float(item[1])))
    return points


def build_parser():
    parser = argparse.ArgumentParser(prog="scanlink", description="Plan a coverage mission and upload it over BLE.")
    parser.add_argument("polygon", help="YAML/JSON file with the flight area as [lat, lon] pairs")
    parser.add_argument("--config", help="Path to config.yaml")
    parser.add_argument("--altitude", type=float, default=20.0, help="Flight altitude in metres (5.5-300)")
    parser.add_argument("--heading", type=float, default=0.0, help="Scan heading in degrees (-180..180)")
    parser.add_argument("--mission-type", choices=[t.value for t in MissionType], default=MissionType.SCAN.value)
    parser.add_argument("--export", help="Write the planned path as a QGC .waypoints file")
    parser.add_argument("--upload", action="store_true", help="Upload the mission once the drone is connected")
    parser.add_argument("--start", action="store_true", help="Send START after a successful upload")
    parser.add_argument("--verbose", action="store_true")
    return parser


class MissionRunner(QObject):
    """Drives one headless plan/upload run and quits the event loop when done."""

    def __init__(self, app, session, args, config):
        super().__init__()
        self.app = app
        self.session = session
        self.args = args
        self.config = config
        self.mission_type = MissionType(args.mission_type)
        self.exit_code = 0
        self.uploaded = False
        self.logger = logging.getLogger("SCANLINK.Main")

        session.planner.path_ready.connect(self.on_path_ready)
        session.planner.planning_failed.connect(self.on_planning_failed)
        session.connection_changed.connect(self.on_connection_changed)
        session.uploader.upload_completed.connect(self.on_upload_completed)

    def run(self, points):
        for lat, lon in points:
            self.session.editor.add_vertex(lat, lon)

        if self.args.upload:
            self.session.start()

        if self.session.plan(self.args.altitude, self.args.heading, self.mission_type) is None:
            self.finish(1)

    @Slot(object)
    def on_path_ready(self, waypoints):
        speed = self.config.get("mission", {}).get("cruise_speed_mps", 5.0)
        stats = calculate_mission_stats(waypoints, speed)
        self.logger.info(f"Planned {stats['waypoint_count']} waypoints, "
                         f"{stats['distance_m']:.0f} m, ~{stats['flight_time_s'] / 60.0:.1f} min")

        if self.args.export:
            save_waypoints_file(waypoints, self.args.export, self.session.drone_state.home_position())
            self.logger.info(f"Waypoints written to {self.args.export}")

        if not self.args.upload:
            self.finish(0)
        elif self.session.transport.is_connected():
            self.upload()

    @Slot(str)
    def on_planning_failed(self, message):
        self.logger.error(f"Planning failed: {message}")
        self.finish(1)

    @Slot(object)
    def on_connection_changed(self, connection_state):
        if connection_state.is_connected and self.args.upload and self.session.planner.last_path:
            self.upload()

    def upload(self):
        if self.uploaded:
            return
        self.uploaded = True
        # Give the RX subscription a moment so progress notifications are not missed.
        QTimer.singleShot(500, lambda: self.session.upload_mission(
            self.args.altitude, self.args.heading, self.mission_type))

    @Slot(bool, str)
    def on_upload_completed(self, success, message):
        if success:
            self.logger.info(message)
            if self.args.start and not self.session.start_mission():
                self.finish(1)
                return
            self.finish(0)
        else:
            self.logger.error(f"Upload failed: {message}")
            self.finish(1)

    def finish(self, code):
        self.exit_code = code
        QTimer.singleShot(0, self.app.quit)


def main(argv=None):
    args = build_parser().parse_args(argv)

    config = load_config(args.config)
    setup_global_logging(config, logging.DEBUG if args.verbose else logging.INFO)
    logger = logging.getLogger("SCANLINK.Main")
    logger.info(f"Configuration: {args.config or DEFAULT_CONFIG_PATH} ({len(config)} sections)")

    try:
        points = load_polygon_file(args.polygon)
    except (OSError, ValueError, KeyError, IndexError, yaml.YAMLError) as e:
        logger.error(f"Could not read polygon file: {e}")
        return 2

    app = QCoreApplication(sys.argv[:1])
    session = MissionSession(config)
    runner = MissionRunner(app, session, args, config)

    signal.signal(signal.SIGINT, lambda *_: app.quit())
    # Let the interpreter see SIGINT while Qt's loop is running
    heartbeat = QTimer()
    heartbeat.timeout.connect(lambda: None)
    heartbeat.start(200)

    QTimer.singleShot(0, lambda: runner.run(points))
    try:
        app.exec()
    finally:
        session.stop()

    return runner.exit_code


if __name__ == "__main__":
    sys.exit(main())
