# scanlink/core/session.py

import logging
from PySide6.QtCore import QObject, Qt, Signal, Slot

from scanlink.core.coverage_planner import CoveragePlanner, FlightParameters, MissionType, prepare_mission
from scanlink.core.drone_state import DroneState
from scanlink.core.link_transport import LinkTransport, MANUAL_DISCONNECT_REASON
from scanlink.core.mission_protocol import MissionUploader
from scanlink.core.polygon_editor import PolygonEditor
from scanlink.core.reconnect_supervisor import ReconnectSupervisor
from scanlink.core.telemetry_codec import TelemetryCodec


class MissionSession(QObject):
    """Owns every component for one operator session and wires them together."""

    connection_changed = Signal(object)     # ConnectionState
    telemetry_changed = Signal(dict)        # DroneState.get_telemetry()
    home_changed = Signal(float, float)     # latitude, longitude
    error_occurred = Signal(str, str)       # context, message

    def __init__(self, config: dict, backend=None, clock=None):
        super().__init__()
        self.config = config
        self.logger = logging.getLogger("SCANLINK.Session")
        self.logger.info("ScanLink session starting...")

        # Initialize components in dependency order
        self.transport = LinkTransport(config, backend)
        self.codec = TelemetryCodec(config)
        self.drone_state = DroneState.from_config(config)
        self.supervisor = ReconnectSupervisor(self.transport, config, clock)
        self.editor = PolygonEditor()
        self.planner = CoveragePlanner(config)
        self.uploader = MissionUploader(self.transport, self.codec, config, clock, self.drone_state)

        self._setup_connections()
        self.running = False

        self.logger.info("All components initialized")

    def _setup_connections(self):
        # Parsing stays on the notification thread; codec.feed only enqueues.
        self.transport.data_received.connect(self.codec.feed, Qt.DirectConnection)

        self.transport.connection_state_changed.connect(self._on_connection_state)
        self.transport.link_lost.connect(self.supervisor.notify_disconnected)
        self.transport.error_occurred.connect(self._on_error)
        self.codec.field_updated.connect(self._on_field_updated)
        self.planner.planning_failed.connect(self._on_planning_failed)

    def start(self):
        """Start the transport loop and begin looking for the drone."""
        if self.running:
            return
        self.logger.info("Starting session...")
        self.codec.start()
        self.transport.start()
        self.supervisor.start()
        self.running = True

    def stop(self):
        """Cancel timers, planning and the link. Safe to call twice."""
        self.logger.info("Stopping session...")
        self.supervisor.stop()
        self.uploader.cancel()
        self.planner.cancel()
        self.transport.stop()
        self.codec.stop()
        self.running = False
        self.logger.info("Session stopped.")

    # Operator entry points

    def plan(self, altitude, heading, mission_type=MissionType.SCAN):
        """Plan over the current polygon from the drone's home. Result arrives on planner.path_ready."""
        vertices = self.editor.snapshot()
        if len(vertices) < 3:
            self.logger.warning("Need at least 3 vertices to plan a path")
            return None
        params = FlightParameters.clamped(altitude, heading)
        return self.planner.request_path(vertices, self.drone_state.home_position(), params, mission_type)

    def upload_mission(self, altitude, heading, mission_type=MissionType.SCAN):
        polygon, params = prepare_mission(
            self.editor.snapshot(), mission_type, FlightParameters.clamped(altitude, heading), self.config
        )
        return self.uploader.send_mission(polygon, params.altitude, params.heading)

    def start_mission(self):
        return self.uploader.send_start()

    # Signal handlers

    @Slot(object)
    def _on_connection_state(self, connection_state):
        if connection_state.is_connected:
            self.supervisor.notify_connected()
            future = self.transport.enable_notifications()
            future.add_done_callback(self._log_notification_result)
        elif connection_state.error and connection_state.error != MANUAL_DISCONNECT_REASON:
            self.logger.warning(f"Disconnected from {connection_state.device_id}: {connection_state.error}")
        self.connection_changed.emit(connection_state)

    def _log_notification_result(self, future):
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            self.logger.error(f"Telemetry notifications unavailable: {error}")

    @Slot(object)
    def _on_field_updated(self, field):
        if not self.drone_state.apply_field(field):
            return
        if field.key == "HOME":
            home = self.drone_state.home_position()
            self.logger.info(f"HOME received: {home.latitude:.7f}, {home.longitude:.7f}")
            self.home_changed.emit(home.latitude, home.longitude)
        self.telemetry_changed.emit(self.drone_state.get_telemetry())

    @Slot(str, str)
    def _on_error(self, context, message):
        self.logger.error(f"Link error ({context}): {message}")
        self.error_occurred.emit(context, message)

    @Slot(str)
    def _on_planning_failed(self, message):
        self.error_occurred.emit("planning", message)
