# scanlink/core/mission_protocol.py

import logging
import math
import re
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence, Tuple
from PySide6.QtCore import QObject, Signal, Slot, QTimer

from scanlink.core.clock import MonotonicClock
from scanlink.core.errors import TransportWriteError

POLYLINE_SCALE = 1e5
START_COMMAND = "START\r\n"
MIN_MISSION_POINTS = 3
POLL_TICK_MS = 250
LEADING_INT = re.compile(r"\s*([+-]?\d+)")


def _round_half_up(value):
    return int(math.floor(value + 0.5))


def _coords(point):
    if hasattr(point, "latitude"):
        return point.latitude, point.longitude
    return point[0], point[1]


# Polyline codec

def encode_number(num: int) -> str:
    """Zig-zag fold the sign, then emit 5-bit groups with a 0x20 continuation bit."""
    num = ~(num << 1) if num < 0 else num << 1
    chunks = []
    while num >= 0x20:
        chunks.append(chr((0x20 | (num & 0x1f)) + 63))
        num >>= 5
    chunks.append(chr(num + 63))
    return "".join(chunks)


def encode_polyline(points: Sequence) -> str:
    """Delta-encode lat/lon pairs (or objects with latitude/longitude) at 1e-5 degrees."""
    prev_lat = prev_lon = 0
    parts = []
    for point in points:
        latitude, longitude = _coords(point)
        lat = _round_half_up(latitude * POLYLINE_SCALE)
        lon = _round_half_up(longitude * POLYLINE_SCALE)
        parts.append(encode_number(lat - prev_lat))
        parts.append(encode_number(lon - prev_lon))
        prev_lat, prev_lon = lat, lon
    return "".join(parts)


def _decode_number(encoded, index):
    result = 0
    shift = 0
    while True:
        if index >= len(encoded):
            raise ValueError("Truncated polyline")
        b = ord(encoded[index]) - 63
        index += 1
        result |= (b & 0x1f) << shift
        shift += 5
        if b < 0x20:
            break
    value = ~(result >> 1) if result & 1 else result >> 1
    return value, index


def decode_polyline(encoded: str) -> List[Tuple[float, float]]:
    points = []
    index = 0
    lat = lon = 0
    while index < len(encoded):
        d_lat, index = _decode_number(encoded, index)
        d_lon, index = _decode_number(encoded, index)
        lat += d_lat
        lon += d_lon
        points.append((lat / POLYLINE_SCALE, lon / POLYLINE_SCALE))
    return points


def build_mission_command(polygon: Sequence, altitude: float, heading: float) -> str:
    """MISSION_SCAN<alt>::<heading>::<polyline>\\r\\n"""
    encoded = encode_polyline(polygon)
    return f"MISSION_SCAN{_round_half_up(altitude)}::{_round_half_up(heading)}::{encoded}\r\n"


# Upload progress

def parse_progress(value) -> Optional[Tuple[int, int]]:
    """Parse "a/b"; None for anything else."""
    if not value:
        return None
    parts = value.split("/")
    if len(parts) != 2:
        return None
    a = LEADING_INT.match(parts[0])
    b = LEADING_INT.match(parts[1])
    if not a or not b:
        return None
    return int(a.group(1)), int(b.group(1))


def is_upload_complete(value) -> bool:
    progress = parse_progress(value)
    return progress is not None and progress[0] == progress[1]


class UploadPhase(Enum):
    IDLE = "idle"
    UPLOADING = "uploading"
    AWAITING_ACK = "awaiting_ack"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class MissionUploadState:
    phase: UploadPhase = UploadPhase.IDLE
    progress: Optional[str] = None      # "a/b" while awaiting ack
    reason: Optional[str] = None        # set when failed


def classify_progress(value) -> Optional[UploadPhase]:
    """COMPLETED for a == b, AWAITING_ACK for any other pair, None while still waiting."""
    progress = parse_progress(value)
    if progress is None:
        return None
    return UploadPhase.COMPLETED if progress[0] == progress[1] else UploadPhase.AWAITING_ACK


class MissionUploader(QObject):
    """Sends a mission command and follows the peer's progress acknowledgements.

    After the write succeeds the uploader waits ack_delay_s, then reads the
    progress key every poll_interval_s until it reports a/b with a == b.
    There is no polling timeout; cancel() ends an upload.
    """

    upload_state_changed = Signal(object)   # MissionUploadState
    upload_progress = Signal(str)           # "a/b"
    upload_completed = Signal(bool, str)    # success, message
    write_finished = Signal(int, object)    # generation, exception or None

    def __init__(self, transport, codec, config: dict, clock=None, drone_state=None):
        super().__init__()
        upload_config = config.get("upload", {})
        self.ack_delay_s = upload_config.get("ack_delay_s", 3.0)
        self.poll_interval_s = upload_config.get("poll_interval_s", 1.0)

        self.transport = transport
        self.codec = codec
        self.drone_state = drone_state
        self.clock = clock or MonotonicClock()
        self.logger = logging.getLogger("SCANLINK.MissionUploader")

        self.state = MissionUploadState()
        self.last_command = None
        self.next_poll_at = None
        self._generation = 0

        self.poll_timer = QTimer(self)
        self.poll_timer.setInterval(POLL_TICK_MS)
        self.poll_timer.timeout.connect(self.poll)
        self.write_finished.connect(self._on_write_finished)

    def _set_state(self, phase, progress=None, reason=None):
        self.state = MissionUploadState(phase, progress, reason)
        self.upload_state_changed.emit(self.state)

    def is_active(self):
        return self.state.phase in (UploadPhase.UPLOADING, UploadPhase.AWAITING_ACK)

    def send_mission(self, polygon: Sequence, altitude: float, heading: float) -> bool:
        """Encode and write a mission. Returns False if it could not be started."""
        points = list(polygon)
        if len(points) < MIN_MISSION_POINTS:
            reason = f"Mission needs at least {MIN_MISSION_POINTS} points"
            self.logger.warning(reason)
            self._set_state(UploadPhase.FAILED, reason=reason)
            self.upload_completed.emit(False, reason)
            return False

        if not self.transport.is_connected():
            reason = "BLE not connected"
            self.logger.warning(f"Cannot send mission: {reason}")
            self._set_state(UploadPhase.FAILED, reason=reason)
            self.upload_completed.emit(False, reason)
            return False

        self.cancel()
        command = build_mission_command(points, altitude, heading)
        self.last_command = command

        # Progress from an earlier upload must not complete this one.
        self.codec.forget(self.codec.progress_key)
        if self.drone_state is not None:
            self.drone_state.wp = None

        self._generation += 1
        generation = self._generation
        self._set_state(UploadPhase.UPLOADING)
        self.logger.info(f"Sending mission: {command.strip()}")

        future = self.transport.write(command)
        future.add_done_callback(lambda f: self._report_write(generation, f))
        return True

    def _report_write(self, generation, future):
        if future.cancelled():
            error = TransportWriteError("Write cancelled")
        else:
            error = future.exception()
        self.write_finished.emit(generation, error)

    @Slot(int, object)
    def _on_write_finished(self, generation, error):
        if generation != self._generation or self.state.phase != UploadPhase.UPLOADING:
            return

        if error is not None:
            reason = str(error) or "Mission write failed"
            self.logger.error(f"Mission write failed: {reason}")
            self._set_state(UploadPhase.FAILED, reason=reason)
            self.upload_completed.emit(False, reason)
            return

        self.logger.info(f"Mission written, checking progress in {self.ack_delay_s:.0f}s")
        self.next_poll_at = self.clock.now() + self.ack_delay_s
        self.poll_timer.start()

    @Slot()
    def poll(self):
        """Check the progress key once if a poll is due."""
        if not self.is_active() or self.next_poll_at is None:
            self.poll_timer.stop()
            return

        now = self.clock.now()
        if now < self.next_poll_at:
            return
        self.next_poll_at = now + self.poll_interval_s

        value = self.codec.latest_value(self.codec.progress_key)
        phase = classify_progress(value)
        if phase is None:
            return

        if phase == UploadPhase.COMPLETED:
            self.poll_timer.stop()
            self.next_poll_at = None
            self._set_state(UploadPhase.COMPLETED, progress=value)
            self.logger.info(f"Mission upload complete ({value})")
            self.upload_completed.emit(True, f"Mission uploaded ({value})")
            return

        if value != self.state.progress:
            self.logger.info(f"Mission upload progress: {value}")
        self._set_state(UploadPhase.AWAITING_ACK, progress=value)
        self.upload_progress.emit(value)

    def cancel(self):
        """Abandon the current upload, if any. Late write results are ignored."""
        self._generation += 1
        self.poll_timer.stop()
        self.next_poll_at = None
        if self.is_active():
            self.logger.info("Mission upload cancelled")
            self._set_state(UploadPhase.IDLE)

    def send_start(self) -> bool:
        """Tell the drone to fly the uploaded mission."""
        if not self.transport.is_connected():
            self.logger.warning("Cannot send START: BLE not connected")
            return False
        if self.drone_state is not None and not self.drone_state.is_ready():
            self.logger.warning(f"Cannot send START: drone not ready (status={self.drone_state.status})")
            return False

        future = self.transport.write(START_COMMAND)
        future.add_done_callback(self._log_start_result)
        self.logger.info("START command sent")
        return True

    def _log_start_result(self, future):
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            self.logger.error(f"START command failed: {error}")
