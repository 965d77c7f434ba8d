# scanlink/core/telemetry_codec.py

import logging
import queue
import re
import threading
import time
from dataclasses import dataclass
from typing import Dict, List, Optional
from PySide6.QtCore import QObject, Signal

from scanlink.core.errors import MalformedTelemetryError

QUOTED_PATTERN = re.compile(r'^([A-Z_][A-Z0-9_]*)\s*:\s*"([^"]*)"$')
BARE_PATTERN = re.compile(r'^([A-Z_][A-Z0-9_]*)\s*:\s*(.+)$')
LINE_SPLIT = re.compile(r'\r?\n')

DEFAULT_PROGRESS_KEY = "WP"
DEFAULT_QUEUE_SIZE = 256


@dataclass(frozen=True)
class TelemetryField:
    key: str
    value: str
    timestamp: float


def parse_line(line, timestamp=None) -> TelemetryField:
    """Parse one KEY:"value" or KEY:value line."""
    trimmed = line.strip()
    if timestamp is None:
        timestamp = time.time()

    match = QUOTED_PATTERN.match(trimmed)
    if match:
        return TelemetryField(match.group(1), match.group(2), timestamp)

    match = BARE_PATTERN.match(trimmed)
    if match:
        return TelemetryField(match.group(1), match.group(2).strip(), timestamp)

    raise MalformedTelemetryError(f"Unparseable telemetry line: {trimmed[:50]!r}")


def parse_frame(frame, timestamp=None) -> List[TelemetryField]:
    """Parse every line of a frame; noise lines are dropped."""
    if timestamp is None:
        timestamp = time.time()

    fields = []
    for line in LINE_SPLIT.split(frame.strip()):
        if not line.strip():
            continue
        try:
            fields.append(parse_line(line, timestamp))
        except MalformedTelemetryError:
            continue
    return fields


class TelemetryCodec(QObject):
    """Turns inbound notification text into per-key telemetry.

    feed() runs on the notification path: it parses, updates the latest-value
    map and enqueues forwarded fields without blocking. A dispatcher thread
    drains the bounded queue and emits field_updated; when the queue is
    full the oldest pending field is dropped.
    """

    field_updated = Signal(object)      # TelemetryField

    def __init__(self, config: dict):
        super().__init__()
        telemetry_config = config.get("telemetry", {})
        self.progress_key = telemetry_config.get("progress_key", DEFAULT_PROGRESS_KEY)
        self.queue_size = telemetry_config.get("queue_size", DEFAULT_QUEUE_SIZE)

        self.logger = logging.getLogger("SCANLINK.TelemetryCodec")

        self._lock = threading.Lock()
        self._latest: Dict[str, TelemetryField] = {}
        self._forwarded: Dict[str, str] = {}
        self._queue = queue.Queue(maxsize=self.queue_size)
        self.dropped = 0

        self.running = False
        self.thread = None

    def start(self):
        if self.running:
            return
        self.running = True
        self.thread = threading.Thread(target=self._loop, daemon=True, name="TelemetryDispatcher")
        self.thread.start()

    def stop(self):
        self.running = False
        if self.thread:
            self.thread.join(timeout=2.0)
            self.thread = None

    def _loop(self):
        while self.running:
            try:
                field = self._queue.get(timeout=0.1)
            except queue.Empty:
                continue
            self.field_updated.emit(field)

    def feed(self, frame) -> List[TelemetryField]:
        """Parse a frame and queue the fields that should be forwarded."""
        fields = parse_frame(frame)
        forwarded = []

        with self._lock:
            for field in fields:
                self._latest[field.key] = field
                if field.key == self.progress_key or self._forwarded.get(field.key) != field.value:
                    self._forwarded[field.key] = field.value
                    forwarded.append(field)

        for field in forwarded:
            self.logger.debug(f"{field.key}: \"{field.value}\"")
            self._enqueue(field)
        return forwarded

    def _enqueue(self, field):
        while True:
            try:
                self._queue.put_nowait(field)
                return
            except queue.Full:
                try:
                    self._queue.get_nowait()
                    self.dropped += 1
                except queue.Empty:
                    pass

    def drain(self) -> int:
        """Emit every queued field on the calling thread."""
        count = 0
        while True:
            try:
                field = self._queue.get_nowait()
            except queue.Empty:
                return count
            self.field_updated.emit(field)
            count += 1

    def pending(self) -> int:
        return self._queue.qsize()

    def snapshot(self) -> Dict[str, TelemetryField]:
        with self._lock:
            return dict(self._latest)

    def get(self, key) -> Optional[TelemetryField]:
        with self._lock:
            return self._latest.get(key)

    def latest_value(self, key) -> Optional[str]:
        field = self.get(key)
        return field.value if field else None

    def forget(self, key):
        """Drop the stored value for key so the next one is always forwarded."""
        with self._lock:
            self._latest.pop(key, None)
            self._forwarded.pop(key, None)

    def reset(self):
        with self._lock:
            self._latest.clear()
            self._forwarded.clear()
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                break
