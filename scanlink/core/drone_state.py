# scanlink/core/drone_state.py

import math
import re
import time

from scanlink.core.geo_projection import GeoPoint

DEFAULT_HOME = GeoPoint(21.002958587069653, 105.73365778133193)
HOME_TOLERANCE_DEG = 1e-6
STATUS_READY = 1
LEADING_INT = re.compile(r"\s*([+-]?\d+)")


class DroneState:
    def __init__(self, default_home=None):
        self.default_home = default_home or DEFAULT_HOME

        self.home = None            # GeoPoint from HOME telemetry
        self.battery_level = None   # 0-100
        self.status = None          # 1 = ready for mission
        self.ekf = None
        self.wp = None              # raw "a/b" upload progress
        self.last_update = None

    @classmethod
    def from_config(cls, config: dict):
        home = config.get("mission", {}).get("default_home")
        if home:
            return cls(GeoPoint(home.get("latitude", DEFAULT_HOME.latitude),
                                home.get("longitude", DEFAULT_HOME.longitude)))
        return cls()

    def apply_field(self, field) -> bool:
        """Apply one telemetry field. Returns True when state changed."""
        self.last_update = time.time()
        key, value = field.key, field.value

        if key == "HOME":
            return self._apply_home(value)

        if key == "BATTERY":
            try:
                battery = float(value)
            except ValueError:
                return False
            if not 0 <= battery <= 100:
                return False
            level = int(math.floor(battery + 0.5))
            changed = level != self.battery_level
            self.battery_level = level
            return changed

        if key == "STATUS":
            status = _parse_int(value)
            if status is None:
                return False
            changed = status != self.status
            self.status = status
            return changed

        if key == "EKF":
            ekf = _parse_int(value)
            if ekf is None:
                return False
            changed = ekf != self.ekf
            self.ekf = ekf
            return changed

        if key == "WP":
            changed = value != self.wp
            self.wp = value
            return changed

        return False

    def _apply_home(self, value):
        parts = value.split(",")
        if len(parts) != 2:
            return False
        try:
            latitude = float(parts[0].strip()) / 1e7
            longitude = float(parts[1].strip()) / 1e7
        except ValueError:
            return False

        if (self.home is not None and
                abs(self.home.latitude - latitude) <= HOME_TOLERANCE_DEG and
                abs(self.home.longitude - longitude) <= HOME_TOLERANCE_DEG):
            return False
        self.home = GeoPoint(latitude, longitude)
        return True

    def is_ready(self):
        return self.status == STATUS_READY

    def has_home(self):
        return self.home is not None

    def home_position(self) -> GeoPoint:
        """HOME from telemetry, or the configured default until one arrives."""
        return self.home if self.home is not None else self.default_home

    def reset(self):
        self.home = None
        self.battery_level = None
        self.status = None
        self.ekf = None
        self.wp = None
        self.last_update = None

    def get_telemetry(self):
        home = self.home_position()
        return {
            'home_lat': home.latitude,
            'home_lon': home.longitude,
            'has_home': self.has_home(),
            'battery': self.battery_level,
            'status': self.status,
            'is_ready': self.is_ready(),
            'ekf': self.ekf,
            'wp': self.wp,
            'last_update': self.last_update,
        }


def _parse_int(value):
    # Leading integer, so "1 " and "1.0" both read as 1.
    match = LEADING_INT.match(value)
    return int(match.group(1)) if match else None
