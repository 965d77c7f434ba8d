from scanlink.core.drone_state import DEFAULT_HOME, DroneState
from scanlink.core.geo_projection import GeoPoint
from scanlink.core.telemetry_codec import parse_line


def apply(state, line):
    return state.apply_field(parse_line(line))


def test_home_is_scaled_from_e7():
    state = DroneState()
    assert state.home_position() == DEFAULT_HOME
    assert not state.has_home()

    assert apply(state, 'HOME:"210029585,1057336577"')
    home = state.home_position()
    assert abs(home.latitude - 21.0029585) < 1e-9
    assert abs(home.longitude - 105.7336577) < 1e-9
    assert state.has_home()


def test_home_within_tolerance_is_not_a_change():
    state = DroneState()
    apply(state, 'HOME:"210029585,1057336577"')
    assert not apply(state, 'HOME:"210029586,1057336577"')


def test_malformed_home_is_ignored():
    state = DroneState()
    assert not apply(state, 'HOME:"12345"')
    assert not apply(state, 'HOME:"a,b"')
    assert state.home is None


def test_battery_range_and_rounding():
    state = DroneState()
    assert apply(state, "BATTERY:87.6")
    assert state.battery_level == 88
    assert not apply(state, "BATTERY:120")
    assert not apply(state, "BATTERY:low")
    assert state.battery_level == 88


def test_battery_half_rounds_up():
    state = DroneState()
    apply(state, "BATTERY:42.5")
    assert state.battery_level == 43
    apply(state, "BATTERY:42.4")
    assert state.battery_level == 42
    apply(state, "BATTERY:0.5")
    assert state.battery_level == 1


def test_status_controls_readiness():
    state = DroneState()
    assert not state.is_ready()
    apply(state, "STATUS:0")
    assert not state.is_ready()
    apply(state, "STATUS:1")
    assert state.is_ready()


def test_ekf_and_progress():
    state = DroneState()
    apply(state, "EKF:3")
    apply(state, "WP:2/7")
    telemetry = state.get_telemetry()
    assert telemetry["ekf"] == 3
    assert telemetry["wp"] == "2/7"
    assert telemetry["home_lat"] == DEFAULT_HOME.latitude


def test_unknown_keys_are_ignored():
    state = DroneState()
    assert not apply(state, "RSSI:-60")


def test_from_config_default_home():
    config = {"mission": {"default_home": {"latitude": 10.5, "longitude": 106.5}}}
    assert DroneState.from_config(config).home_position() == GeoPoint(10.5, 106.5)
    assert DroneState.from_config({}).home_position() == DEFAULT_HOME
