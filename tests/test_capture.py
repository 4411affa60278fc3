import json
import threading

import numpy as np
import pytest

from loccorr.capture import (
    Camera,
    CameraCapture,
    CaptureConfig,
    ExposureMethod,
    FrameFormat,
)
from loccorr.median import median_filter


class FakeCamera(Camera):
    def __init__(self, frames=None, limits=None, gain_max=0.0, connect_ok=True):
        self.frames = list(frames or [])
        self.limits = limits
        self.gain_max = gain_max
        self.connect_ok = connect_ok
        self.exposures = []
        self.gains = []
        self.brightnesses = []
        self.geometries = []
        self.disconnects = 0

    def connect(self):
        return self.connect_ok

    def disconnect(self):
        self.disconnects += 1

    def capture(self):
        return self.frames.pop(0) if self.frames else None

    def set_brightness(self, value):
        self.brightnesses.append(value)
        return True

    def set_exposure(self, value):
        self.exposures.append(value)
        return True

    def set_gain(self, value):
        self.gains.append(value)
        return True

    def max_gain(self):
        return self.gain_max

    def set_geometry(self, fmt):
        self.geometries.append(fmt)
        return fmt

    def geometry_limits(self):
        return self.limits


LIMITS = (FrameFormat(1000, 800, 1000, 800), FrameFormat(8, 4, 2, 2))


def make(frames=None, config=None, **kw):
    cam = FakeCamera(frames=frames, limits=kw.pop("limits", LIMITS), **kw)
    cfg = config or CaptureConfig(width=505, height=402, xoff=600, yoff=11)
    cc = CameraCapture(cam, cfg)
    cc.reconnect_delay = 0.0
    return cam, cfg, cc


def test_connect_fits_format_into_limits():
    cam, cfg, cc = make()
    assert cc.connect() is True
    mx, st = LIMITS
    fmt = cc.curformat
    assert fmt.w % st.w == 0 and fmt.h % st.h == 0
    assert fmt.w <= 505 and fmt.h <= 402
    assert fmt.xoff + fmt.w <= mx.w and fmt.yoff + fmt.h <= mx.h
    assert fmt.xoff % st.xoff == 0 and fmt.yoff % st.yoff == 0
    assert (cfg.width, cfg.height, cfg.xoff, cfg.yoff) == (fmt.w, fmt.h, fmt.xoff, fmt.yoff)
    assert cam.geometries[-1] == fmt


def test_connect_failure():
    cam, cfg, cc = make(connect_ok=False)
    assert cc.connect() is False
    assert cc.connected is False


def test_fit_format_bad_limits():
    cam, cfg, cc = make(limits=None)
    assert cc.connect() is True
    assert cc.fit_format() is False
    assert cam.geometries == []


def test_calc_exposure_gain_stays_in_limits():
    cam, cfg, cc = make(gain_max=10.0)
    cc.connect()
    for wanted in (1e-6, 0.5, 50.0, 1e6):
        exp = cc.calc_exposure_gain(wanted)
        assert cfg.minexp <= exp <= cfg.maxexp
        assert 0.0 <= cc.gain <= cc.gainmax
        assert cc.exptime == exp


def test_gain_raised_before_long_exposure():
    cam, cfg, cc = make(gain_max=5.0)
    cc.connect()
    cc.calc_exposure_gain(100.0)
    assert cc.gain == 5.0
    assert cc.exptime < 100.0


def test_bright_image_shortens_exposure():
    cam, cfg, cc = make()
    cc.connect()
    start = cc.exptime
    cc.recalc_exposure(np.full((20, 20), 255, dtype=np.uint8))
    assert cc.exptime == pytest.approx(0.7 * start)


def test_good_image_keeps_exposure():
    cam, cfg, cc = make()
    cc.connect()
    start = cc.exptime
    cc.recalc_exposure(np.full((20, 20), 240, dtype=np.uint8))
    assert cc.exptime == start


def test_dark_image_hits_max_exposure():
    cam, cfg, cc = make()
    cc.connect()
    cc.recalc_exposure(np.zeros((20, 20), dtype=np.uint8))
    assert cc.exptime == cfg.maxexp


def test_exposure_below_minimum_reset():
    cam, cfg, cc = make()
    cc.exptime = cfg.minexp / 10
    cc.recalc_exposure(np.zeros((20, 20), dtype=np.uint8))
    assert cc.exptime == cfg.minexp


def test_capture_once_applies_settings_and_processes():
    frame = np.full((20, 20), 240, dtype=np.uint8)
    cam, cfg, cc = make(frames=[frame])
    cc.connect()
    got = []
    assert cc.capture_once(got.append) is True
    assert cam.exposures == [cc.exptime]
    assert cam.gains == [cc.gain]
    assert cam.brightnesses == [cc.brightness]
    assert len(got) == 1 and np.array_equal(got[0], frame)


def test_capture_failure_disconnects():
    cam, cfg, cc = make(frames=[])
    cc.connect()
    assert cc.capture_once(lambda im: None) is False
    assert cc.connected is False
    assert cam.disconnects == 1


def test_reconnect_when_disconnected():
    cam, cfg, cc = make()
    assert cc.capture_once() is False
    assert cc.connected is True


def test_manual_mode_uses_fixed_values():
    cfg = CaptureConfig(expmethod=ExposureMethod.MANUAL, fixedexp=42.0, gain=0.0,
                        brightness=3.0, width=16, height=8)
    cam, _, cc = make(frames=[np.zeros((8, 16), dtype=np.uint8)], config=cfg)
    cc.connect()
    cc.capture_once()
    assert cc.exptime == 42.0
    assert cc.brightness == 3.0


def test_median_filtering_before_processing():
    rng = np.random.default_rng(1)
    frame = rng.integers(0, 256, (12, 12)).astype(np.uint8)
    cfg = CaptureConfig(medfilt=True, medseed=1, width=16, height=8)
    cam, _, cc = make(frames=[frame.copy()], config=cfg)
    cc.connect()
    got = []
    cc.capture_once(got.append)
    assert np.array_equal(got[0], median_filter(frame, 1))


def test_run_stops_and_disconnects():
    frames = [np.full((10, 10), 240, dtype=np.uint8) for _ in range(5)]
    cam, cfg, cc = make(frames=frames)
    cc.connect()
    stop = threading.Event()
    seen = []

    def process(im):
        seen.append(im)
        if len(seen) == 3:
            stop.set()

    cc.run(process, stop)
    assert len(seen) == 3
    assert cc.connected is False
    assert cam.disconnects == 1


def test_status_json():
    cam, cfg, cc = make()
    cc.connect()
    text = cc.status("abc", "/tmp/out.jpg", 7, 2.5, (10.25, 20.5))
    assert text.endswith("\n")
    data = json.loads(text)
    assert data["messageid"] == "abc"
    assert data["camstatus"] == "connected"
    assert data["impath"] == "/tmp/out.jpg"
    assert data["imctr"] == 7
    assert data["expmethod"] == "auto"
    assert data["exposition"] == cc.exptime
    cc.disconnect()
    data = json.loads(cc.status(None, "x", 0, 0.0, (0.0, 0.0)))
    assert data["camstatus"] == "disconnected"
    assert data["messageid"] == "unknown"