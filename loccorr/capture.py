"""Camera capture loop with automatic exposure and gain control."""

from __future__ import annotations

import enum
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace

import numpy as np

from loccorr.cmdlnopts import EXPOS_MAX, EXPOS_MIN
from loccorr.median import median_filter

log = logging.getLogger(__name__)

_FLT_EPSILON = 1.1920929e-07


@dataclass
class FrameFormat:
    """Frame size and offset, in pixels."""

    w: int = 0
    h: int = 0
    xoff: int = 0
    yoff: int = 0


class ExposureMethod(enum.Enum):
    AUTO = "auto"
    MANUAL = "manual"


@dataclass
class CaptureConfig:
    """Settings the capture loop reads and updates."""

    width: int = 0
    height: int = 0
    xoff: int = 0
    yoff: int = 0
    minexp: float = EXPOS_MIN
    maxexp: float = EXPOS_MAX
    gain: float = 0.0
    brightness: float = 0.0
    expmethod: ExposureMethod = ExposureMethod.AUTO
    fixedexp: float = 100.0
    medfilt: bool = False
    medseed: int = 1


class Camera(ABC):
    """Interface of a capturing device."""

    @abstractmethod
    def connect(self) -> bool:
        """Open and initialise the device; False when it cannot be used."""

    @abstractmethod
    def disconnect(self) -> None:
        """Close the device."""

    @abstractmethod
    def capture(self):
        """Grab one frame as a 2-D array, or None on failure."""

    @abstractmethod
    def set_brightness(self, value: float) -> bool:
        """Set brightness; False on failure."""

    @abstractmethod
    def set_exposure(self, value: float) -> bool:
        """Set exposure time in milliseconds; False on failure."""

    @abstractmethod
    def set_gain(self, value: float) -> bool:
        """Set gain; False on failure."""

    @abstractmethod
    def max_gain(self) -> float:
        """Largest gain the device accepts."""

    @abstractmethod
    def set_geometry(self, fmt: FrameFormat) -> FrameFormat | None:
        """Apply a frame format; return the format actually set, or None on failure."""

    @abstractmethod
    def geometry_limits(self) -> tuple[FrameFormat, FrameFormat] | None:
        """Maximal format and format steps, or None if unknown."""


class CameraCapture:
    """Drives a camera: keeps its settings in step with the configuration and grabs frames."""

    def __init__(self, camera: Camera, config: CaptureConfig):
        self.camera = camera
        self.config = config
        self.gain = 0.0
        self.gainmax = 0.0
        self.exptime = 100.0
        self.brightness = 0.0
        self.connected = False
        self.curformat = FrameFormat()
        self.maxformat = FrameFormat()
        self.stepformat = FrameFormat()
        self.reconnect_delay = 1.0
        self._old_exptime = 0.0
        self._old_gain = -1.0
        self._old_brightness = -1.0

    def connect(self) -> bool:
        """Connect the camera and read its limits; False if it cannot be connected."""
        self.disconnect()
        self.connected = bool(self.camera.connect())
        if not self.connected:
            return False
        self.gainmax = self.camera.max_gain()
        self.gain = self.config.gain
        self.brightness = self.config.brightness
        limits = self.camera.geometry_limits()
        if limits is None:
            log.warning("Can't detect camera format limits")
            return True
        self.maxformat, self.stepformat = (replace(f) for f in limits)
        self.fit_format()
        log.info("Camera connected, max gain: %.1f, max (W,H): (%d,%d)",
                 self.gainmax, self.maxformat.w, self.maxformat.h)
        return True

    def disconnect(self) -> None:
        if not self.connected:
            return
        self.connected = False
        self.camera.disconnect()

    def fit_format(self) -> bool:
        """Fit the configured frame into the camera limits and apply it."""
        mx, st, conf = self.maxformat, self.stepformat, self.config
        if mx.h < 1 or mx.w < 1:
            log.warning("Bad max format data")
            return False
        if st.h < 1 or st.w < 1:
            log.warning("Bad step format data")
            return False
        st.xoff = max(st.xoff, 1)
        st.yoff = max(st.yoff, 1)
        h = min(conf.height, mx.h)
        h -= h % st.h
        w = min(conf.width, mx.w)
        w -= w % st.w
        xoff = conf.xoff if conf.xoff + w <= mx.w else mx.w - w
        xoff -= xoff % st.xoff
        yoff = conf.yoff if conf.yoff + h <= mx.h else mx.h - h
        yoff -= yoff % st.yoff
        self.curformat = FrameFormat(w, h, xoff, yoff)
        applied = self.camera.set_geometry(replace(self.curformat))
        if applied is None:
            return False
        self.curformat = replace(applied)
        conf.height, conf.width = applied.h, applied.w
        conf.xoff, conf.yoff = applied.xoff, applied.yoff
        return True

    def calc_exposure_gain(self, newexp: float) -> float:
        """Share the wanted exposure between exposure time and gain; return the new time."""
        conf = self.config
        while newexp * 1.25 > conf.minexp and self.gain < self.gainmax - 0.9999:
            self.gain += 1.0
            newexp /= 1.25
        while newexp < conf.minexp and 1.25 * newexp < conf.maxexp and self.gain > 0.9999:
            self.gain -= 1.0
            newexp *= 1.25
        self.exptime = min(max(newexp, conf.minexp), conf.maxexp)
        return self.exptime

    def recalc_exposure(self, image) -> None:
        """Adjust exposure so that the 100 brightest pixels sit near level 230..253."""
        conf = self.config
        if self.exptime < conf.minexp:
            self.exptime = conf.minexp
            return
        if self.exptime > conf.maxexp:
            self.exptime = conf.maxexp
            return
        values = np.clip(np.asarray(image).ravel(), 0, 255).astype(np.intp)
        histogram = np.bincount(values, minlength=256)
        idx100 = -1
        total = 0
        for level in range(255, -1, -1):
            total += int(histogram[level])
            if total > 100:
                idx100 = level
                break
        if 230 < idx100 < 253:
            return
        if idx100 > 253:
            self.calc_exposure_gain(0.7 * self.exptime)
        elif idx100 > 5:
            self.calc_exposure_gain(self.exptime * 230.0 / idx100)
        else:
            self.calc_exposure_gain(self.exptime * 50.0)

    def _apply_settings(self) -> None:
        cam, conf = self.camera, self.config
        if abs(self._old_brightness - self.brightness) > _FLT_EPSILON:
            if cam.set_brightness(self.brightness):
                self._old_brightness = self.brightness
            else:
                log.warning("Can't change brightness to %g", self.brightness)
        self.exptime = min(max(self.exptime, conf.minexp), conf.maxexp)
        if abs(self._old_exptime - self.exptime) > _FLT_EPSILON:
            if cam.set_exposure(self.exptime):
                self._old_exptime = self.exptime
            else:
                log.warning("Can't change exposition time to %gms", self.exptime)
        self.gain = min(self.gain, self.gainmax)
        if abs(self._old_gain - self.gain) > _FLT_EPSILON:
            if cam.set_gain(self.gain):
                self._old_gain = self.gain
            else:
                log.warning("Can't change gain to %g", self.gain)
        wanted = FrameFormat(conf.width, conf.height, conf.xoff, conf.yoff)
        if self.curformat != wanted:
            self.fit_format()

    def capture_once(self, process=None) -> bool:
        """Do one pass of the capture loop; True if a frame was grabbed."""
        if not self.connected:
            self.connected = bool(self.camera.connect())
            time.sleep(self.reconnect_delay)
            self.fit_format()
            return False
        self._apply_settings()
        image = self.camera.capture()
        if image is None:
            log.warning("Can't grab image")
            self.disconnect()
            return False
        conf = self.config
        if conf.expmethod is ExposureMethod.AUTO:
            self.recalc_exposure(image)
        else:
            if abs(conf.fixedexp - self.exptime) > _FLT_EPSILON:
                self.exptime = conf.fixedexp
            if abs(conf.gain - self.gain) > _FLT_EPSILON:
                self.gain = conf.gain
            if abs(conf.brightness - self.brightness) > _FLT_EPSILON:
                self.brightness = conf.brightness
        if process is not None:
            if conf.medfilt:
                try:
                    image = median_filter(image, conf.medseed)
                except ValueError:
                    pass
            process(image)
        return True

    def run(self, process, stop) -> None:
        """Capture until ``stop`` (an event) is set, then disconnect."""
        try:
            while not stop.is_set():
                self.capture_once(process)
        finally:
            self.disconnect()

    def status(self, messageid, impath, counter, fps, center) -> str:
        """JSON line describing the capture state."""
        if messageid is None:
            messageid = "unknown"
        xc, yc = center
        method = "auto" if self.config.expmethod is ExposureMethod.AUTO else "manual"
        return (
            '{ "messageid": "%s", "camstatus": "%sconnected", "impath": "%s", "imctr": %d, '
            '"fps": %.3f, "expmethod": "%s", "exposition": %g, "gain": %g, "brightness": %g, '
            '"xcenter": %.1f, "ycenter": %.1f }\n'
            % (messageid, "" if self.connected else "dis", impath, counter, fps,
               method, self.exptime, self.gain, self.brightness, xc, yc)
        )