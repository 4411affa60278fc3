"""Control of the U, V and focus steppers and the relay board through the local CAN server."""

from __future__ import annotations

import logging
import math
import re
import select
import socket
import sys
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

from loccorr.cmdlnopts import DEFAULT_MAXUSTEPS, DEFAULT_MAXVSTEPS, DEFAULT_STEPPERSPORT
from loccorr.pusiproto import (
    ANSOK,
    COORDTOLERANCE,
    CURPOS_STATUS,
    F_RELSTEPS,
    F_SETZERO,
    F_STATUS,
    FAIL,
    MAX_ERR_CTR,
    NCONSEQ,
    OK,
    PAR_STATUS,
    REGISTER_FOCUS,
    REGISTER_RELAY,
    REGISTER_U,
    REGISTER_V,
    RELAY_CMD,
    SET_F_SPEED,
    SET_U_SPEED,
    SET_V_SPEED,
    STEPS_STATUS,
    U_RELSTEPS,
    U_SETZERO,
    U_STATUS,
    UV_EDGESTEPS,
    UV_MAXSTEPS,
    V_RELSTEPS,
    V_SETZERO,
    V_STATUS,
    WAITANSTIME,
    MotorState,
    PusiState,
    RelayCommand,
    RelayState,
    SetupStage,
    get_param,
    param_ok,
    parse_relay_answer,
    parse_state_name,
    relay_request,
    status_json,
    undefined_state_message,
)

log = logging.getLogger(__name__)

_DBL_EPSILON = sys.float_info.epsilon
_ANSWER_LIMIT = 2047
_INT_RE = re.compile(r"\s*([+-]?\d+)")

_U, _V, _F = 0, 1, 2


def _atoi(text: str) -> int:
    m = _INT_RE.match(text)
    return int(m.group(1)) if m else 0


@dataclass
class StepperConfig:
    """Stepper limits, axis calibration and target position."""

    stpserverport: int = DEFAULT_STEPPERSPORT
    max_usteps: int = DEFAULT_MAXUSTEPS
    max_vsteps: int = DEFAULT_MAXVSTEPS
    fmaxsteps: int = 64000
    min_fpos: int = 0
    max_fpos: int = 64000
    kcorr: float = 1.0
    kxu: float = 0.0
    kyu: float = 0.0
    kxv: float = 0.0
    kyv: float = 0.0
    xtarget: float = -1.0
    ytarget: float = -1.0
    xoff: int = 0
    yoff: int = 0


class CanServerLink:
    """TCP connection to the CAN server; every command is answered by ``OK`` and data."""

    def __init__(self, port: int, host: str = "localhost"):
        self.port = port
        self.host = host
        self.answer_timeout = WAITANSTIME
        self._sock: socket.socket | None = None
        self._lock = threading.Lock()

    @property
    def connected(self) -> bool:
        return self._sock is not None

    def connect(self) -> bool:
        """Open the connection; False if the server cannot be reached."""
        self.close()
        try:
            sock = socket.create_connection((self.host, self.port), timeout=5.0)
        except OSError as exc:
            log.warning("Can't connect to CAN server: %s", exc)
            return False
        sock.settimeout(None)
        self._sock = sock
        return True

    def close(self) -> None:
        if self._sock is not None:
            try:
                self._sock.close()
            except OSError:
                pass
            self._sock = None

    def _can_read(self) -> bool:
        if self._sock is None:
            return False
        try:
            ready, _, _ = select.select([self._sock], [], [], 0.01)
        except (OSError, ValueError):
            return False
        return bool(ready)

    def _clear(self) -> None:
        while self._can_read():
            try:
                if not self._sock.recv(256):
                    break
            except OSError:
                break

    def _wait_ok(self) -> str | None:
        buf = bytearray()
        t0 = time.monotonic()
        misses = 0
        while (time.monotonic() - t0 < self.answer_timeout
               and len(buf) < _ANSWER_LIMIT and self._sock is not None):
            if not self._can_read():
                misses += 1
                if misses > 3:
                    break
                continue
            misses = 0
            try:
                data = self._sock.recv(_ANSWER_LIMIT - len(buf))
            except OSError:
                return None
            if not data:
                break
            buf += data
        text = buf.decode("utf-8", errors="replace")
        i = text.find(ANSOK)
        if i < 0:
            log.warning("didn't get OK answer")
            return None
        return text[i + len(ANSOK):]

    def send(self, message: str) -> str | None:
        """Send a command; the text after ``OK``, or None on failure or no ``OK``."""
        if self._sock is None:
            return None
        with self._lock:
            self._clear()
            try:
                self._sock.sendall(message.encode())
            except OSError:
                log.warning("send_message(): send() failed")
                return None
            return self._wait_ok()

    def send_nocheck(self, message: str) -> None:
        """Send a command without waiting for its answer."""
        if self._sock is None:
            return
        with self._lock:
            self._clear()
            try:
                self._sock.sendall(message.encode())
            except OSError as exc:
                log.warning("send: %s", exc)


class PusiController:
    """State machine that moves the steppers: setup of axes, finding target, fixing position."""

    def __init__(self, config: StepperConfig, link=None,
                 save_config: Callable[[], None] | None = None):
        self.config = config
        self.link = link if link is not None else CanServerLink(config.stpserverport)
        self.save_config = save_config
        self.state = PusiState.DISCONN
        self.stage = SetupStage.NONE
        self.relay_state = RelayState()
        self.fixerr = False
        self.poll_interval = 0.01
        self.reconnect_delay = 1.0
        self.retry_delay = 5.0
        self._positions = [0, 0, 0]
        self._moving = [False, False, False]
        self._ismoving = False
        self._coords_ready = False
        self._coords_trusted = True
        self._xc = 0.0
        self._yc = 0.0
        self._chfocus = False
        self._newfocpos = 0
        self._du = 0
        self._dv = 0
        self._motorsoff = False
        self._errctr = 0
        self._first = True
        self._xprev = 0.0
        self._yprev = 0.0
        self._nhit = 0
        self._calib: dict[str, float] = {}

    @property
    def motors(self) -> tuple[MotorState, MotorState, MotorState]:
        """States of the U, V and focus motors."""
        return tuple(MotorState(m, p) for m, p in zip(self._moving, self._positions))

    # ---- low level ----

    def _send(self, message: str) -> str | None:
        ans = self.link.send(message)
        if ans is not None:
            self._errctr = 0
        return ans

    def _drop(self) -> None:
        self.link.close()
        self._moving = [False, False, False]
        self._ismoving = False
        self.state = PusiState.DISCONN
        log.warning("Canserver disconnected")

    def _too_much_errors(self) -> bool:
        self._errctr += 1
        if self._errctr >= MAX_ERR_CTR:
            log.error("Canserver: too much errors -> DISCONNECT")
            self._errctr = 0
            self._drop()
            return True
        return False

    def _check_relay(self) -> bool:
        ans = self._send(f"{RELAY_CMD} {int(RelayCommand.RELAY)}")
        args = parse_relay_answer(ans)
        if len(args) != 2 or args[0] != RelayCommand.RELAY:
            return False
        relays = args[1]
        ans = self._send(f"{RELAY_CMD} {int(RelayCommand.PWM)}")
        args = parse_relay_answer(ans)
        if len(args) != 4 or args[0] != RelayCommand.PWM:
            return False
        pwm = tuple(args[1:4])
        buttons = []
        for btn in range(4):
            ans = self._send(f"{RELAY_CMD} {int(RelayCommand.BTNS)} {btn}")
            args = parse_relay_answer(ans)
            if len(args) != 8 or args[0] != RelayCommand.BTNS:
                return False
            buttons.append(args[2])
        self.relay_state = RelayState(relays, pwm, tuple(buttons))
        return True

    def _set_speed(self, message: str, name: str) -> bool:
        ans = self._send(message)
        ok = True
        if ans is None:
            log.error("Can't set %s motor speed", name)
            ok = False
        if not ans:
            log.error("no %s motor", name)
            ok = False
        return ok

    def _connect_server(self) -> bool:
        self._drop()
        if not self.link.connect():
            return False
        for msg in (REGISTER_U, REGISTER_V, REGISTER_FOCUS, REGISTER_RELAY):
            self.link.send_nocheck(msg)
        results = [
            self._check_relay(),
            self._set_speed(SET_U_SPEED, "U"),
            self._set_speed(SET_V_SPEED, "V"),
            self._set_speed(SET_F_SPEED, "F"),
        ]
        if not any(results):
            self._drop()
            return False
        self.state = PusiState.RELAX
        self.stage = SetupStage.NONE
        return True

    def _moving_finished(self, message: str, axis: int) -> bool:
        ans = self._send(message)
        val = get_param(PAR_STATUS, ans) if ans is not None else None
        if val is None:
            log.warning("send(%s) false: %s", message, ans)
            self._too_much_errors()
            return False
        self._errctr = 0
        pos = get_param(CURPOS_STATUS, ans)
        if pos is not None:
            self._positions[axis] = int(pos)
        else:
            log.debug("%s not found in '%s'", CURPOS_STATUS, ans)
        return int(val) == 0

    def _move_motor(self, command: str, steps: int) -> bool:
        log.debug("move %s -> %d", command, steps)
        ans = self._send(f"{command} {steps}")
        if ans is None:
            if self._too_much_errors():
                log.warning("Canserver: can't move motor")
            return False
        if not param_ok(STEPS_STATUS, ans):
            log.warning("NO OK in %s", ans)
            return False
        return True

    def _motor_u(self, steps: int) -> bool:
        return self._move_motor(U_RELSTEPS, steps)

    def _motor_v(self, steps: int) -> bool:
        return self._move_motor(V_RELSTEPS, steps)

    def _motor_f(self, steps: int) -> bool:
        return self._move_motor(F_RELSTEPS, steps)

    def _stage_failed(self, message: str) -> None:
        log.warning(message)
        self.stage = SetupStage.INIT
        if self._too_much_errors():
            self.stage = SetupStage.NONE

    def _take_coords(self) -> tuple[float, float] | None:
        if not self._coords_ready:
            return None
        self._coords_ready = False
        return self._xc, self._yc

    # ---- stage processing ----

    def _process_middle_stage(self) -> None:
        conf = self.config
        if self.stage == SetupStage.INIT:
            if (self._motor_f(-conf.fmaxsteps) and self._motor_u(-UV_MAXSTEPS)
                    and self._motor_v(-UV_MAXSTEPS)):
                self.stage = SetupStage.WAITUV0
            return
        if self.stage == SetupStage.WAITUV0:
            if (self._motor_f(conf.fmaxsteps // 2)
                    and self._motor_u(conf.max_usteps + UV_EDGESTEPS)
                    and self._motor_v(conf.max_vsteps + UV_EDGESTEPS)):
                self.stage = SetupStage.WAITUVMID
            else:
                self._stage_failed("GOTO middle: err in move command")
            return
        if self.stage == SetupStage.WAITUVMID:
            if (self._send(F_SETZERO) is None or self._send(U_SETZERO) is None
                    or self._send(V_SETZERO) is None):
                self._stage_failed("GOTO middle: err in set 0 command")
                return
            self._positions = [0, 0, 0]
        self.stage = SetupStage.NONE
        self.state = PusiState.RELAX

    def _process_setup_stage(self) -> None:
        conf = self.config
        stage = self.stage
        if stage == SetupStage.INIT:
            if self._motor_u(-UV_MAXSTEPS) and self._motor_v(-UV_MAXSTEPS):
                self.stage = SetupStage.WAITUV0
        elif stage == SetupStage.WAITUV0:
            if (self._motor_u(conf.max_usteps + UV_EDGESTEPS)
                    and self._motor_v(conf.max_usteps + UV_EDGESTEPS)):
                self.stage = SetupStage.WAITUVMID
            else:
                self._stage_failed("Can't move U/V -> 0")
        elif stage == SetupStage.WAITUVMID:
            if self._motor_u(-conf.max_usteps):
                self.stage = SetupStage.WAITU0
            else:
                self._stage_failed("Can't move U -> middle")
        elif stage == SetupStage.WAITU0:
            xy = self._take_coords()
            if xy is None:
                return
            self._calib["X0U"], self._calib["Y0U"] = xy
            if self._motor_u(2 * conf.max_usteps):
                self.stage = SetupStage.WAITUMAX
            else:
                self._stage_failed("Can't move U -> max")
        elif stage == SetupStage.WAITUMAX:
            xy = self._take_coords()
            if xy is None:
                return
            self._calib["XmU"], self._calib["YmU"] = xy
            if self._motor_u(-conf.max_usteps) and self._motor_v(-conf.max_vsteps):
                self.stage = SetupStage.WAITV0
            else:
                self._stage_failed("Can't move U -> mid OR/AND V -> min")
        elif stage == SetupStage.WAITV0:
            xy = self._take_coords()
            if xy is None:
                return
            self._calib["X0V"], self._calib["Y0V"] = xy
            if self._motor_v(2 * conf.max_vsteps):
                self.stage = SetupStage.WAITVMAX
            else:
                self._stage_failed("Can't move V -> max")
        elif stage == SetupStage.WAITVMAX:
            xy = self._take_coords()
            if xy is None:
                return
            self._calib["XmV"], self._calib["YmV"] = xy
            self._calibrate()
            self._motor_v(-conf.max_vsteps)
            self.stage = SetupStage.FINISH
        elif stage == SetupStage.FINISH:
            if self._send(U_SETZERO) is None or self._send(V_SETZERO) is None:
                return
            self._positions[_U] = self._positions[_V] = 0
            self.stage = SetupStage.NONE
            self.state = PusiState.RELAX

    def _calibrate(self) -> None:
        c, conf = self._calib, self.config
        dxu, dyu = c["XmU"] - c["X0U"], c["YmU"] - c["Y0U"]
        dxv, dyv = c["XmV"] - c["X0V"], c["YmV"] - c["Y0V"]
        squ, sqv = math.hypot(dxu, dyu), math.hypot(dxv, dyv)
        log.debug("dxU=%.1f, dyU=%.1f, dxV=%.1f, dyV=%.1f", dxu, dyu, dxv, dyv)
        if squ < _DBL_EPSILON or sqv < _DBL_EPSILON:
            return
        ku = 2 * conf.max_usteps / squ
        kv = 2 * conf.max_vsteps / sqv
        sa, ca, sb, cb = dyu / squ, dxu / squ, dyv / sqv, dxv / sqv
        # [dX dY] = M*[dU dV], M = [ca/KU cb/KV; sa/KU sb/KV]; K = inv(M)
        det = ca / ku * sb / kv - sa / ku * cb / kv
        if det == 0:
            return
        mul = 1 / det
        conf.kxu = mul * sb / kv
        conf.kyu = -mul * cb / kv
        conf.kxv = -mul * sa / ku
        conf.kyv = mul * ca / ku
        log.debug("Kxu=%g, Kyu=%g; Kxv=%g, Kyv=%g", conf.kxu, conf.kyu, conf.kxv, conf.kyv)
        if self.save_config is not None:
            self.save_config()

    def _process_target_stage(self, x: float, y: float) -> bool:
        if abs(x - self._xprev) > COORDTOLERANCE or abs(y - self._yprev) > COORDTOLERANCE:
            self._nhit = 0
            self._xprev, self._yprev = x, y
            return False
        self._nhit += 1
        if self._nhit < NCONSEQ:
            return False
        self.config.xtarget = x + self.config.xoff
        self.config.ytarget = y + self.config.yoff
        log.info("Got target coordinates: (%.1f, %.1f)", x, y)
        if self.save_config is not None:
            self.save_config()
        self._nhit = 0
        self._xprev = self._yprev = 0.0
        return True

    def _try_correct(self, dx: float, dy: float) -> bool:
        conf = self.config
        du = conf.kcorr * (conf.kxu * dx + conf.kyu * dy)
        dv = conf.kcorr * (conf.kxv * dx + conf.kyv * dy)
        unew = self._positions[_U] + int(du)
        vnew = self._positions[_V] + int(dv)
        ufixed = unew + self._positions[_F]
        vfixed = vnew + self._positions[_F]
        if (abs(ufixed) > conf.max_usteps or abs(vfixed) > conf.max_vsteps):
            log.warning("Correction failed, curpos: %d, %d, should move to %d, %d",
                        self._positions[_U], self._positions[_V], unew, vnew)
            return False
        ok = self._motor_u(int(du)) and self._motor_v(int(dv))
        if not ok and self._too_much_errors():
            log.error("Canserver: stop corrections")
        return ok

    def _process_fix(self) -> None:
        xy = self._take_coords()
        if xy is None:
            return
        conf = self.config
        xdev = conf.xtarget - conf.xoff - xy[0]
        ydev = conf.ytarget - conf.yoff - xy[1]
        corr = math.hypot(xdev, ydev)
        if conf.xtarget < 1.0 or conf.ytarget < 1.0 or corr < COORDTOLERANCE:
            return
        if self._try_correct(xdev, ydev):
            self.fixerr = False
        else:
            log.warning("failed to correct")
            self.fixerr = True

    # ---- public interface ----

    def connect(self) -> bool:
        """Connect to the CAN server and set the motors up; False if it failed."""
        return self._connect_server()

    def disconnect(self) -> None:
        """Ask the processing loop to drop the connection."""
        self._motorsoff = True

    def set_state(self, state: PusiState) -> bool:
        """Switch to a new state, connecting first if needed; False if that failed."""
        if state == self.state:
            return True
        if state == PusiState.DISCONN:
            self.disconnect()
            return True
        if self.state == PusiState.DISCONN and not self._connect_server():
            return False
        if state in (PusiState.SETUP, PusiState.GOTOTHEMIDDLE):
            self.stage = SetupStage.INIT
        else:
            self.stage = SetupStage.NONE
        self.state = state
        return True

    def status(self, messageid: str) -> str:
        """JSON line with the current state, motors and relay board."""
        return status_json(messageid, self.state, self.stage, self.fixerr,
                           self.motors, self.relay_state)

    def set_status(self, name: str) -> str:
        """Client request to change state by name."""
        try:
            state = parse_state_name(name)
        except ValueError:
            return undefined_state_message(name)
        return OK if self.set_state(state) else FAIL

    def set_focus(self, value: str) -> str:
        """Client request to move the focus to an absolute position."""
        newval = _atoi(value)
        if newval < self.config.min_fpos or newval > self.config.max_fpos:
            return FAIL
        self._newfocpos = newval
        self._chfocus = True
        return OK

    def move_u(self, value: str) -> str:
        """Client request for a relative move of U."""
        d = _atoi(value)
        fixed = self._positions[_U] + d + self._positions[_F]
        if abs(fixed) > self.config.max_usteps:
            return FAIL
        self._du = d
        return OK

    def move_v(self, value: str) -> str:
        """Client request for a relative move of V."""
        d = _atoi(value)
        fixed = self._positions[_V] + d + self._positions[_F]
        if abs(fixed) > self.config.max_vsteps:
            return FAIL
        self._dv = d
        return OK

    def relay(self, value: str) -> str:
        """Client relay command: ``Rn=0/1`` or ``PWMn=0..255``."""
        message = relay_request(value, self.relay_state)
        if message is not None and self._send(message) is not None:
            return OK
        return FAIL

    def process_corrections(self, x: float, y: float) -> None:
        """Take a new centroid; frames made while motors move are not trusted."""
        if self._ismoving:
            self._coords_trusted = False
            self._coords_ready = False
            return
        if not self._coords_trusted:
            self._coords_trusted = True
            self._coords_ready = False
            return
        self._xc, self._yc = x, y
        self._coords_ready = True

    def step(self) -> None:
        """One pass of the processing loop."""
        if self._motorsoff:
            self._motorsoff = False
            self._drop()
            time.sleep(self.reconnect_delay)
            return
        if self.state == PusiState.DISCONN:
            time.sleep(self.reconnect_delay)
            self._connect_server()
            return
        self._check_relay()
        for axis, msg in ((_U, U_STATUS), (_V, V_STATUS), (_F, F_STATUS)):
            self._moving[axis] = not self._moving_finished(msg, axis)
        self._ismoving = any(self._moving)
        if self._ismoving:
            self._coords_ready = False
            return
        if self._chfocus:
            self._chfocus = False
            delta = self._newfocpos - self._positions[_F]
            self._motor_f(delta)
            self._motor_u(delta)
            self._motor_v(delta)
            return
        if self._du:
            self._motor_u(self._du)
            self._du = 0
            return
        if self._dv:
            self._motor_v(self._dv)
            self._dv = 0
            return
        if self.state != PusiState.DISCONN:
            self._first = True
        if self.state == PusiState.DISCONN:
            if not self._connect_server():
                if self._first:
                    log.warning("Can't reconnect")
                    self._first = False
                time.sleep(self.retry_delay)
        elif self.state == PusiState.SETUP:
            self._process_setup_stage()
        elif self.state == PusiState.GOTOTHEMIDDLE:
            self._process_middle_stage()
        elif self.state == PusiState.FINDTARGET:
            xy = self._take_coords()
            if xy is not None and self._process_target_stage(*xy):
                self.state = PusiState.RELAX
        elif self.state == PusiState.FIX:
            self._process_fix()

    def run(self, stop: threading.Event) -> None:
        """Run the processing loop until ``stop`` is set."""
        while not stop.is_set():
            time.sleep(self.poll_interval)
            self.step()