"""Messages exchanged with the steppers' CAN server and the answers given to clients."""

from __future__ import annotations

import enum
import re
from collections.abc import Sequence
from dataclasses import dataclass

# Standard answers to clients.
OK = "OK\n"
FAIL = "FAILED\n"
MESSAGEID = "messageid"

# Errors in a row after which the CAN server is considered disconnected.
MAX_ERR_CTR = 15

# Longest wait for the "OK" answer of the CAN server, seconds.
WAITANSTIME = 1.0
ANSOK = "OK\n"

# Consequent coincidences of the centre needed to fix the target.
NCONSEQ = 2
# Tolerance of coordinates coincidence, pixels.
COORDTOLERANCE = 0.5

# Messages for the CAN server.
REGISTER_U = "register U 0x581 stepper"
REGISTER_V = "register V 0x582 stepper"
REGISTER_FOCUS = "register F 0x583 stepper"
REGISTER_RELAY = "register R 1 raw"
RELAY_CMD = "mesg R 1"
RELAY_ANS = "#0x001"
# Added to a relay command to make it a setter.
RELAY_SETTER = 0x80
SET_U_SPEED = "mesg U maxspeed 22400"
SET_V_SPEED = "mesg V maxspeed 22400"
SET_F_SPEED = "mesg F maxspeed 12800"
U_RELSTEPS = "mesg U relmove "
V_RELSTEPS = "mesg V relmove "
F_ABSSTEPS = "mesg F absmove "
F_RELSTEPS = "mesg F relmove "
U_STATUS = "mesg U status"
V_STATUS = "mesg V status"
F_STATUS = "mesg F status"
U_SETZERO = "mesg U setzero"
V_SETZERO = "mesg V setzero"
F_SETZERO = "mesg F setzero"

# Parameter names in status answers.
PAR_STATUS = "devstatus"
STEPS_STATUS = "steps"
ERR_STATUS = "errstatus"
CURPOS_STATUS = "curpos"

# Range of U and V motors and distance from the edge, microsteps.
UV_MAXSTEPS = 96000
UV_EDGESTEPS = 3200

MOTOR_NAMES = ("Umotor", "Vmotor", "Fmotor")


class PusiState(enum.IntEnum):
    DISCONN = 0
    RELAX = 1
    SETUP = 2
    GOTOTHEMIDDLE = 3
    FINDTARGET = 4
    FIX = 5
    UNDEFINED = 6


class SetupStage(enum.IntEnum):
    NONE = 0
    INIT = 1
    WAITUV0 = 2
    WAITUVMID = 3
    WAITU0 = 4
    WAITUMAX = 5
    WAITV0 = 6
    WAITVMAX = 7
    FINISH = 8


class RelayCommand(enum.IntEnum):
    PING = 0
    RELAY = 1
    PWM = 2
    ADC = 3
    MCU = 4
    LED = 5
    BTNS = 6
    TIME = 7
    ERRCMD = 8


@dataclass(frozen=True)
class RelayState:
    """Relay bits, PWM channels and button states of the relay board."""

    relays: int = 0
    pwm: tuple[int, int, int] = (0, 0, 0)
    buttons: tuple[int, int, int, int] = (0, 0, 0, 0)


@dataclass(frozen=True)
class MotorState:
    """Whether a motor moves and where it stands."""

    moving: bool = False
    position: int = 0


# Client names of the states, in the order they are listed.
STATE_NAMES: dict[str, PusiState] = {
    "disconnect": PusiState.DISCONN,
    "relax": PusiState.RELAX,
    "setup": PusiState.SETUP,
    "middle": PusiState.GOTOTHEMIDDLE,
    "findtarget": PusiState.FINDTARGET,
    "fix": PusiState.FIX,
}

_STAGE_NAMES = {
    SetupStage.INIT: "init",
    SetupStage.WAITUV0: "waituv0",
    SetupStage.WAITUVMID: "waituvmid",
    SetupStage.WAITU0: "waitu0",
    SetupStage.WAITUMAX: "waitumax",
    SetupStage.WAITV0: "waitv0",
    SetupStage.WAITVMAX: "waitvmax",
    SetupStage.FINISH: "finishing",
}

_INT_RE = re.compile(r"\s*([+-]?\d+)")
_FLOAT_RE = re.compile(
    r"\s*([+-]?(?:\d+\.?\d*(?:[eE][+-]?\d+)?|\.\d+(?:[eE][+-]?\d+)?))"
)
_HEX_RE = re.compile(r"\s*([+-]?)(?:0[xX](?=[0-9a-fA-F]))?([0-9a-fA-F]+)")


def _leading_int(text: str) -> int | None:
    m = _INT_RE.match(text)
    return int(m.group(1)) if m else None


def _atoi(text: str) -> int:
    value = _leading_int(text)
    return 0 if value is None else value


def _atof(text: str) -> float:
    m = _FLOAT_RE.match(text)
    return float(m.group(1)) if m else 0.0


def find_value(par: str, message: str | None) -> str | None:
    """Text after ``par =`` in a status message (case-insensitive), or None."""
    if not message or not par:
        return None
    start = message.lower().find(par.lower())
    if start < 0:
        return None
    i = start + len(par)
    while i < len(message) and message[i] not in "\n=":
        i += 1
    if i >= len(message) or message[i] != "=":
        return None
    return message[i + 1:].lstrip(" \t")


def get_param(par: str, message: str | None) -> float | None:
    """Numeric value of a parameter in a status message, or None if absent."""
    value = find_value(par, message)
    if value is None:
        return None
    return _atof(value)


def param_ok(par: str, message: str | None) -> bool:
    """True if the parameter is present and its value is ``OK``."""
    value = find_value(par, message)
    return value is not None and value.startswith("OK")


def parse_relay_answer(answer: str | None) -> list[int]:
    """Byte arguments of a relay answer; empty for an answer of another device."""
    if not answer or not answer.startswith(RELAY_ANS):
        return []
    rest = answer[len(RELAY_ANS) + 1:]
    values: list[int] = []
    pos = 0
    while len(values) < 8:
        m = _HEX_RE.match(rest, pos)
        if not m:
            break
        value = int(m.group(2), 16)
        if m.group(1) == "-":
            value = -value
        values.append(value & 0xFF)
        pos = m.end()
    return values


def undefined_state_message(name: str) -> str:
    """Answer to a request for an unknown state, listing the allowed names."""
    allowed = " ".join(f"'{s}'" for s in STATE_NAMES)
    return f"status '{name}' undefined, allow: {allowed}\n"


def parse_state_name(name: str) -> PusiState:
    """State requested by a client name (case-insensitive)."""
    state = STATE_NAMES.get(name.lower())
    if state is None:
        raise ValueError(undefined_state_message(name))
    return state


def relay_request(value: str, relay: RelayState) -> str | None:
    """CAN message for a client relay command ``Rn=0/1`` or ``PWMn=0..255``.

    Returns None when the command is malformed or out of range.
    """
    par, sep, arg = value.partition("=")
    if not sep:
        return None
    v = _atoi(arg)
    if par.startswith("R"):
        num = _leading_int(par[1:])
        if num is not None:
            if num not in (0, 1):
                return None
            rval = relay.relays
            if v:
                rval |= 1 << num
            else:
                rval &= ~(1 << num)
            return f"{RELAY_CMD} {RelayCommand.RELAY + RELAY_SETTER} {rval}"
    if par.startswith("PWM"):
        num = _leading_int(par[3:])
        if num is not None:
            if not (0 <= num < len(relay.pwm)) or not (0 <= v < 256):
                return None
            pwm = list(relay.pwm)
            pwm[num] = v
            args = " ".join(str(p) for p in pwm)
            return f"{RELAY_CMD} {RelayCommand.PWM + RELAY_SETTER} {args}"
    return None


def status_json(
    messageid: str,
    state: PusiState,
    stage: SetupStage,
    fixerr: bool,
    motors: Sequence[MotorState],
    relay: RelayState,
) -> str:
    """JSON line with the server state, motors U, V, F and the relay board."""
    parts = [f'{{ "{MESSAGEID}": "{messageid}", "status": ']
    if state == PusiState.DISCONN:
        parts.append('"disconnected"')
    elif state == PusiState.RELAX:
        parts.append('"ready"')
    elif state in (PusiState.SETUP, PusiState.GOTOTHEMIDDLE):
        kind = "setup" if state == PusiState.SETUP else "gotomiddle"
        parts.append(f'{{ "{kind}": "{_STAGE_NAMES.get(stage, "unknown")}" }}')
    elif state == PusiState.FINDTARGET:
        parts.append('"findtarget"')
    elif state == PusiState.FIX:
        parts.append('"fixoutofrange"' if fixerr else '"fixing"')
    else:
        parts.append('"unknown"')
    if state != PusiState.DISCONN:
        parts.append(", ")
        for name, motor in zip(MOTOR_NAMES, motors):
            stat = "moving" if motor.moving else "stopping"
            parts.append(
                f'"{name}": {{ "status": "{stat}", "position": {motor.position} }}, '
            )
        parts.append(f'"relay": {relay.relays}, ')
        parts.extend(f'"PWM{i}": {p}, ' for i, p in enumerate(relay.pwm))
        parts.append(
            ", ".join(f'"button{i}": {b}' for i, b in enumerate(relay.buttons))
        )
    parts.append(" }\n")
    return "".join(parts)