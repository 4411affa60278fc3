import socket
import threading

import pytest

from loccorr.pusiproto import (
    FAIL,
    OK,
    PusiState,
    RELAY_CMD,
    SetupStage,
    relay_request,
    undefined_state_message,
)
from loccorr.pusirobo import CanServerLink, PusiController, StepperConfig


class FakeCanServer:
    """Answers the commands the controller sends, with motors that stop at once."""

    def __init__(self, limit=40000):
        self.pos = {"U": 0, "V": 0, "F": 0}
        self.limit = limit
        self.fail_status = False

    def __call__(self, msg):
        parts = msg.split()
        if msg.startswith(RELAY_CMD):
            cmd = int(parts[3])
            if cmd == 1:
                return "#0x001 0x01 0x03\n"
            if cmd == 2:
                return "#0x001 0x02 0x0a 0x0b 0x0c\n"
            if cmd == 6:
                return f"#0x001 0x06 {parts[4]} 0x01 0 0 0 0 0\n"
            return ""
        axis, command = parts[1], parts[2]
        if command == "maxspeed":
            return f"maxspeed={parts[3]}\n"
        if command == "relmove":
            newpos = self.pos[axis] + int(parts[3])
            self.pos[axis] = max(-self.limit, min(self.limit, newpos))
            return "steps=OK\n"
        if command == "absmove":
            self.pos[axis] = int(parts[3])
            return "steps=OK\n"
        if command == "status":
            if self.fail_status:
                return None
            return f"devstatus=0\ncurpos={self.pos[axis]}\n"
        if command == "setzero":
            self.pos[axis] = 0
            return "\n"
        return None


class FakeLink:
    def __init__(self, responder, connect_ok=True):
        self.responder = responder
        self.connect_ok = connect_ok
        self.connected = False
        self.sent = []
        self.unchecked = []

    def connect(self):
        self.connected = self.connect_ok
        return self.connected

    def close(self):
        self.connected = False

    def send(self, msg):
        self.sent.append(msg)
        if not self.connected:
            return None
        return self.responder(msg)

    def send_nocheck(self, msg):
        self.unchecked.append(msg)


def make_controller(config=None, connect_ok=True):
    server = FakeCanServer()
    link = FakeLink(server, connect_ok)
    saved = []
    ctrl = PusiController(config or StepperConfig(), link, lambda: saved.append(True))
    ctrl.reconnect_delay = 0
    ctrl.retry_delay = 0
    return ctrl, link, server, saved


def test_connect_reads_relay_board():
    ctrl, link, _, _ = make_controller()
    assert ctrl.connect() is True
    assert ctrl.state == PusiState.RELAX
    assert ctrl.relay_state.relays == 3
    assert ctrl.relay_state.pwm == (10, 11, 12)
    assert ctrl.relay_state.buttons == (1, 1, 1, 1)
    assert "register U 0x581 stepper" in link.unchecked


def test_connect_failure_keeps_disconnected():
    ctrl, _, _, _ = make_controller(connect_ok=False)
    assert ctrl.connect() is False
    assert ctrl.state == PusiState.DISCONN
    assert ctrl.set_status("relax") == FAIL


def test_status_json_after_connect():
    ctrl, _, _, _ = make_controller()
    ctrl.connect()
    text = ctrl.status("canbus")
    assert text.startswith('{ "messageid": "canbus", "status": "ready"')
    assert '"relay": 3' in text
    assert text.endswith(" }\n")


def test_set_status_undefined_and_known():
    ctrl, _, _, _ = make_controller()
    assert ctrl.set_status("bogus") == undefined_state_message("bogus")
    assert ctrl.set_status("RELAX") == OK
    assert ctrl.state == PusiState.RELAX


def test_setup_state_reported_in_status():
    ctrl, _, _, _ = make_controller()
    assert ctrl.set_state(PusiState.SETUP)
    assert ctrl.stage == SetupStage.INIT
    assert '{ "setup": "init" }' in ctrl.status("x")


def test_setup_calibration_inverts_image_mapping():
    config = StepperConfig()
    ctrl, _, server, saved = make_controller(config)
    ctrl.set_state(PusiState.SETUP)
    c, d, e, f = 0.01, 0.002, -0.003, 0.008

    for _ in range(40):
        if ctrl.state == PusiState.RELAX:
            break
        u, v = server.pos["U"], server.pos["V"]
        ctrl.process_corrections(100 + c * u + d * v, 200 + e * u + f * v)
        ctrl.step()
    assert ctrl.state == PusiState.RELAX
    assert saved == [True]
    assert config.kxu * c + config.kyu * e == pytest.approx(1.0)
    assert config.kxu * d + config.kyu * f == pytest.approx(0.0, abs=1e-9)
    assert config.kxv * c + config.kyv * e == pytest.approx(0.0, abs=1e-9)
    assert config.kxv * d + config.kyv * f == pytest.approx(1.0)


def test_goto_middle_zeroes_positions():
    ctrl, _, _, _ = make_controller()
    ctrl.set_state(PusiState.GOTOTHEMIDDLE)
    for _ in range(10):
        if ctrl.state == PusiState.RELAX:
            break
        ctrl.step()
    assert ctrl.state == PusiState.RELAX
    assert [m.position for m in ctrl.motors] == [0, 0, 0]


def test_find_target_sets_config_target():
    config = StepperConfig(xoff=5, yoff=7)
    ctrl, _, _, saved = make_controller(config)
    ctrl.set_state(PusiState.FINDTARGET)
    for _ in range(3):
        ctrl.process_corrections(120.0, 80.0)
        ctrl.step()
    assert ctrl.state == PusiState.RELAX
    assert config.xtarget == 125.0
    assert config.ytarget == 87.0
    assert saved == [True]


def test_fix_moves_motors_toward_target():
    config = StepperConfig(kxu=1.0, kyv=1.0, kcorr=1.0, xtarget=50.0, ytarget=60.0)
    ctrl, link, _, _ = make_controller(config)
    ctrl.set_state(PusiState.FIX)
    ctrl.process_corrections(40.0, 60.0)
    ctrl.step()
    assert "mesg U relmove  10" in link.sent
    assert "mesg V relmove  0" in link.sent
    assert ctrl.fixerr is False


def test_fix_out_of_range_reports():
    config = StepperConfig(kxu=1e6, kyv=1.0, xtarget=50.0, ytarget=60.0)
    ctrl, _, _, _ = make_controller(config)
    ctrl.set_state(PusiState.FIX)
    ctrl.process_corrections(40.0, 60.0)
    ctrl.step()
    assert ctrl.fixerr is True
    assert '"status": "fixoutofrange"' in ctrl.status("id")


def test_focus_request_moves_all_axes():
    config = StepperConfig(min_fpos=0, max_fpos=1000)
    ctrl, link, server, _ = make_controller(config)
    ctrl.connect()
    assert ctrl.set_focus("5000") == FAIL
    assert ctrl.set_focus("300") == OK
    ctrl.step()
    assert server.pos == {"U": 300, "V": 300, "F": 300}
    assert "mesg F relmove  300" in link.sent


def test_move_u_and_v_limits():
    ctrl, _, server, _ = make_controller(StepperConfig(max_usteps=100, max_vsteps=100))
    ctrl.connect()
    assert ctrl.move_u("101") == FAIL
    assert ctrl.move_v("-101") == FAIL
    assert ctrl.move_u("40") == OK
    ctrl.step()
    assert server.pos["U"] == 40
    assert ctrl.move_v("-30") == OK
    ctrl.step()
    assert server.pos["V"] == -30


def test_relay_command_sent():
    ctrl, link, _, _ = make_controller()
    ctrl.connect()
    expected = relay_request("R0=1", ctrl.relay_state)
    assert ctrl.relay("R0=1") == OK
    assert link.sent[-1] == expected
    assert ctrl.relay("R5=1") == FAIL
    assert ctrl.relay("nonsense") == FAIL


def test_too_many_errors_disconnects():
    ctrl, link, server, _ = make_controller()
    ctrl.connect()
    server.fail_status = True
    for _ in range(5):
        ctrl.step()
    assert ctrl.state == PusiState.DISCONN
    assert link.connected is False


def test_disconnect_request_and_reconnect():
    ctrl, link, _, _ = make_controller()
    ctrl.connect()
    ctrl.disconnect()
    ctrl.step()
    assert ctrl.state == PusiState.DISCONN
    assert link.connected is False
    ctrl.step()
    assert ctrl.state == PusiState.RELAX


def test_corrections_ignored_while_moving():
    ctrl, _, server, _ = make_controller()
    ctrl.set_state(PusiState.FINDTARGET)
    original = server.__call__

    def moving(msg):
        if "status" in msg:
            return "devstatus=1\ncurpos=0\n"
        return original(msg)

    ctrl.link.responder = moving
    ctrl.step()
    assert all(m.moving for m in ctrl.motors)
    ctrl.link.responder = server
    for _ in range(3):
        ctrl.process_corrections(10.0, 10.0)
        ctrl.step()
    # the first frame after motion is not trusted, so the target is not found yet
    assert ctrl.state == PusiState.FINDTARGET


@pytest.fixture
def tcp_server():
    listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    listener.bind(("127.0.0.1", 0))
    listener.listen(1)
    port = listener.getsockname()[1]
    received = []

    def serve():
        conn, _ = listener.accept()
        with conn:
            while True:
                data = conn.recv(1024)
                if not data:
                    break
                text = data.decode()
                received.append(text)
                if text == "silent":
                    conn.sendall(b"nothing here\n")
                else:
                    conn.sendall(b"OK\nsteps=OK\n")

    thread = threading.Thread(target=serve, daemon=True)
    thread.start()
    yield port, received
    listener.close()


def test_link_round_trip(tcp_server):
    port, received = tcp_server
    link = CanServerLink(port, "127.0.0.1")
    assert link.connect() is True
    assert link.send("mesg U relmove  5") == "steps=OK\n"
    assert link.send("silent") is None
    link.close()
    assert link.connected is False
    assert received[0] == "mesg U relmove  5"


def test_link_send_without_connection():
    link = CanServerLink(1, "127.0.0.1")
    assert link.send("mesg U status") is None