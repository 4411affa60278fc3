"""Local command server: parses client requests and answers them over TCP."""

from __future__ import annotations

import logging
import select
import socket
import threading
from collections.abc import Callable, MutableMapping

from loccorr.pusiproto import FAIL, OK

log = logging.getLogger(__name__)

# Bytes read from a client at once; one read holds one command.
BUFLEN = 1024
# Most clients served at the same time.
BACKLOG = 10

LIMIT_MESSAGE = "Max amount of connections reached!"

GETTERS: tuple[tuple[str, str], ...] = (
    ("help", "List available commands"),
    ("settings", "List current configuration"),
    ("canbus", "Get status of CAN bus server"),
    ("imdata", "Get image data (status, path, FPS, counter)"),
)

SETTERS: tuple[tuple[str, str], ...] = (
    ("stpstate", "Set given steppers' server state"),
    ("focus", "Move focus to given value"),
    ("moveU", "Relative moving by U axe"),
    ("moveV", "Relative moving by V axe"),
    ("relay", "Send relay commands (Rx=0/1, PWMX=0..255)"),
)


def format_answer(text: str) -> str:
    """Answer as sent to a client: ends with a newline."""
    if text.endswith("\n"):
        return text
    return text + "\n"


class CommandProcessor:
    """Turns one client message into its answer.

    ``steppers`` is the steppers' controller (or None), ``imagedata`` a
    callable giving the image status for a message id (or None), and
    ``settings`` a mapping of numeric configuration parameters that
    ``name=value`` messages change.
    """

    def __init__(self, steppers=None,
                 imagedata: Callable[[str], str] | None = None,
                 settings: MutableMapping | None = None):
        self.steppers = steppers
        self.imagedata = imagedata
        self.settings = settings if settings is not None else {}
        self._getters = {
            "help": lambda mid: self.help(),
            "settings": lambda mid: self._list_settings(),
            "canbus": self._stepper_status,
            "imdata": self._image_data,
        }
        self._setters = {
            "stpstate": lambda v: self._stepper_call("set_status", v),
            "focus": lambda v: self._stepper_call("set_focus", v),
            "moveU": lambda v: self._stepper_call("move_u", v),
            "moveV": lambda v: self._stepper_call("move_v", v),
            "relay": lambda v: self._stepper_call("relay", v),
        }

    def help(self) -> str:
        """List of every command with a short description."""
        lines = [f"{name}=newval - set configuration parameter\n" for name in self.settings]
        lines += [f"{cmd} - {text}\n" for cmd, text in GETTERS]
        lines += [f"{cmd}=newval - {text}\n" for cmd, text in SETTERS]
        return "".join(lines)

    def _list_settings(self) -> str:
        return "".join(f"{k}={v}\n" for k, v in self.settings.items())

    def _stepper_status(self, messageid: str) -> str:
        if self.steppers is None:
            return FAIL
        return self.steppers.status(messageid)

    def _image_data(self, messageid: str) -> str:
        if self.imagedata is None:
            return FAIL
        answer = self.imagedata(messageid)
        return FAIL if answer is None else answer

    def _stepper_call(self, method: str, value: str) -> str:
        if self.steppers is None:
            return FAIL
        return getattr(self.steppers, method)(value)

    def _set_parameter(self, key: str, value: str) -> str:
        old = self.settings[key]
        try:
            if isinstance(old, bool) or not isinstance(old, (int, float)):
                return FAIL
            new = int(value) if isinstance(old, int) else float(value)
        except ValueError:
            return FAIL
        log.debug("parameter %s: %s -> %s", key, old, new)
        self.settings[key] = new
        return OK

    def process(self, message: str) -> str:
        """Answer to a message: ``name=value`` sets, a bare name gets."""
        lowered = message.lower()
        if "=" in message:
            key, _, value = message.partition("=")
            key, value = key.strip(), value.strip()
            if key in self.settings:
                return self._set_parameter(key, value)
            for cmd, handler in self._setters.items():
                if lowered.startswith(cmd.lower()):
                    return handler(value)
        else:
            for cmd, handler in self._getters.items():
                if lowered.startswith(cmd.lower()):
                    return handler(cmd)
        return FAIL


class IOServer:
    """TCP server for local clients, each message answered by a :class:`CommandProcessor`."""

    def __init__(self, processor: CommandProcessor, port: int, host: str = "127.0.0.1"):
        self.processor = processor
        self.port = port
        self.host = host
        self.poll_timeout = 0.01
        self._listener: socket.socket | None = None
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def _bind(self) -> None:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            sock.bind((self.host, self.port))
            sock.listen(BACKLOG)
        except OSError:
            sock.close()
            raise
        self.port = sock.getsockname()[1]
        self._listener = sock

    def _accept(self, clients: list[socket.socket]) -> None:
        try:
            conn, addr = self._listener.accept()
        except OSError as exc:
            log.error("accept() failed: %s", exc)
            return
        log.info("Got connection from %s, fd=%d", addr[0], conn.fileno())
        if len(clients) >= BACKLOG:
            log.warning("Max amount of connections: disconnect %s", addr[0])
            try:
                conn.sendall(format_answer(LIMIT_MESSAGE).encode())
            except OSError:
                pass
            conn.close()
            return
        clients.append(conn)

    def _handle(self, conn: socket.socket) -> bool:
        """Serve one message; False when the client has gone."""
        try:
            data = conn.recv(BUFLEN - 1)
        except OSError:
            return False
        if not data:
            return False
        message = data.decode("utf-8", errors="replace")
        log.debug("user %d send '%s'", conn.fileno(), message)
        answer = self.processor.process(message)
        try:
            conn.sendall(format_answer(answer).encode())
        except OSError as exc:
            log.error("send_data(): write() failed: %s", exc)
        return True

    def serve(self, stop: threading.Event) -> None:
        """Serve clients until ``stop`` is set."""
        if self._listener is None:
            self._bind()
        clients: list[socket.socket] = []
        try:
            while not stop.is_set():
                readable, _, _ = select.select([self._listener, *clients], [], [],
                                               self.poll_timeout)
                for sock in readable:
                    if sock is self._listener:
                        self._accept(clients)
                    elif not self._handle(sock):
                        log.info("Client %d disconnected", sock.fileno())
                        clients.remove(sock)
                        sock.close()
        finally:
            for conn in clients:
                conn.close()
            if self._listener is not None:
                self._listener.close()
                self._listener = None

    def start(self) -> None:
        """Bind the port and serve in a background thread."""
        if self._thread is not None:
            return
        self._stop_event.clear()
        self._bind()
        self._thread = threading.Thread(target=self.serve, args=(self._stop_event,),
                                        daemon=True)
        self._thread.start()

    def stop(self) -> None:
        """Stop the background thread and close every connection."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None