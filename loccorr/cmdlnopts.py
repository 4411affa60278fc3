"""Command-line options of the corrector."""

from __future__ import annotations

import argparse
from dataclasses import asdict, dataclass

DEFAULT_PIDFILE = "/tmp/loccorr.pid"
DEFAULT_CONFFILE = "./loccorr.conf"
DEFAULT_OUTPJPEG = "./outpWcrosses.jpg"
DEFAULT_STEPPERSPORT = 4444
DEFAULT_IOPORT = 12345
DEFAULT_MAXAREA = 150000
DEFAULT_MINAREA = 400
DEFAULT_EROSIONS = 2
DEFAULT_DILATIONS = 2
DEFAULT_THROWPART = 0.5
DEFAULT_INTENSTHRES = 0.01
DEFAULT_NAVERAGE = 5
DEFAULT_MAXUSTEPS = 16000
DEFAULT_MAXVSTEPS = 16000
DEFAULT_NEROSIONS = 3
DEFAULT_NDILATIONS = 3

# Exposure limits in milliseconds.
EXPOS_MAX = 500.0
EXPOS_MIN = 0.001


@dataclass
class Options:
    """Parameters given on the command line."""

    pidfile: str = DEFAULT_PIDFILE
    logfile: str | None = None
    inputname: str | None = None
    logxyname: str | None = None
    configname: str = DEFAULT_CONFFILE
    outputjpg: str = DEFAULT_OUTPJPEG
    steppersport: int = DEFAULT_STEPPERSPORT
    equalize: bool = False
    verbose: int = 0
    ndilations: int = DEFAULT_DILATIONS
    nerosions: int = DEFAULT_EROSIONS
    minarea: int = DEFAULT_MINAREA
    maxarea: int = DEFAULT_MAXAREA
    naveraging: int = DEFAULT_NAVERAGE
    xoff: int = 0
    yoff: int = 0
    width: int = 0
    height: int = 0
    ioport: int = DEFAULT_IOPORT
    throwpart: float = DEFAULT_THROWPART
    intensthres: float = DEFAULT_INTENSTHRES
    maxexp: float = EXPOS_MAX
    minexp: float = EXPOS_MIN
    xtarget: float = -1.0
    ytarget: float = -1.0


def build_parser() -> argparse.ArgumentParser:
    """Parser for every option, with the defaults of :class:`Options`."""
    p = argparse.ArgumentParser(
        prog="loccorr", description="Monitor images and correct the target position."
    )
    p.set_defaults(**asdict(Options()))
    add = p.add_argument
    add("--maxexp", dest="maxexp", type=float,
        help="maximal exposition time (ms), default: 500")
    add("--minexp", dest="minexp", type=float,
        help="minimal exposition time (ms), default: 0.001")
    add("-l", "--logfile", dest="logfile", help="file to save logs (default: none)")
    add("-P", "--pidfile", dest="pidfile", help=f"pidfile (default: {DEFAULT_PIDFILE})")
    add("-v", "--verbose", dest="verbose", action="count",
        help="increase verbosity level of log file (each -v increased by 1)")
    add("-i", "--input", dest="inputname",
        help="file or directory name for monitoring (or grasshopper/basler for capturing)")
    add("-b", "--blackp", dest="throwpart", type=float,
        help="fraction of black pixels to throw away when make histogram eq")
    add("-e", "--equalize", dest="equalize", action="store_true",
        help="make historam equalization of saved jpeg")
    add("-D", "--ndilat", dest="ndilations", type=int,
        help="amount of dilations after thresholding (default: 2)")
    add("-E", "--neros", dest="nerosions", type=int,
        help="amount of erosions after dilations (default: 2)")
    add("-I", "--minarea", dest="minarea", type=int,
        help="minimal object pixels amount (default: 400)")
    add("-A", "--maxarea", dest="maxarea", type=int,
        help="maximal object pixels amount (default: 150000)")
    add("-T", "--intthres", dest="intensthres", type=float,
        help="threshold by total object intensity when sorting = |I1-I2|/(I1+I2), default: 0.01")
    add("-x", "--xoff", dest="xoff", type=int, help="X offset at grabbed image")
    add("-y", "--yoff", dest="yoff", type=int, help="Y offset at grabbed image")
    add("-W", "--width", dest="width", type=int, help="grabbed subimage width")
    add("-H", "--height", dest="height", type=int, help="grabbed subimage height")
    add("-X", "--xtarget", dest="xtarget", type=float, help="target point X coordinate")
    add("-Y", "--ytarget", dest="ytarget", type=float, help="target point Y coordinate")
    add("-L", "--logXY", dest="logxyname",
        help="file to log XY coordinates of selected star")
    add("-c", "--confname", dest="configname",
        help="name of configuration file (default: ./loccorr.conf)")
    add("-C", "--canport", dest="steppersport", type=int,
        help="port of local pusirobot CAN server (default: 4444)")
    add("-N", "--naverage", dest="naveraging", type=int,
        help="amount of images to average processing (min 2, max 25)")
    add("--ioport", dest="ioport", type=int, help="port for IO communication")
    add("-j", "--jpegout", dest="outputjpg",
        help=f"output jpeg file location (default: '{DEFAULT_OUTPJPEG}')")
    return p


def parse_args(argv=None) -> Options:
    """Parse ``argv`` (the process arguments when None); extra arguments are an error."""
    ns = build_parser().parse_args(argv)
    return Options(**vars(ns))