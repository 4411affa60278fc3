# loccorr

Building blocks for locating a bright target on camera frames and holding
it in place with stepper motors: image statistics, binary morphology,
component labelling, a camera capture loop with automatic exposure, a
controller for a CAN stepper server and a small local command server.

## Modules

- **`loccorr.median`**
  - `calc_median(values)` – median of integer values. For 2–9, 16 and 25
    values it is exact (an even count gives the floored mean of the middle
    pair); for other sizes it is the lower median. Raises `ValueError` for
    no values.
  - `RunningMedian(size)` – median of the last `size` values inserted with
    `insert()`; `median()` returns it (floored mean of the middle pair for
    an even count) and raises `ValueError` while empty.
  - `median_filter(image, seed)` – median over a `(2*seed+1)` square box;
    border pixels are left zero.
  - `box_stat(image, seed)` – mean and standard deviation over the same
    box, as two images of the input's type; raises `ValueError` if the box
    does not fit the image.
- **`loccorr.binmorph`** – binary images packed eight pixels per byte,
  leftmost pixel in the high bit (`pack_bits`, `unpack_bits`).
  `dilation` and `erosion` use a 3×3 cross (erosion clears the image
  border); `dilation_n`, `erosion_n`, `opening_n`, `closing_n`, `top_hat`
  and `bot_hat` repeat them `n` times. Images smaller than 9×3 pixels are
  rejected with `ValueError` (the `_n` forms return an unchanged copy
  instead). `label_components(mask)` labels 4-connected components of a
  boolean mask and returns the label image and the count;
  `component_boxes(labels, count)` gives a `Box` (bounds and area) for each
  label.
- **`loccorr.cmdlnopts`** – `build_parser()` and `parse_args(argv)` turn
  command-line arguments into an `Options` dataclass holding the defaults
  (`-i/--input`, `-N/--naverage`, `--ioport`, `-C/--canport` and so on).
- **`loccorr.capture`** – `Camera`, an abstract interface a device must
  implement, `FrameFormat`, `CaptureConfig` and `ExposureMethod`.
  `CameraCapture` fits the configured frame to the camera's limits,
  shares exposure between exposure time and gain from the image histogram
  (aiming the 100 brightest pixels at levels 230–253), optionally
  median-filters each frame, passes it to a callback, and reports its
  state as a JSON line with `status()`.
- **`loccorr.pusiproto`** – the text protocol of the CAN stepper server:
  state and stage enums, `find_value`, `get_param`, `param_ok`,
  `parse_relay_answer`, `relay_request`, `parse_state_name` and
  `status_json`.
- **`loccorr.pusirobo`** – `CanServerLink`, a TCP connection to the CAN
  server, and `PusiController`, the state machine that calibrates the U/V
  axes (`setup`), moves to the middle (`middle`), finds the target
  (`findtarget`) and applies corrections (`fix`). Call `step()` for one
  pass or `run(stop)` with a `threading.Event`.
- **`loccorr.server`** – `CommandProcessor` answers client messages
  (`help`, `settings`, `canbus`, `imdata`, `stpstate=`, `focus=`,
  `moveU=`, `moveV=`, `relay=`, and `name=value` for numeric settings);
  `IOServer` serves it over TCP on 127.0.0.1, with `start()`/`stop()` for
  a background thread.

## Installation

Install with pip from a checkout of this directory. Python 3.10 or later
and NumPy are required.

## Examples

```python
from loccorr.median import calc_median, RunningMedian

calc_median([5, 1, 3])      # 3

rm = RunningMedian(3)
for v in (10, 2, 7):
    rm.insert(v)
rm.median()                 # 7
```

```python
import numpy as np
from loccorr.median import median_filter, box_stat

image = np.random.default_rng(0).integers(0, 256, (64, 64), dtype=np.uint8)
filtered = median_filter(image, 1)      # 3x3 box
mean, std = box_stat(image, 2)          # 5x5 box
```

```python
import numpy as np
from loccorr.binmorph import pack_bits, unpack_bits, opening_n, label_components, component_boxes

mask = np.zeros((32, 40), dtype=bool)
mask[5:15, 8:20] = True
opened = unpack_bits(opening_n(pack_bits(mask), 40, 1), 40)
labels, count = label_components(opened)
boxes = component_boxes(labels, count)
```

```python
from loccorr.cmdlnopts import parse_args

options = parse_args(["-i", "/data/frames", "--naverage", "3"])
options.naveraging          # 3
```

```python
from loccorr.server import CommandProcessor

processor = CommandProcessor(settings={"maxarea": 150000})
processor.process("maxarea=1000")   # "OK\n"
processor.process("settings")       # "maxarea=1000\n"
```

## What the package does not do

- It has no command of its own: nothing watches a file or directory,
  starts the capture loop, the stepper controller and the command server
  together, or handles process signals and PID files. `parse_args` only
  parses options.
- It reads and writes no image files and finds no target centroid; frames
  are NumPy arrays handed in by the caller.
- It contains no camera drivers: a device must be supplied as a `Camera`
  subclass.
- It stores no configuration: `PusiController` calls the `save_config`
  callback it is given, and `CommandProcessor` changes the mapping passed
  as `settings`.

## Running the tests

Install the `test` extra and run `pytest` from the project directory.