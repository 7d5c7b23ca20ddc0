# bwtest

Building blocks for measuring network throughput between two hosts.
The package supplies the pieces a bandwidth tester is made of: a
microsecond timestamp type, socket setup and robust read/write helpers,
and the per-stream send and receive logic for TCP and UDP, including
packet loss, out-of-order and jitter accounting for UDP.

It uses only the standard library.

## Installation

```
pip install .
```

For running the tests:

```
pip install .[test]
pytest
```

## Modules

- `bwtest.ptime` – `IperfTime`, an immutable seconds/microseconds
  timestamp with `add_usecs` (returns a new timestamp), `in_usecs`,
  `in_secs`, `compare` and `diff`; `now()` reads the monotonic clock and
  `now_wallclock()` the wall clock.
- `bwtest.states` – `TestState`, the protocol states of a test, and
  `state_to_text` for readable names.
- `bwtest.errors` – `ErrorCode`, `IperfError` and the network errors
  `NetSoftError` (a transient failure) and `NetHardError` (the socket
  failed).
- `bwtest.session` – `Settings`, `TestSession`, `Stream` and
  `StreamResult`, the state shared by the stream handlers.
  `TestSession.warn` records warnings and `TestSession.add_json_start`
  collects values for the start section of JSON output.
- `bwtest.util` – `readentropy`, `make_cookie`,
  `fill_with_repeating_pattern`, `is_closed`, the timeval helpers,
  `CpuMeter`, `get_system_info`, `get_optional_features`, `json_printf`,
  `get_object_item_type` and `dump_fdset`.
- `bwtest.net` – `netannounce`, `netdial`, `create_socket`,
  `timeout_connect`, `nread`, `nrecv`, `nread_no_select`,
  `nrecv_no_select`, `nwrite`, `nsendfile`, `has_sendfile`,
  `setnonblocking` and `getsockdomain`.
- `bwtest.tcp` – `tcp_listen`, `tcp_accept`, `tcp_connect`,
  `tcp_send`, `tcp_recv`.
- `bwtest.udp` – `UdpHeader` and `udp_listen`, `udp_accept`,
  `udp_connect`, `udp_send`, `udp_recv`, `udp_buffercheck`, `udp_init`.

## Example

```python
from bwtest.ptime import now
from bwtest.udp import UdpHeader

start = now()
header = UdpHeader(secs=start.secs, usecs=start.usecs, pcount=1)
packet = header.pack(counters_64bit=True)
assert UdpHeader.unpack(packet, counters_64bit=True) == header

later = start.add_usecs(1_500_000)
elapsed, not_later = later.diff(start)
print(elapsed.in_secs())  # 1.5
print(not_later)          # False
```

## Errors

Failures are reported as exceptions. The TCP and UDP stream functions
raise `IperfError`, whose `code` is an `ErrorCode`. The read and write
helpers in `bwtest.net` raise `NetSoftError` or `NetHardError`, both
subclasses of `OSError`; the socket set-up functions there let the
underlying `OSError` propagate.

## What the package does not do

There is no command-line program and no complete client or server: the
package does not run a control connection, exchange test parameters,
schedule timers, or print interval and summary reports. It provides the
socket, timing and per-stream pieces from which such a program is built.