# wireglider

Pure-Python building blocks for the data path of a userspace WireGuard tunnel on Linux. It has no runtime dependencies.

## Modules

- `wireglider.virtio`: `VirtioNetHdr`, the 10-byte little-endian `virtio_net_hdr` that a TUN device with offloads puts in front of each packet. It has `pack()` and `VirtioNetHdr.unpack(data)`, and the `F_*` and `GSO_*` constants.
- `wireglider.offload`: Internet checksums (`checksum`, `pseudo_header_checksum`, `calc_l4_checksum`) and `gso_split(inbuf, vnethdr)`. `gso_split` cuts a TCP or UDP GSO super-packet into segments of `gso_size` payload bytes. For each segment it sets the IPv4 length, ID and header checksum (or the IPv6 payload length). It also sets the TCP sequence number, clearing FIN/PSH on every segment but the last, or the UDP length, and then the transport checksum. The result is a `PacketBatch`, and iterating over it yields one IP packet at a time.
- `wireglider.flowkey` and `wireglider.evaluator`: receive-side aggregation (GRO). `evaluate_packet` checks a decrypted IPv4 or IPv6 packet, including its checksums, TCP flags and RFC 6040 ECN combination. It returns a `DecapOutcome`: `GRO_ADD`, `GRO_NOADD` or `GRO_DROP`. `append_flow` adds the packet to a `FlowMap` keyed by `FlowKey` and merges neighbouring batches where it can.
- `wireglider.flowkey_ref` and `wireglider.flowkey_own`: `DecapRefBatch` and `DecapBatch` sort packets into `tcp4`, `udp4`, `tcp6` and `udp6` flows. Packets that cannot be aggregated go to `unrel`. A `PacketRefBatch` keeps memoryviews of the payload, while an `OwnedPacketBatch` copies it. `OwnedPacketBatch.from_ref` converts the first kind into the second.
- `wireglider.write`: `write_one_batch`, `do_tun_write_unrel` and `do_tun_write_batch` write to a TUN file descriptor with `os.writev`.
  - They return `False` when the descriptor would block, and what has already been written is removed so a later call resumes.
  - `TunClosedError` is raised on `EBADFD`.
- `wireglider.send`: pending output for the UDP server socket.
  - `ServerSendBatch` sends equal-size datagrams to one endpoint with `UDP_SEGMENT` and `IP_TOS` ancillary data.
  - `ServerSendList` sends separate datagrams to one endpoint.
  - `ServerSendMultilist` sends one datagram per endpoint.
  - `send_reflist` returns the packets it could not send.
- `wireglider.messages`: message layouts with `pack`/`unpack`, a `ProtoSignal` flag enum and the protocol timing constants.
  - The layouts are `Handshake1`, `Handshake2`, `CookiePacket` and `DataHeader`.
  - `SessionState` offers `exists`, `expired(now, life)` and `reset`.
  - `expected_encrypt_size` and `expected_encrypt_overhead` give data-message sizes.
- `wireglider.tai64n`: the `TAI64N` timestamp (12 bytes, big-endian), plus `to_time` and `to_timespec`.
- `wireglider.replay`: `ReplayRing`, the RFC 6479 anti-replay window.

## Installation

```
pip install .
```

To run the tests:

```
pip install .[test]
pytest
```

## Example: splitting a GSO packet

```python
from wireglider.offload import gso_split
from wireglider.virtio import VirtioNetHdr

hdr, packet = VirtioNetHdr.unpack(frame), frame[VirtioNetHdr.SIZE:]
batch = gso_split(bytearray(packet), hdr)
for segment in batch:
    ...  # each segment is one IP packet
```

## Example: aggregating decrypted packets

```python
from wireglider.flowkey_own import DecapBatch
from wireglider.write import do_tun_write_batch

batch = DecapBatch(has_uso=True)
for pkt in decrypted_packets:
    batch.push_packet(pkt, ecn_outer)
done = do_tun_write_batch(tun_fd, batch)  # False if the device would block
```

## Example: the anti-replay window

```python
from wireglider.replay import ReplayRing

ring = ReplayRing(limit=2**64 - 2**13)
ring.try_advance(5)   # True
ring.try_advance(5)   # False, already seen
```

## What it does not do

This is a library of parts, not a running tunnel. It has no command and no event loop, and it does not create TUN devices or sockets: callers pass in file descriptors and socket objects.

It implements no cryptography. There is no Noise handshake, no key derivation, no MAC or cookie computation, and no encryption or decryption of data messages. `wireglider.messages` only lays out the bytes of the messages and tracks session state. The peer and endpoint tables and the timers are also left to the caller.