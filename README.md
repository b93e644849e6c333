# relaytunnel

A small library for forwarding TCP traffic between two endpoints. A
`Tunnel` accepts connections on a listen address. For each connection it
dials a target address and copies data in both directions until either side
finishes.

The library also includes:

- counters for each tunnel;
- configuration presets;
- helpers for DNS-01 challenge providers.

It uses only the standard library and needs Python 3.10 or later.

```
pip install relaytunnel
```

## Running a tunnel

A tunnel gets its listener, dialer and forwarder from a `Protocol`. The
package defines `Protocol` as an abstract class and has no ready-made
implementation, so you supply one. The module-level helpers make a plain TCP
protocol short:

```python
from relaytunnel.tunnel import Config, Protocol, Tunnel, dial, listen, new_forwarder


class TCPProtocol(Protocol):
    name = "tcp"

    def listen(self, addr):
        return listen(addr)

    def dial(self, addr):
        return dial(addr, 5.0)

    def forwarder(self):
        return new_forwarder()


config = Config(listen_addr="127.0.0.1:0", target_addr="127.0.0.1:80")
with Tunnel(config, TCPProtocol()) as tunnel:
    print("listening on", tunnel.addr)   # (host, port) from the listener
    ...
```

`Tunnel(config, protocol)` checks the configuration when it is created.
`start()` and `stop()` can also be called directly. The `with` block calls
them for you.

When you call `start()`:

- it opens the listener;
- it accepts connections on a background thread;
- it raises `UnknownProtocolError` if no protocol is set.

When you call `stop()`:

- it closes the listener;
- it waits for the accept thread to end;
- it closes every connection still being forwarded.

### What the tunnel uses from `Config`

`Config` has many fields, and all durations in it are given in seconds. The
tunnel itself uses only these:

- `listen_addr`
- `target_addr`
- `connection_timeout`: when it is above zero, it is set as the socket timeout on both sides of each connection.

`validate_config(config)` checks a configuration and returns a copy with
defaults filled in:

- `buffer_size` defaults to 64 KiB (`BUFFER_SIZE_DEFAULT`).
- `protocol` defaults to `"tcp"`.

It raises `ConfigError` in these cases:

- buffer sizes are negative or above 10 MiB;
- `max_connections` is negative or above 1,000,000;
- backpressure watermarks are negative or above 100 MiB;
- a low watermark is not below the high watermark.

`Mode` has the values `AUTO`, `SERVER` and `CLIENT`.

### Statistics

`tunnel.stats` is a thread-safe `Stats` object with these members:

- `connections`: the number of connections accepted.
- `errors`: failed accepts, failed dials, and forwarding errors other than a normal close.
- `bytes_sent` and `bytes_received`: exist, but the tunnel does not count bytes, so they stay at zero.
- `uptime()`: seconds since the tunnel was created or last reset.
- `reset()`: zeroes every counter and restarts the clock.

## Forwarding sockets yourself

```python
from relaytunnel.tunnel import dial, handle_pair, listen

server = listen("127.0.0.1:9000")
client_sock, _ = server.accept()
target = dial("127.0.0.1:80", 5.0)
handle_pair(client_sock, target)   # copies both ways, then closes both
```

Addresses for `listen` and `dial` are given as `host:port`, with brackets
around IPv6 hosts.

- `forward(src, dst)` copies in both directions and returns once both are done. It re-raises the first error that is not a normal close.
- `handle_pair(conn_a, conn_b)` copies in both directions, ignores errors, and always closes both sockets.
- `Forwarder(buffer_size).forward(src, dst)` copies one direction until end of stream and returns the number of bytes copied. `new_forwarder()` returns one with the default buffer size.
- `is_closed_error(exc)` tells whether an exception only means a normal close: end of stream, a reset, an abort or a broken pipe.
- `optimize_tcp_conn(sock)` turns on `TCP_NODELAY` and keep-alive with a 30-second period, where the platform allows it.

## Presets

Each preset returns a fresh `Config` that you can change before use:

- `server_preset()`: a 10,000-connection cap and a five-minute timeout.
- `client_preset()`: no connection cap and no timeout.
- `high_throughput_preset()`: larger buffers and watermarks.

Of these settings, the tunnel acts only on `connection_timeout`.

## DNS providers

```python
from relaytunnel.dns_provider import DNSRecord, MockDNSProvider

provider = MockDNSProvider()
provider.append_records(
    "example.com", [DNSRecord(type="TXT", name="_acme-challenge", value="token")]
)
print(provider.get_records("example.com"))
provider.delete_records("example.com", [])   # clears the whole zone
```

### Choosing a provider from the environment

`dns_provider_from_env(environ=None)` reads `os.environ` unless a mapping is
given. It returns a provider for the first of these credentials that is set:

1. `CLOUDFLARE_API_TOKEN` gives a `CloudflareProvider`.
2. `ALIDNS_ACCESS_KEY_ID` gives an `AlidnsProvider`.
3. `AWS_ACCESS_KEY_ID` gives a `Route53Provider`. Its region comes from `AWS_REGION` and defaults to `us-east-1`.

If none of them is set, it raises `DNSProviderError`.

### Limits of the provider helpers

The Cloudflare, AliDNS and Route53 providers are placeholders. Every record
operation on them raises `DNSProviderError`.

`new_dns_provider(DNSProviderConfig(...))` never creates a provider:

- With an empty provider name it returns `None`.
- With a known name it raises `DNSProviderError` that points to a dedicated provider package.
- With any other name it raises `DNSProviderError` as unsupported.

## What the package does not do

The package forwards plain TCP only. It has none of the following:

- TLS, HTTP/2, HTTP/3 or QUIC handling;
- automatic certificate management;
- connection limits or backpressure;
- metrics export;
- a command-line program.

## Tests

```
pip install "relaytunnel[test]"
pytest
```