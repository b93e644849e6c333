"""TCP forwarding tunnels with statistics and presets, and DNS-01 provider helpers."""

__version__ = "1.1.0"
__all__ = ["dns_provider", "tunnel"]