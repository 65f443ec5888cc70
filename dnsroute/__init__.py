"""Domain and IP matchers, query contexts, DNS servers and upstream transports for a DNS forwarder."""

__version__ = "0.1.0"