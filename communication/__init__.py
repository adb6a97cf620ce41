"""
Communication module for podslice worker bring-up.

Reachability probes run against peers during rendezvous:
- DNS: peer hostname resolves through the headless service
- TCP: peer accepts connections on the inter-worker port
- HTTP: peer status server answers its health endpoint
"""

from communication.probes import DNSProbe, TCPProbe, HTTPProbe, create_probe

__version__ = "0.1.0"

__all__ = [
    "DNSProbe",
    "TCPProbe",
    "HTTPProbe",
    "create_probe",
]
