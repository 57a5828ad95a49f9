"""BitTorrent tracker and peer listener used as an IP-exposure canary"""

__version__ = "0.1.0"
