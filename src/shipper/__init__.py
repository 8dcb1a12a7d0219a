"""Shipper: authenticated deployment gateway in front of Nomad."""

__version__ = "0.1.0"
