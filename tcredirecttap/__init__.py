"""Chained CNI plugin that pairs a tap device with an interface through tc redirect filters."""

__version__ = "0.1.0"