"""vidtube: a terminal client for a VideoTube style REST backend."""

__version__ = "0.1.0"
