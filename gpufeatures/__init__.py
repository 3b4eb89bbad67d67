"""GPU node feature labelling, label output and device plugin allocation responses."""

__version__ = "0.16.0"