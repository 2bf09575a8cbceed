"""scandaemon — tiered, multi-engine file-scanning daemon."""

__version__ = "1.0.0"
