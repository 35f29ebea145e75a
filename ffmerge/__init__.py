"""Image + audio to MP4 merge service with single-use, expiring download links."""

__version__ = "1.0.0"
