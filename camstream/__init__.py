"""Motion-JPEG encoding, still image writers (JPEG, BMP, PNG, DNG) and file and circular video outputs."""

__version__ = "0.1.0"