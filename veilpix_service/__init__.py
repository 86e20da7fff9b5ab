"""VeilPix image service: multi-provider generation with usage gating and credit accounting."""

__version__ = "0.3.0"
