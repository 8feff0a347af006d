"""
PixelBatch — directory-of-images → ML-ready batch files.

Fixed-size rasters are decoded, normalised into pooled float32 buffers and
flushed as JSON or binary record batches under an adaptive workload governor.
"""

__version__ = "1.0.0"
__author__ = "PixelBatch Team"
