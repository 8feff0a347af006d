"""
convert — Image decoding, pixel normalisation and the float32 buffer pool.
"""
