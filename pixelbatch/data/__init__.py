"""
data — Dataset directory scanning and label lookup.
"""
