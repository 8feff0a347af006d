"""
output — Batch file writers (JSON text / fixed binary) and the companion
reader used by training loops.
"""
