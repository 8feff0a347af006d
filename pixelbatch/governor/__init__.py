"""
governor — Hardware detection and adaptive workload throttling.
"""
