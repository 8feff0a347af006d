"""
core — Configuration, constants, error taxonomy, structured logging and the
pipeline orchestrator.
"""
