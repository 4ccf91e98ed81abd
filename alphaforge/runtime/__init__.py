"""
Runtime wiring: service construction and lifecycle.
"""
