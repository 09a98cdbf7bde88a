"""Bulwark core: errors, logging, settings, clocks and stores.

Everything here is dependency-light and shared by the execution layer.
"""
