"""
CareVault Core
Configuration, logging and crypto primitives.
"""
