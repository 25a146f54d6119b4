"""
HTTP surface: health, metrics, results, manual triggers and the mock PR viewer.
"""
