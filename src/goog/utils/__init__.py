"""
Utility helpers for goog.
"""
