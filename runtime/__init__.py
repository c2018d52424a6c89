"""
Turn runtime — channel reducers, patch helpers and the per-turn graph walk.
"""
