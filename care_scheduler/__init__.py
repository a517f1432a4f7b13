"""
Shift lifecycle, staff assignment and weekly calendar engine.
"""
