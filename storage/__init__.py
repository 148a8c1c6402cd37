"""
storage — Per-patient conversation log persistence and export.
"""
