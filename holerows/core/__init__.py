# HoleRows Core Module
"""
Core row-detection engine for HoleRows.

Contains:
- Detection configuration (``config``)
- Error types (``errors``)
- Result data model (``models``)
- Row detection orchestrator (``row_detector``)
"""
