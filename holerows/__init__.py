# HoleRows - Source Package
"""
HoleRows: row and position inference for drilled hole patterns.

This package groups operator-placed holes into ordered rows:
- Point set analysis and pattern classification
- Sub-pattern separation for mixed layouts
- Multi-strategy row detection with fallbacks
- Serpentine direction detection and validation metrics
"""

__version__ = "0.1.0"
