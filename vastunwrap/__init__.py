"""
vastunwrap – OpenRTB bid proxy with VAST wrapper resolution.
"""

__version__ = "0.1.0"
