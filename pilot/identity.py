"""Pilot identity — name, version, banner."""

__codename__ = "PILOT"
__version__ = "1.2.0"
__tagline__ = "Build. Verify. Decide. Repeat."

BANNER = r"""
  ____  _ _       _
 |  _ \(_) | ___ | |_
 | |_) | | |/ _ \| __|
 |  __/| | | (_) | |_
 |_|   |_|_|\___/ \__|
"""
