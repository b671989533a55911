# =============================================================================
# Copyright (c) 2026 5echo.io
# Project: netkeeper
# Purpose: Package marker and version.
# Path: /netkeeper/__init__.py
# Created: 2026-10-19
# Last modified: 2026-10-19
# =============================================================================

from netkeeper.config import read_version

__version__ = read_version()
