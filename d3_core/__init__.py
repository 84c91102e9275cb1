# =============================================================================
# d3_core/__init__.py
# Offline-first core for the D3 small-group study app
# =============================================================================
"""
d3_core - local-first persistence and sync for the D3 study groups app.

The application-facing entry point is :func:`d3_core.offline.get_data_service`.
"""

__version__ = "0.3.0"
