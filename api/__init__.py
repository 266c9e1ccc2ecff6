# api/__init__.py
"""HTTP surface. Build the application with ``api.server.create_app``."""
