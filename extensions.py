"""
Flask extension instances, configured in create_app.
"""
from flask_caching import Cache

# SimpleCache for single-worker deployments (current setup)
cache = Cache()
