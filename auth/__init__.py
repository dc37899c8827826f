"""auth/ -- Authentication and session package for SessionGate.

Layer rule: auth/ imports only stdlib + third-party libraries.
It does NOT import from api/ or core/. Configuration is passed in by the
caller (api/main.py), never read here.
"""
