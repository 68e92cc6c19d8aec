"""auth/ -- Authentication and token-lifecycle core for tokenward.

Layer rule: auth/ imports only stdlib + third-party libraries.
It does NOT import from api/ or core/.
api/ and main.py import from auth/, not the other way around; settings
reach the core as constructor arguments.
"""
