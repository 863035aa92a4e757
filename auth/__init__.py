"""auth/ -- Credential verification and token lifecycle for the auth service.

Layer rule: auth/ imports stdlib, third-party libraries and core/ (clock,
settings). It does NOT import from api/.
api/ and main.py import from auth/, not the other way around.
"""
