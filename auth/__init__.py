"""auth/ -- Authenticators, access levels and credential utilities for crmctl.

Layer rule: auth/ imports only stdlib, third-party libraries and core/.
It does NOT import from api/, manager/, middleware/ or store/.
manager/ and api/ import from auth/, not the other way around.
"""
