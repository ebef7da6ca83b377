"""auth/ -- Identity, token verification and authorization for VulnConsole.

Layer rule: auth/ imports only core/, stdlib and third-party libraries.
It does NOT import from api/ or cmdb/. api/ and cmdb/ import from auth/,
not the other way around.
"""
