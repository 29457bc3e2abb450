"""auth/ -- User accounts, sessions, and authentication for Formwork.

Layer rule: auth/ imports only stdlib, third-party libraries, and core/.
It does NOT import from api/, web/, or middleware/.
api/ and web/ import from auth/, not the other way around.
"""
