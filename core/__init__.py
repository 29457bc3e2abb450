"""core/ -- The kernel: configuration, logging, errors, metrics, sanitization, health.

Layer rule: core/ imports only stdlib and third-party libraries. Nothing in
core/ imports from api/, web/, auth/, or middleware/.
"""
