"""auth/ -- Authentication core for multiauth.

AuthCoordinator (auth/coordinator.py) decides logins by consulting pluggable
AuthMethods (auth/methods/) resolved through AuthMethodRegistry.

Layer rule: auth/ imports stdlib, third-party libraries and core.config only.
It does NOT import from api/. api/ and main.py import from auth/, not the
other way around.
"""
