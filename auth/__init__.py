"""auth/ -- Authentication, session and authorization core of the tenant portal.

Layer rule: auth/ imports only stdlib, third-party libraries and core/.
It does NOT import from api/ or cache/.
api/ and cache/ import from auth/, not the other way around.
"""
