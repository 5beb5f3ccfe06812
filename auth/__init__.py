"""auth/ -- Authentication, session and organization-membership core for AuthCore.

Layer rule: auth/ imports only stdlib + third-party libraries + core/.
It does NOT import from api/. api/ imports from auth/, not the other way
around. auth/dependencies.py is the one FastAPI-aware module in here.
"""
