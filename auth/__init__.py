"""auth/ -- Wikimedia login flows, session tokens, and user persistence.

Layer rule: auth/ imports only stdlib, third-party libraries, and core/.
It does NOT import from api/ or web/ (dependencies.py may import fastapi).
api/ and web/ import from auth/, not the other way around.
"""
