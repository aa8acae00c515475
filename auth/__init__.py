"""auth/ -- Client-side session model for the IAM console.

Layer rule: auth/ imports from core/ and third-party libraries only.
It does NOT import from api/, web/, or vault/.
api/, web/ and the CLI import from auth/, not the other way around.
"""
