"""auth/ -- Steam sign-in, session tokens and viewer resolution.

Layer rule: auth/ imports from core/, cache/ and directory/, never from api/.
api/ imports from auth/, not the other way around.
"""
