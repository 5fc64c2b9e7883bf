"""client/ -- Consumer-side session handling for the auth API.

Layer rule: client/ talks to the server over HTTP only. It imports stdlib and
third-party libraries; it does NOT import from api/, auth/ or core/.
"""
