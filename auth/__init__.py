"""auth/ -- Identity and session-lifecycle services for IDCore.

Layer rule: from cache/ and notify/, auth/ imports only types (Cache,
CacheError, Message, Sender). The instances are injected by the composition
root (api/main.py, main.py); auth/ never constructs them itself.
api/ imports from auth/, not the other way around.
"""
