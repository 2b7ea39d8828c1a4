"""Authentication: bearer-token bridge to each client's auth endpoint and
the request dependencies built on it.

Services:
    - AuthBridge: token -> User via the client's ``authEndpoint``, cached.
"""
