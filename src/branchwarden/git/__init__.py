"""Version-control side: gateway contract, git backend, and the
tracker/resolver/handler components built on it."""
