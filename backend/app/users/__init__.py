"""Users mirrored from client identity providers."""
