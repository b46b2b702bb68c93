"""Core utilities for the FreeTalk backend."""

from .security import create_access_token, decode_access_token, user_id_from_token

__all__ = ["create_access_token", "decode_access_token", "user_id_from_token"]
