"""One-to-one call signalling.

``CallController`` lives in :mod:`freetalk.calls.controller`; it depends on
the realtime package, which in turn imports the signalling types from here.
"""

from .signaling import Call, CallKind, CallStatus  # noqa: F401

__all__ = ["Call", "CallKind", "CallStatus"]
