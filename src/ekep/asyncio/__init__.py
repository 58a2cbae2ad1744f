from .stream import perform_handshake  # noqa

__all__ = ["perform_handshake"]
