"""Voice chat bridge: streams gateway replies to clients sentence by sentence."""

__version__ = "0.1.0"
