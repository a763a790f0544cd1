"""UDS (ISO 14229) constants, an ISO-TP link, and mock and SocketCAN transports."""

__version__ = "0.7.0"

__all__ = [
    "constants",
    "util",
    "isotp_frames",
    "isotp",
    "mock",
    "isotp_c",
    "socketcan",
    "isotp_sock",
]