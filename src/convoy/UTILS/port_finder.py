"""
Utilities for finding and checking availability of network ports.
"""
import socket


def get_free_port(host: str = "") -> int:
    """
    Finds a free TCP port on the given interface.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind((host, 0))
        return s.getsockname()[1]


def is_port_free(port: int, host: str = "") -> bool:
    """
    Checks if a TCP port can be bound on the given interface.
    """
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        try:
            s.bind((host, port))
            return True
        except OSError:
            return False


def is_listening(host: str, port: int, timeout: float = 0.2) -> bool:
    """
    Checks whether something accepts TCP connections at host:port.
    """
    try:
        with socket.create_connection((host, port), timeout=timeout):
            return True
    except OSError:
        return False
